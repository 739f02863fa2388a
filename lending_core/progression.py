"""
Installment Progression Module

Tracks which installment a live loan is on and advances it as payments are
confirmed. The only persisted state is a handful of plain fields on the loan
record (status, current installment, next due date, final due date); the
schedule itself is always recomputed from the terms.

States: PENDING (not started) -> ACTIVE/OVERDUE (in progress) -> COMPLETED.
OVERDUE is a status label set by the time-driven refresh; it never moves the
installment pointer.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum
import uuid

from .amortization import generate_schedule
from .audit import AuditTrail, AuditEventType
from .currency import Money, money_sum
from .events import DomainEvent, EventDispatcher, create_loan_event
from .logging_config import get_logger, log_action
from .schedule import RepaymentSchedule, outstanding_installments
from .storage import StorageInterface, StorageRecord
from .terms import LoanTerms


class StaleProgressionError(ValueError):
    """
    A payment confirmation that does not match the stored current installment.

    Raised for duplicate or out-of-order confirmations; callers treat it as a
    no-op rather than a failure to retry.
    """

    def __init__(self, loan_id: str, expected: Optional[int], actual: Optional[int], reason: str = ""):
        message = (
            f"Loan {loan_id}: confirmed installment {expected} does not match "
            f"current installment {actual}"
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.loan_id = loan_id
        self.expected = expected
        self.actual = actual


class LoanStatus(Enum):
    """Stored loan status"""
    PENDING = "pending"        # Offer not yet accepted
    ACTIVE = "active"          # Repayment in progress
    OVERDUE = "overdue"        # In progress, next due date has passed
    COMPLETED = "completed"    # All installments paid


class ProgressionState(Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


IN_PROGRESS_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE)


def _as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


@dataclass
class LoanRecord(StorageRecord):
    """Loan as persisted: terms, parties and progression fields"""
    terms: LoanTerms
    borrower_id: Optional[str] = None
    lender_id: Optional[str] = None
    status: LoanStatus = LoanStatus.PENDING
    current_installment_number: Optional[int] = None
    next_payment_due_date: Optional[date] = None
    due_date: Optional[date] = None            # Final maturity
    total_installments: Optional[int] = None

    @classmethod
    def new(
        cls,
        terms: LoanTerms,
        borrower_id: Optional[str] = None,
        lender_id: Optional[str] = None,
        loan_id: Optional[str] = None
    ) -> 'LoanRecord':
        now = datetime.now(timezone.utc)
        return cls(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            terms=terms,
            borrower_id=borrower_id,
            lender_id=lender_id
        )

    @property
    def progression_state(self) -> ProgressionState:
        if self.status == LoanStatus.PENDING:
            return ProgressionState.NOT_STARTED
        if self.status == LoanStatus.COMPLETED:
            return ProgressionState.COMPLETED
        return ProgressionState.IN_PROGRESS

    def is_overdue(self, now: Union[date, datetime]) -> bool:
        """Overdue overlay, derived at read time from the next due date"""
        if self.status not in IN_PROGRESS_STATUSES or self.next_payment_due_date is None:
            return False
        return _as_date(now) > self.next_payment_due_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'terms': self.terms.to_dict(),
            'borrower_id': self.borrower_id,
            'lender_id': self.lender_id,
            'status': self.status.value,
            'current_installment_number': self.current_installment_number,
            'next_payment_due_date': _iso(self.next_payment_due_date),
            'due_date': _iso(self.due_date),
            'total_installments': self.total_installments,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanRecord':
        def get_date(field: str) -> Optional[date]:
            if data.get(field):
                return date.fromisoformat(data[field])
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            terms=LoanTerms.from_dict(data['terms']),
            borrower_id=data.get('borrower_id'),
            lender_id=data.get('lender_id'),
            status=LoanStatus(data.get('status', LoanStatus.PENDING.value)),
            current_installment_number=data.get('current_installment_number'),
            next_payment_due_date=get_date('next_payment_due_date'),
            due_date=get_date('due_date'),
            total_installments=data.get('total_installments'),
        )


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, (date, datetime)):
            value = value.isoformat()
        result[key] = value
    return result


class LoanRepository(ABC):
    """Persistence contract for loans and their progression fields"""

    @abstractmethod
    def create(self, loan: LoanRecord) -> LoanRecord:
        """Store a new loan; fails if the id is taken"""
        pass

    @abstractmethod
    def get(self, loan_id: str) -> Optional[LoanRecord]:
        pass

    @abstractmethod
    def find_by_status(self, status: LoanStatus) -> List[LoanRecord]:
        pass

    @abstractmethod
    def update_progress(self, loan_id: str, expected: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        """
        Compare-and-swap the progression fields.

        Returns False without writing when any `expected` field no longer
        holds, which is how concurrent confirmations for the same loan are
        serialized.
        """
        pass

    def load_terms(self, loan_id: str) -> LoanTerms:
        loan = self.get(loan_id)
        if not loan:
            raise ValueError(f"Loan {loan_id} not found")
        return loan.terms


class StorageLoanRepository(LoanRepository):
    """LoanRepository over a StorageInterface table"""

    def __init__(self, storage: StorageInterface, table_name: str = "loans"):
        self.storage = storage
        self.table_name = table_name

    def create(self, loan: LoanRecord) -> LoanRecord:
        if self.storage.exists(self.table_name, loan.id):
            raise ValueError(f"Loan {loan.id} already exists")
        self.storage.save(self.table_name, loan.id, loan.to_dict())
        return loan

    def get(self, loan_id: str) -> Optional[LoanRecord]:
        data = self.storage.load(self.table_name, loan_id)
        if data:
            return LoanRecord.from_dict(data)
        return None

    def find_by_status(self, status: LoanStatus) -> List[LoanRecord]:
        records = self.storage.find(self.table_name, {'status': status.value})
        return [LoanRecord.from_dict(data) for data in records]

    def update_progress(self, loan_id: str, expected: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        changes = dict(changes)
        changes['updated_at'] = datetime.now(timezone.utc)
        return self.storage.compare_and_set(
            self.table_name, loan_id, _serialize_fields(expected), _serialize_fields(changes)
        )


@dataclass(frozen=True)
class PaymentInfo:
    """What the borrower owes next"""
    loan_id: str
    current_installment: int
    total_installments: int
    next_due_date: Optional[date]
    expected_amount: Money
    remaining_amount: Money   # Current installment through maturity
    is_overdue: bool


class InstallmentProgression:
    """
    State machine that walks a loan through its repayment schedule.

    `advance` is the only operation that moves the installment pointer, and it
    does so through a compare-and-swap keyed on the stored current
    installment, so a confirmation is applied at most once.
    """

    def __init__(
        self,
        repository: LoanRepository,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.audit_trail = audit_trail
        self._event_dispatcher = event_dispatcher
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("lending.progression")

    def _require_loan(self, loan_id: str) -> LoanRecord:
        loan = self.repository.get(loan_id)
        if not loan:
            raise ValueError(f"Loan {loan_id} not found")
        return loan

    def _publish(self, event_type: DomainEvent, loan: LoanRecord, **extra) -> None:
        if not self._event_dispatcher:
            return
        try:
            self._event_dispatcher.publish(create_loan_event(event_type, loan, **extra))
        except Exception as e:
            self.logger.error(f"Error publishing event {event_type.value}: {e}")

    def _audit(self, event_type: AuditEventType, loan_id: str, metadata: Dict[str, Any]) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan_id,
                metadata=metadata
            )

    def _reject_stale(self, loan_id: str, requested: Optional[int], reason: str) -> StaleProgressionError:
        current = self.repository.get(loan_id)
        current_number = current.current_installment_number if current else None
        log_action(
            self.logger, "warning", f"Rejected stale progression for loan {loan_id}",
            action="advance_installment", resource=f"loan:{loan_id}",
            extra={"requested": requested, "current": current_number, "reason": reason}
        )
        self._audit(AuditEventType.STALE_PROGRESSION_REJECTED, loan_id, {
            "requested_installment": requested,
            "current_installment": current_number,
            "reason": reason
        })
        return StaleProgressionError(loan_id, requested, current_number, reason)

    def schedule_for(self, loan_id: str) -> RepaymentSchedule:
        """Recompute the schedule of a stored loan"""
        return generate_schedule(self.repository.load_terms(loan_id))

    def initialize(self, loan_id: str, schedule: Optional[RepaymentSchedule] = None) -> LoanRecord:
        """
        Start repayment when an offer is accepted.

        Sets the pointer to installment 1, the next due date to the first
        row's due date and the loan due date to final maturity.

        Raises:
            StaleProgressionError: If the loan has already been started
        """
        loan = self._require_loan(loan_id)
        if loan.status != LoanStatus.PENDING:
            raise self._reject_stale(loan_id, None, f"loan is already {loan.status.value}")

        schedule = schedule or generate_schedule(loan.terms)
        changes = {
            'status': LoanStatus.ACTIVE,
            'current_installment_number': 1,
            'next_payment_due_date': schedule.first_due_date,
            'due_date': schedule.maturity_date,
            'total_installments': schedule.number_of_payments,
        }
        if not self.repository.update_progress(loan_id, {'status': LoanStatus.PENDING}, changes):
            raise self._reject_stale(loan_id, None, "loan was started concurrently")

        loan = self._require_loan(loan_id)
        log_action(
            self.logger, "info", f"Initialized repayment schedule for loan {loan_id}",
            action="initialize_schedule", resource=f"loan:{loan_id}",
            extra={
                "installments": schedule.number_of_payments,
                "first_due": schedule.first_due_date.isoformat(),
                "maturity": schedule.maturity_date.isoformat()
            }
        )
        self._audit(AuditEventType.SCHEDULE_INITIALIZED, loan_id, {
            "total_installments": schedule.number_of_payments,
            "next_payment_due_date": schedule.first_due_date,
            "due_date": schedule.maturity_date,
            "total_amount": schedule.total_amount.to_string()
        })
        self._publish(DomainEvent.LOAN_SCHEDULE_INITIALIZED, loan)
        return loan

    def advance(
        self,
        loan_id: str,
        confirmed_installment_number: int,
        schedule: Optional[RepaymentSchedule] = None
    ) -> LoanRecord:
        """
        Move past a confirmed installment.

        Args:
            loan_id: Loan being repaid
            confirmed_installment_number: Installment whose payment was confirmed;
                must equal the stored current installment
            schedule: Precomputed schedule for the loan's terms

        Returns:
            Updated LoanRecord (COMPLETED after the last installment)

        Raises:
            StaleProgressionError: Duplicate or out-of-order confirmation;
                stored state is left unchanged
        """
        loan = self._require_loan(loan_id)
        if loan.status not in IN_PROGRESS_STATUSES:
            raise self._reject_stale(
                loan_id, confirmed_installment_number, f"loan is {loan.status.value}"
            )
        if loan.current_installment_number != confirmed_installment_number:
            raise self._reject_stale(loan_id, confirmed_installment_number, "installment mismatch")

        schedule = schedule or generate_schedule(loan.terms)
        next_number = confirmed_installment_number + 1
        completed = next_number > schedule.number_of_payments

        if completed:
            changes = {
                'status': LoanStatus.COMPLETED,
                'current_installment_number': next_number,
                'next_payment_due_date': None,
            }
        else:
            changes = {
                'status': LoanStatus.ACTIVE,
                'current_installment_number': next_number,
                'next_payment_due_date': schedule.item(next_number).due_date,
            }

        expected = {'current_installment_number': confirmed_installment_number}
        if not self.repository.update_progress(loan_id, expected, changes):
            raise self._reject_stale(loan_id, confirmed_installment_number, "concurrent confirmation")

        loan = self._require_loan(loan_id)
        log_action(
            self.logger, "info",
            f"Advanced loan {loan_id} to installment {next_number}/{schedule.number_of_payments}",
            action="advance_installment", resource=f"loan:{loan_id}",
            extra={"confirmed": confirmed_installment_number, "status": loan.status.value}
        )
        self._audit(AuditEventType.INSTALLMENT_ADVANCED, loan_id, {
            "confirmed_installment": confirmed_installment_number,
            "current_installment": next_number,
            "next_payment_due_date": loan.next_payment_due_date
        })
        self._publish(
            DomainEvent.INSTALLMENT_ADVANCED, loan,
            confirmed_installment_number=confirmed_installment_number
        )

        if completed:
            self._audit(AuditEventType.LOAN_COMPLETED, loan_id, {
                "total_installments": schedule.number_of_payments,
                "total_amount": schedule.total_amount.to_string()
            })
            self._publish(DomainEvent.LOAN_COMPLETED, loan)
        return loan

    def refresh_overdue_flags(self, now: Optional[Union[date, datetime]] = None) -> List[str]:
        """
        Label every active loan whose next due date has passed as OVERDUE.

        Idempotent; never touches the installment pointer.

        Returns:
            IDs of loans newly marked overdue by this run
        """
        today = _as_date(now or self._clock())
        flagged = []

        for loan in self.repository.find_by_status(LoanStatus.ACTIVE):
            if not loan.is_overdue(today):
                continue

            expected = {
                'status': LoanStatus.ACTIVE,
                'current_installment_number': loan.current_installment_number,
            }
            if not self.repository.update_progress(loan.id, expected, {'status': LoanStatus.OVERDUE}):
                # Paid or changed since it was read
                continue

            flagged.append(loan.id)
            loan.status = LoanStatus.OVERDUE
            log_action(
                self.logger, "info", f"Marked loan {loan.id} as overdue",
                action="refresh_overdue", resource=f"loan:{loan.id}",
                extra={"next_payment_due_date": loan.next_payment_due_date.isoformat()}
            )
            self._audit(AuditEventType.LOAN_OVERDUE, loan.id, {
                "current_installment": loan.current_installment_number,
                "next_payment_due_date": loan.next_payment_due_date,
                "as_of": today
            })
            self._publish(DomainEvent.LOAN_OVERDUE, loan, days_overdue=(today - loan.next_payment_due_date).days)

        return flagged

    def current_payment_info(
        self,
        loan_id: str,
        now: Optional[Union[date, datetime]] = None
    ) -> Optional[PaymentInfo]:
        """Current installment and amount due, or None when the loan is not in repayment"""
        loan = self._require_loan(loan_id)
        if loan.status not in IN_PROGRESS_STATUSES:
            return None

        schedule = generate_schedule(loan.terms)
        current = loan.current_installment_number or 1
        return PaymentInfo(
            loan_id=loan_id,
            current_installment=current,
            total_installments=loan.total_installments or schedule.number_of_payments,
            next_due_date=loan.next_payment_due_date,
            expected_amount=schedule.item(current).total_amount,
            remaining_amount=money_sum(
                (i.total_amount for i in outstanding_installments(schedule, current)), loan.terms.currency
            ),
            is_overdue=loan.is_overdue(now or self._clock())
        )
