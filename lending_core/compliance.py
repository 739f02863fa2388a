"""
Compliance Guard Module

Rule-based checks run before a schedule is committed: loan amount and
interest rate ceilings, basic KYC on both parties, and sanity checks on
confirmed payments. Rule failures are returned, never raised; callers decide
whether to block. Every rule evaluation produces one immutable audit record
that is appended to the hash-chained audit trail whether it passed or not.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEvent, AuditEventType
from .config import LendingConfig, get_config
from .currency import Money
from .events import DomainEvent, EventDispatcher, EventPayload
from .logging_config import get_logger, log_action
from .schedule import RepaymentSchedule, validate_payment_amount
from .terms import LoanTerms


class ComplianceRuleId(Enum):
    """Compliance rules"""
    KYC_BASIC = "KYC_BASIC"
    LOAN_AMOUNT_LIMITS = "LOAN_AMOUNT_LIMITS"
    INTEREST_RATE_LIMITS = "INTEREST_RATE_LIMITS"
    PAYMENT_VALIDATION = "PAYMENT_VALIDATION"


class ComplianceStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"    # Passed with warnings


@dataclass(frozen=True)
class Party:
    """Identity fields of a borrower or lender"""
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class PaymentConfirmation:
    """A payment reported against an installment"""
    id: str
    loan_id: str
    installment_number: int
    amount: Money
    reference: Optional[str] = None


@dataclass(frozen=True)
class ComplianceAuditRecord:
    """Immutable outcome of one rule evaluation"""
    rule_id: ComplianceRuleId
    status: ComplianceStatus
    message: str
    timestamp: datetime
    entity_type: str  # offer, user, payment
    entity_id: str
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'details', MappingProxyType(dict(self.details)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule_id': self.rule_id.value,
            'status': self.status.value,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'details': dict(self.details),
        }

    @classmethod
    def from_audit_event(cls, event: AuditEvent) -> 'ComplianceAuditRecord':
        metadata = event.metadata
        return cls(
            rule_id=ComplianceRuleId(metadata['rule_id']),
            status=ComplianceStatus(metadata['status']),
            message=metadata['message'],
            timestamp=datetime.fromisoformat(metadata['timestamp']),
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            details=metadata.get('details', {})
        )


@dataclass(frozen=True)
class ComplianceResult:
    """Aggregated outcome of one or more rules"""
    violations: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    audit_records: Tuple[ComplianceAuditRecord, ...] = ()

    @property
    def is_compliant(self) -> bool:
        return not self.violations

    def merge(self, other: 'ComplianceResult') -> 'ComplianceResult':
        return ComplianceResult(
            violations=self.violations + other.violations,
            warnings=self.warnings + other.warnings,
            audit_records=self.audit_records + other.audit_records
        )


class ComplianceGuard:
    """
    Validates loan terms, parties and payments against platform limits
    """

    def __init__(
        self,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self._event_dispatcher = event_dispatcher
        self.logger = get_logger("lending.compliance")

    def _record(
        self,
        rule_id: ComplianceRuleId,
        entity_type: str,
        entity_id: str,
        violations: List[str],
        warnings: List[str],
        passed_message: str,
        failed_prefix: str,
        details: Dict[str, Any]
    ) -> ComplianceResult:
        """Build the audit record for one rule evaluation and append it to the trail"""
        if violations:
            status = ComplianceStatus.FAILED
            message = f"{failed_prefix}: {', '.join(violations)}"
        elif warnings:
            status = ComplianceStatus.WARNING
            message = f"{passed_message} with warnings: {', '.join(warnings)}"
        else:
            status = ComplianceStatus.PASSED
            message = passed_message

        record = ComplianceAuditRecord(
            rule_id=rule_id,
            status=status,
            message=message,
            timestamp=datetime.now(timezone.utc),
            entity_type=entity_type,
            entity_id=entity_id,
            details=details
        )
        if self.config.enable_audit_logging:
            self.audit_trail.log_event(
                event_type=AuditEventType.COMPLIANCE_CHECK,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata={
                    'rule_id': rule_id.value,
                    'status': status.value,
                    'message': message,
                    'timestamp': record.timestamp,
                    'details': details
                }
            )

        log_action(
            self.logger, "warning" if violations else "info",
            f"Compliance rule {rule_id.value} {status.value} for {entity_type}:{entity_id}",
            action="compliance_check", resource=f"{entity_type}:{entity_id}",
            extra={"rule_id": rule_id.value, "status": status.value}
        )
        return ComplianceResult(
            violations=tuple(violations),
            warnings=tuple(warnings),
            audit_records=(record,)
        )

    def _check_amount(self, terms: LoanTerms, offer_id: str) -> ComplianceResult:
        amount = terms.principal.amount
        maximum = self.config.decimal('max_principal')
        minimum = self.config.decimal('min_principal')
        violations = []
        warnings = []

        if amount > maximum:
            violations.append(f"Loan amount exceeds {Money(maximum, terms.currency).to_string()} maximum limit")
        if amount < minimum:
            violations.append(f"Loan amount must be at least {Money(minimum, terms.currency).to_string()}")
        if amount > self.config.decimal('large_principal_warning'):
            warnings.append("Large loan amounts require additional documentation")

        return self._record(
            ComplianceRuleId.LOAN_AMOUNT_LIMITS, "offer", offer_id, violations, warnings,
            "Amount within limits", "Amount violations",
            {'amount': amount, 'currency': terms.currency.code}
        )

    def _check_rate(self, terms: LoanTerms, offer_id: str) -> ComplianceResult:
        rate = terms.annual_rate_percent
        violations = []
        warnings = []

        if rate > self.config.decimal('max_annual_rate_percent'):
            violations.append(f"Interest rate exceeds {self.config.max_annual_rate_percent}% annual maximum")
        if rate < Decimal('0'):
            violations.append("Interest rate cannot be negative")
        if rate > self.config.decimal('high_rate_warning_percent'):
            warnings.append("High interest rate may require additional disclosures")

        return self._record(
            ComplianceRuleId.INTEREST_RATE_LIMITS, "offer", offer_id, violations, warnings,
            "Interest rate compliant", "Rate violations",
            {'annual_rate_percent': rate, 'interest_method': terms.interest_method.value}
        )

    def _check_kyc(self, party: Party) -> ComplianceResult:
        violations = []
        warnings = []

        if not party.phone:
            violations.append("Phone number is required")
        if not party.name:
            violations.append("Full name is required")
        if not party.email:
            warnings.append("Email address is recommended for notifications")

        return self._record(
            ComplianceRuleId.KYC_BASIC, "user", party.id, violations, warnings,
            "KYC requirements met", "KYC violations",
            {'has_phone': bool(party.phone), 'has_name': bool(party.name), 'has_email': bool(party.email)}
        )

    def check_terms(self, terms: LoanTerms, offer_id: str) -> ComplianceResult:
        """Amount and rate ceilings for proposed terms"""
        result = self._check_amount(terms, offer_id).merge(self._check_rate(terms, offer_id))
        self._notify_failure(result, "offer", offer_id)
        return result

    def check_parties(self, *parties: Party) -> ComplianceResult:
        """Basic KYC for each party"""
        result = ComplianceResult()
        for party in parties:
            result = result.merge(self._check_kyc(party))
        return result

    def check_offer(self, offer_id: str, terms: LoanTerms, borrower: Party, lender: Party) -> ComplianceResult:
        """
        All pre-commit checks for an offer: terms ceilings plus KYC on both parties.

        Returns:
            Combined ComplianceResult; the offer may be committed only when
            `is_compliant` is True
        """
        result = self._check_amount(terms, offer_id).merge(self._check_rate(terms, offer_id))
        result = result.merge(self.check_parties(borrower, lender))
        self._notify_failure(result, "offer", offer_id)

        log_action(
            self.logger, "info", f"Offer {offer_id} compliance: {'passed' if result.is_compliant else 'failed'}",
            action="check_offer", resource=f"offer:{offer_id}",
            extra={"violations": len(result.violations), "warnings": len(result.warnings)}
        )
        return result

    def check_payment(
        self,
        payment: PaymentConfirmation,
        schedule: Optional[RepaymentSchedule] = None
    ) -> ComplianceResult:
        """
        Sanity checks on a confirmed payment.

        When the loan's schedule is supplied the amount must also match the
        installment being paid.
        """
        amount = payment.amount
        violations = []
        warnings = []

        if not amount.is_positive():
            violations.append("Payment amount must be positive")
        if amount.amount > self.config.decimal('large_payment_warning'):
            warnings.append("Large payment amount requires additional verification")
        if not payment.reference:
            warnings.append("Payment reference string recommended for tracking")

        details = {
            'amount': amount.amount,
            'loan_id': payment.loan_id,
            'installment_number': payment.installment_number,
            'has_reference': bool(payment.reference)
        }
        if schedule is not None and amount.is_positive():
            check = validate_payment_amount(schedule, payment.installment_number, amount)
            details['expected_amount'] = check.expected_amount.amount if check.expected_amount else None
            if not check.is_valid:
                violations.append(check.message)

        result = self._record(
            ComplianceRuleId.PAYMENT_VALIDATION, "payment", payment.id, violations, warnings,
            "Payment validation passed", "Payment violations", details
        )
        self._notify_failure(result, "payment", payment.id)
        return result

    def _notify_failure(self, result: ComplianceResult, entity_type: str, entity_id: str) -> None:
        if result.is_compliant or not self._event_dispatcher:
            return
        self._event_dispatcher.publish(EventPayload(
            event_type=DomainEvent.COMPLIANCE_FAILED,
            entity_type=entity_type,
            entity_id=entity_id,
            data={'violations': list(result.violations)}
        ))

    def get_audit_records(self, entity_id: Optional[str] = None) -> List[ComplianceAuditRecord]:
        """Compliance audit records from the trail, oldest first"""
        events = self.audit_trail.get_events_by_type(AuditEventType.COMPLIANCE_CHECK)
        return [
            ComplianceAuditRecord.from_audit_event(event)
            for event in events
            if entity_id is None or event.entity_id == entity_id
        ]

    def generate_report(
        self,
        entity_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Compliance report over the audit trail

        Args:
            entity_id: Restrict to one offer, user or payment
            start: Inclusive lower bound on record time
            end: Inclusive upper bound on record time

        Returns:
            Dictionary with counts per status and the matching entries
        """
        records = self.get_audit_records(entity_id)
        if start:
            records = [r for r in records if r.timestamp >= start]
        if end:
            records = [r for r in records if r.timestamp <= end]

        return {
            'report_id': str(uuid.uuid4()),
            'generated_at': datetime.now(timezone.utc).isoformat(),
            'period': {
                'from': start.isoformat() if start else 'inception',
                'to': end.isoformat() if end else 'current'
            },
            'total_entries': len(records),
            'compliance_status': {
                'passed': sum(1 for r in records if r.status == ComplianceStatus.PASSED),
                'failed': sum(1 for r in records if r.status == ComplianceStatus.FAILED),
                'warnings': sum(1 for r in records if r.status == ComplianceStatus.WARNING),
            },
            'entries': [r.to_dict() for r in records]
        }
