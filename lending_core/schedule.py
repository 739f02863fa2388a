"""
Repayment Schedule Module

Installment rows produced by the amortization engine and the aggregate
summary derived from them. Both are immutable; a schedule is recomputed
from the loan terms whenever it is needed and is never stored.
"""

from datetime import date
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .currency import Money, money_sum
from .terms import RepaymentStyle


@dataclass(frozen=True)
class PaymentScheduleItem:
    """Single installment in a repayment schedule (1-indexed)"""
    installment_number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    remaining_balance: Money
    cumulative_principal: Money
    cumulative_interest: Money
    grace_period_end_date: Optional[date] = None
    late_payment_fee: Optional[Money] = None

    def __post_init__(self):
        # Rows are built from quantized amounts, so the identity is exact
        if self.principal_amount + self.interest_amount != self.total_amount:
            raise ValueError(
                f"Installment {self.installment_number} total {self.total_amount.to_string()} "
                f"does not equal principal {self.principal_amount.to_string()} + "
                f"interest {self.interest_amount.to_string()}"
            )
        if self.late_payment_fee is None:
            object.__setattr__(self, 'late_payment_fee', Money.zero(self.total_amount.currency))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'principal_amount': str(self.principal_amount.amount),
            'interest_amount': str(self.interest_amount.amount),
            'total_amount': str(self.total_amount.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'cumulative_principal': str(self.cumulative_principal.amount),
            'cumulative_interest': str(self.cumulative_interest.amount),
            'grace_period_end_date': (
                self.grace_period_end_date.isoformat() if self.grace_period_end_date else None
            ),
            'late_payment_fee': str(self.late_payment_fee.amount),
            'currency': self.total_amount.currency.code,
        }


@dataclass(frozen=True)
class RepaymentSchedule:
    """Full installment sequence plus summary figures"""
    schedule: Tuple[PaymentScheduleItem, ...]
    number_of_payments: int
    total_principal: Money
    total_interest: Money
    total_amount: Money
    emi_amount: Optional[Money] = None

    @property
    def first_due_date(self) -> date:
        return self.schedule[0].due_date

    @property
    def maturity_date(self) -> date:
        """Due date of the final installment"""
        return self.schedule[-1].due_date

    def item(self, installment_number: int) -> PaymentScheduleItem:
        """Get installment by its 1-based number"""
        if not 1 <= installment_number <= self.number_of_payments:
            raise ValueError(
                f"Installment {installment_number} is outside 1..{self.number_of_payments}"
            )
        return self.schedule[installment_number - 1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'number_of_payments': self.number_of_payments,
            'total_principal': str(self.total_principal.amount),
            'total_interest': str(self.total_interest.amount),
            'total_amount': str(self.total_amount.amount),
            'emi_amount': str(self.emi_amount.amount) if self.emi_amount else None,
            'currency': self.total_amount.currency.code,
            'schedule': [item.to_dict() for item in self.schedule],
        }


def summarize(
    items: Sequence[PaymentScheduleItem],
    repayment_style: RepaymentStyle,
    nominal_emi: Optional[Money] = None
) -> RepaymentSchedule:
    """
    Reduce installment rows to a RepaymentSchedule.

    Args:
        items: Installments in due order
        repayment_style: Style the rows were generated for
        nominal_emi: Pre-adjustment installment value for EMI loans. The last
            row may differ because it absorbs rounding, so it is never used
            as the reported EMI.

    Returns:
        RepaymentSchedule with totals computed from the rows themselves
    """
    if not items:
        raise ValueError("Cannot summarize an empty schedule")

    currency = items[0].total_amount.currency
    emi_amount = None
    if repayment_style == RepaymentStyle.EMI:
        emi_amount = nominal_emi if nominal_emi is not None else items[0].total_amount

    return RepaymentSchedule(
        schedule=tuple(items),
        number_of_payments=len(items),
        total_principal=money_sum((i.principal_amount for i in items), currency),
        total_interest=money_sum((i.interest_amount for i in items), currency),
        total_amount=money_sum((i.total_amount for i in items), currency),
        emi_amount=emi_amount,
    )


@dataclass(frozen=True)
class PaymentCheck:
    """Outcome of checking a payment against its scheduled installment"""
    is_valid: bool
    message: str
    expected_amount: Optional[Money] = None


def validate_payment_amount(
    schedule: RepaymentSchedule,
    installment_number: int,
    payment_amount: Money
) -> PaymentCheck:
    """Check a payment against the scheduled total, allowing one minor unit of slack"""
    if not 1 <= installment_number <= schedule.number_of_payments:
        return PaymentCheck(False, "Invalid installment number")

    expected = schedule.item(installment_number).total_amount
    tolerance = expected.currency.quantum
    difference = payment_amount.amount - expected.amount

    if abs(difference) <= tolerance:
        return PaymentCheck(True, "Payment amount is correct", expected)
    if difference > 0:
        return PaymentCheck(
            False,
            f"Payment amount {payment_amount.to_string()} exceeds expected amount {expected.to_string()}",
            expected
        )
    return PaymentCheck(
        False,
        f"Payment amount {payment_amount.to_string()} is less than expected amount {expected.to_string()}",
        expected
    )


def next_payment_due(
    schedule: RepaymentSchedule,
    paid_installments: Iterable[int]
) -> Optional[PaymentScheduleItem]:
    """First installment not yet paid, or None when everything is paid"""
    paid = set(paid_installments)
    for item in schedule.schedule:
        if item.installment_number not in paid:
            return item
    return None


def outstanding_installments(
    schedule: RepaymentSchedule,
    current_installment_number: int
) -> List[PaymentScheduleItem]:
    """Installments from the current one to maturity"""
    return [i for i in schedule.schedule if i.installment_number >= current_installment_number]
