"""
Loan Terms Module

The canonical, immutable description of a loan's commercial terms. Every
other component (engine, progression, compliance, documents) reads terms
through this value object only.
"""

from decimal import Decimal, InvalidOperation
from datetime import date, datetime
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum

from .currency import Money, Currency
from .periods import PaymentFrequency, add_months, payments_per_year


class InvalidLoanTermsError(ValueError):
    """Loan terms that cannot be scheduled. `field` names the offending input."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InterestMethod(Enum):
    """How interest is charged"""
    FIXED = "fixed"          # Flat interest on the original principal
    REDUCING = "reducing"    # Interest on the outstanding balance


class RepaymentStyle(Enum):
    """How the loan is repaid"""
    EMI = "emi"                      # Equal periodic installments
    INTEREST_ONLY = "interest_only"  # Periodic interest, principal bullet at maturity
    FULL_PAYMENT = "full_payment"    # Single lump sum at maturity


class TenureUnit(Enum):
    MONTHS = "months"
    YEARS = "years"


def _to_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() keeps the shortest repr, so 12.5 becomes Decimal('12.5')
        value = str(value)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidLoanTermsError(f"{field_name} is not a number: {value!r}", field_name) from exc


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms and conditions"""
    principal: Money
    annual_rate_percent: Decimal        # e.g. Decimal('12') for 12% p.a.
    interest_method: InterestMethod
    tenure_value: int
    tenure_unit: TenureUnit
    repayment_style: RepaymentStyle
    start_date: date
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    grace_period_days: int = 0
    late_payment_penalty_percent: Decimal = Decimal('0')

    def __post_init__(self):
        object.__setattr__(
            self, 'annual_rate_percent',
            _to_decimal(self.annual_rate_percent, 'annual_rate_percent')
        )
        object.__setattr__(
            self, 'late_payment_penalty_percent',
            _to_decimal(self.late_payment_penalty_percent, 'late_payment_penalty_percent')
        )

        if not isinstance(self.principal, Money):
            raise InvalidLoanTermsError("principal must be Money", 'principal')
        if not self.principal.amount.is_finite() or not self.principal.is_positive():
            raise InvalidLoanTermsError(
                f"principal must be positive, got {self.principal.to_string()}", 'principal'
            )
        if not self.annual_rate_percent.is_finite() or self.annual_rate_percent < 0:
            raise InvalidLoanTermsError(
                f"annual_rate_percent cannot be negative, got {self.annual_rate_percent}",
                'annual_rate_percent'
            )
        if isinstance(self.tenure_value, bool) or not isinstance(self.tenure_value, int):
            raise InvalidLoanTermsError("tenure_value must be an integer", 'tenure_value')
        if self.tenure_value <= 0:
            raise InvalidLoanTermsError(
                f"tenure_value must be positive, got {self.tenure_value}", 'tenure_value'
            )
        if not isinstance(self.start_date, date) or isinstance(self.start_date, datetime):
            raise InvalidLoanTermsError("start_date must be a calendar date", 'start_date')
        if self.grace_period_days < 0:
            raise InvalidLoanTermsError("grace_period_days cannot be negative", 'grace_period_days')
        if not self.late_payment_penalty_percent.is_finite() or self.late_payment_penalty_percent < 0:
            raise InvalidLoanTermsError(
                f"late_payment_penalty_percent cannot be negative, got "
                f"{self.late_payment_penalty_percent}", 'late_payment_penalty_percent'
            )

        for field_name, enum_type in (
            ('interest_method', InterestMethod),
            ('tenure_unit', TenureUnit),
            ('repayment_style', RepaymentStyle),
            ('frequency', PaymentFrequency),
        ):
            if not isinstance(getattr(self, field_name), enum_type):
                raise InvalidLoanTermsError(
                    f"{field_name} must be a {enum_type.__name__}", field_name
                )

        try:
            add_months(self.start_date, self.tenure_months)
        except (ValueError, OverflowError) as exc:
            raise InvalidLoanTermsError(
                f"A {self.tenure_months} month tenure from {self.start_date.isoformat()} "
                f"matures beyond the last representable date", 'tenure_value'
            ) from exc

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def tenure_months(self) -> int:
        """Total loan term in months"""
        if self.tenure_unit == TenureUnit.YEARS:
            return self.tenure_value * 12
        return self.tenure_value

    @property
    def tenure_years(self) -> Decimal:
        return Decimal(self.tenure_months) / Decimal('12')

    @property
    def annual_rate(self) -> Decimal:
        """Rate as a fraction, e.g. 0.12 for 12%"""
        return self.annual_rate_percent / Decimal('100')

    @property
    def payments_per_year(self) -> int:
        return payments_per_year(self.frequency)

    @property
    def periodic_rate(self) -> Decimal:
        """Per-installment rate for the configured frequency"""
        return self.annual_rate / Decimal(self.payments_per_year)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-field representation used by the loan record"""
        return {
            'principal_amount': str(self.principal.amount),
            'principal_currency': self.principal.currency.code,
            'annual_rate_percent': str(self.annual_rate_percent),
            'interest_method': self.interest_method.value,
            'tenure_value': self.tenure_value,
            'tenure_unit': self.tenure_unit.value,
            'repayment_style': self.repayment_style.value,
            'frequency': self.frequency.value,
            'start_date': self.start_date.isoformat(),
            'grace_period_days': self.grace_period_days,
            'late_payment_penalty_percent': str(self.late_payment_penalty_percent),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        """Rebuild terms stored with `to_dict`"""
        try:
            return cls(
                principal=Money(
                    Decimal(data['principal_amount']),
                    Currency[data.get('principal_currency', 'INR')]
                ),
                annual_rate_percent=Decimal(data['annual_rate_percent']),
                interest_method=InterestMethod(data['interest_method']),
                tenure_value=int(data['tenure_value']),
                tenure_unit=TenureUnit(data['tenure_unit']),
                repayment_style=RepaymentStyle(data['repayment_style']),
                frequency=PaymentFrequency(data.get('frequency', PaymentFrequency.MONTHLY.value)),
                start_date=date.fromisoformat(data['start_date']),
                grace_period_days=int(data.get('grace_period_days', 0)),
                late_payment_penalty_percent=Decimal(data.get('late_payment_penalty_percent', '0')),
            )
        except InvalidLoanTermsError:
            raise
        except (KeyError, ValueError, InvalidOperation) as exc:
            raise InvalidLoanTermsError(f"Stored loan terms are malformed: {exc}") from exc
