"""
Pydantic schemas for loosely typed offer, party and payment records

Offer records arrive with renamed or optional fields (`tenureValue` vs
`duration`, `interest-only` vs `interest_only`, numbers as strings). They are
normalized here, once, into the canonical value objects.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .compliance import Party, PaymentConfirmation
from .config import get_config
from .currency import Currency, Money, decimal_from_string
from .periods import PaymentFrequency
from .terms import InterestMethod, InvalidLoanTermsError, LoanTerms, RepaymentStyle, TenureUnit


FREQUENCY_SYNONYMS = {
    'semi_annual': 'half_yearly',
    'semiannual': 'half_yearly',
    'biweekly': 'bi_weekly',
    'fortnightly': 'bi_weekly',
    'annual': 'yearly',
    'annually': 'yearly',
}


def _normalize_token(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace('-', '_').replace(' ', '_')
    return value


def _number_to_str(value: Any) -> Any:
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    return value


def _default_currency() -> str:
    return get_config().currency


def _parse_decimal(value: str, field_name: str) -> Decimal:
    try:
        return decimal_from_string(value)
    except ValueError as exc:
        raise InvalidLoanTermsError(f"{field_name} is not a number: {value!r}", field_name) from exc


class OfferTermsPayload(BaseModel):
    """Commercial terms of a loan offer as submitted by a client"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: str = Field(..., validation_alias=AliasChoices('amount', 'principal'))
    currency: str = Field(default_factory=_default_currency, validate_default=True)
    interest_rate: str = Field(
        ..., validation_alias=AliasChoices('interest_rate', 'interestRate', 'annual_rate_percent')
    )
    interest_type: InterestMethod = Field(
        InterestMethod.REDUCING, validation_alias=AliasChoices('interest_type', 'interestType')
    )
    tenure_value: int = Field(
        ..., validation_alias=AliasChoices('tenure_value', 'tenureValue', 'duration')
    )
    tenure_unit: TenureUnit = Field(
        TenureUnit.MONTHS, validation_alias=AliasChoices('tenure_unit', 'tenureUnit')
    )
    repayment_type: RepaymentStyle = Field(
        RepaymentStyle.EMI, validation_alias=AliasChoices('repayment_type', 'repaymentType')
    )
    repayment_frequency: PaymentFrequency = Field(
        PaymentFrequency.MONTHLY,
        validation_alias=AliasChoices('repayment_frequency', 'repaymentFrequency', 'frequency')
    )
    start_date: date = Field(..., validation_alias=AliasChoices('start_date', 'startDate'))
    grace_period_days: int = Field(
        0, ge=0, validation_alias=AliasChoices('grace_period_days', 'gracePeriodDays')
    )
    late_payment_penalty: str = Field(
        "0", validation_alias=AliasChoices('late_payment_penalty', 'latePaymentPenalty')
    )

    @field_validator('amount', 'interest_rate', 'late_payment_penalty', mode='before')
    @classmethod
    def numbers_as_strings(cls, value):
        return _number_to_str(value)

    @field_validator('currency', mode='before')
    @classmethod
    def upper_currency(cls, value):
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator('interest_type', 'tenure_unit', 'repayment_type', mode='before')
    @classmethod
    def normalize_choice(cls, value):
        return _normalize_token(value)

    @field_validator('repayment_frequency', mode='before')
    @classmethod
    def normalize_frequency(cls, value):
        if value is None:
            return PaymentFrequency.MONTHLY
        value = _normalize_token(value)
        return FREQUENCY_SYNONYMS.get(value, value)

    @field_validator('start_date', mode='before')
    @classmethod
    def calendar_date(cls, value):
        # Timestamps are reduced to their calendar date
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and 'T' in value:
            return value.split('T', 1)[0]
        return value

    def to_terms(self) -> LoanTerms:
        try:
            currency = Currency[self.currency]
        except KeyError as exc:
            raise InvalidLoanTermsError(f"Unsupported currency: {self.currency}", 'currency') from exc
        principal = Money(_parse_decimal(self.amount, "principal"), currency)
        rate = _parse_decimal(self.interest_rate, "annual_rate_percent")
        penalty = _parse_decimal(self.late_payment_penalty, "late_payment_penalty_percent")

        return LoanTerms(
            principal=principal,
            annual_rate_percent=rate,
            interest_method=self.interest_type,
            tenure_value=self.tenure_value,
            tenure_unit=self.tenure_unit,
            repayment_style=self.repayment_type,
            start_date=self.start_date,
            frequency=self.repayment_frequency,
            grace_period_days=self.grace_period_days,
            late_payment_penalty_percent=penalty,
        )


class PartyPayload(BaseModel):
    """Borrower or lender identity fields"""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    def to_party(self) -> Party:
        return Party(id=self.id, name=self.name, phone=self.phone, email=self.email)


class PaymentPayload(BaseModel):
    """Payment reported for an installment"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    loan_id: str = Field(..., validation_alias=AliasChoices('loan_id', 'loanId', 'offerId'))
    installment_number: int = Field(
        ..., ge=1, validation_alias=AliasChoices('installment_number', 'installmentNumber')
    )
    amount: str
    currency: str = Field(default_factory=_default_currency, validate_default=True)
    reference: Optional[str] = Field(
        None, validation_alias=AliasChoices('reference', 'refString')
    )

    @field_validator('amount', mode='before')
    @classmethod
    def number_as_string(cls, value):
        return _number_to_str(value)

    @field_validator('amount')
    @classmethod
    def parseable_amount(cls, value):
        decimal_from_string(value)
        return value

    @field_validator('currency', mode='before')
    @classmethod
    def upper_currency(cls, value):
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator('currency')
    @classmethod
    def known_currency(cls, value):
        if value not in Currency.__members__:
            raise ValueError(f"Unsupported currency: {value}")
        return value

    def to_confirmation(self) -> PaymentConfirmation:
        return PaymentConfirmation(
            id=self.id,
            loan_id=self.loan_id,
            installment_number=self.installment_number,
            amount=Money(decimal_from_string(self.amount), Currency[self.currency]),
            reference=self.reference,
        )


# Error locations use the key that was present in the input
_FIELD_BY_ALIAS = {
    choice: name
    for name, info in OfferTermsPayload.model_fields.items()
    if isinstance(info.validation_alias, AliasChoices)
    for choice in info.validation_alias.choices
    if isinstance(choice, str)
}


def _first_error_field(error: ValidationError) -> Optional[str]:
    errors = error.errors()
    if errors and errors[0].get('loc'):
        loc = str(errors[0]['loc'][0])
        return _FIELD_BY_ALIAS.get(loc, loc)
    return None


def normalize_offer_terms(data: Mapping[str, Any]) -> LoanTerms:
    """
    Normalize a raw offer record into LoanTerms

    Raises:
        InvalidLoanTermsError: If any field is missing or malformed
    """
    try:
        payload = OfferTermsPayload.model_validate(dict(data))
    except ValidationError as exc:
        raise InvalidLoanTermsError(
            f"Offer terms are invalid: {exc.error_count()} error(s)", _first_error_field(exc)
        ) from exc
    return payload.to_terms()


def terms_to_payload(terms: LoanTerms) -> Dict[str, Any]:
    """Canonical terms back to the offer record shape"""
    return {
        'amount': str(terms.principal.amount),
        'currency': terms.currency.code,
        'interestRate': str(terms.annual_rate_percent),
        'interestType': terms.interest_method.value,
        'tenureValue': terms.tenure_value,
        'tenureUnit': terms.tenure_unit.value,
        'repaymentType': terms.repayment_style.value,
        'repaymentFrequency': terms.frequency.value,
        'startDate': terms.start_date.isoformat(),
        'gracePeriodDays': terms.grace_period_days,
        'latePaymentPenalty': str(terms.late_payment_penalty_percent),
    }
