"""
Amortization Engine

Turns LoanTerms into a concrete, auditable RepaymentSchedule for every
combination of interest method, repayment style and frequency. Pure and
stateless: identical terms always produce identical schedules.

Rounding policy: every row is quantized to the currency's minor unit, and the
final installment absorbs all accumulated rounding drift so that principal
closes to exactly zero.
"""

from decimal import Decimal, ROUND_DOWN
from datetime import date, timedelta
from typing import List, Optional, Tuple

from .currency import Money
from .logging_config import get_logger
from .periods import add_months, due_dates, periods_in_tenure
from .schedule import PaymentScheduleItem, RepaymentSchedule, summarize
from .terms import InterestMethod, InvalidLoanTermsError, LoanTerms, RepaymentStyle


logger = get_logger("lending.amortization")

ONE = Decimal('1')
MONTHS_PER_YEAR = Decimal('12')


class _ScheduleBuilder:
    """Accumulates rows while tracking balance and running totals"""

    def __init__(self, terms: LoanTerms):
        self.terms = terms
        self.balance = terms.principal
        self.cumulative_principal = Money.zero(terms.currency)
        self.cumulative_interest = Money.zero(terms.currency)
        self.items: List[PaymentScheduleItem] = []

    def add(self, due_date: date, principal: Money, interest: Money) -> None:
        self.balance = self.balance - principal
        self.cumulative_principal = self.cumulative_principal + principal
        self.cumulative_interest = self.cumulative_interest + interest
        total = principal + interest

        grace_end = None
        if self.terms.grace_period_days:
            grace_end = due_date + timedelta(days=self.terms.grace_period_days)

        self.items.append(PaymentScheduleItem(
            installment_number=len(self.items) + 1,
            due_date=due_date,
            principal_amount=principal,
            interest_amount=interest,
            total_amount=total,
            remaining_balance=self.balance,
            cumulative_principal=self.cumulative_principal,
            cumulative_interest=self.cumulative_interest,
            grace_period_end_date=grace_end,
            late_payment_fee=total * (self.terms.late_payment_penalty_percent / Decimal('100')),
        ))


def generate_schedule(terms: LoanTerms) -> RepaymentSchedule:
    """
    Compute the full repayment schedule for a loan.

    Args:
        terms: Validated loan terms

    Returns:
        RepaymentSchedule whose rows close the principal exactly

    Raises:
        InvalidLoanTermsError: If the terms yield no installments or the
            calculation fails; the original error is attached as the cause
    """
    try:
        items, nominal_emi = _build_items(terms)
    except InvalidLoanTermsError:
        raise
    except (ArithmeticError, ValueError, TypeError) as exc:
        raise InvalidLoanTermsError(f"Loan terms cannot be scheduled: {exc}") from exc

    schedule = summarize(items, terms.repayment_style, nominal_emi)

    logger.debug(
        f"Generated {schedule.number_of_payments} installments for "
        f"{terms.principal.to_string()} at {terms.annual_rate_percent}% "
        f"({terms.interest_method.value}/{terms.repayment_style.value}/{terms.frequency.value})"
    )
    return schedule


def _build_items(terms: LoanTerms) -> Tuple[List[PaymentScheduleItem], Optional[Money]]:
    if terms.repayment_style == RepaymentStyle.FULL_PAYMENT:
        # Frequency is irrelevant for a single bullet payment
        return _full_payment_items(terms), None

    periods = periods_in_tenure(terms.tenure_months, terms.frequency)
    if periods <= 0:
        raise InvalidLoanTermsError(
            f"A {terms.tenure_months} month tenure contains no complete "
            f"{terms.frequency.value} installment",
            'frequency'
        )
    dates = due_dates(terms.start_date, terms.frequency, periods)

    if terms.repayment_style == RepaymentStyle.EMI:
        if terms.interest_method == InterestMethod.REDUCING:
            return _reducing_emi_items(terms, dates)
        return _fixed_emi_items(terms, dates)

    if terms.repayment_style == RepaymentStyle.INTEREST_ONLY:
        return _interest_only_items(terms, dates), None

    raise InvalidLoanTermsError(
        f"Unsupported repayment style: {terms.repayment_style}", 'repayment_style'
    )


def calculate_emi(principal: Money, periodic_rate: Decimal, periods: int) -> Money:
    """
    Standard annuity installment: P * r * (1+r)^n / ((1+r)^n - 1).

    Falls back to P / n for interest-free loans. The result is rounded down
    to the minor unit, so a constant installment never retires the balance
    before the last period.
    """
    if periods <= 0:
        raise InvalidLoanTermsError("Number of installments must be positive", 'tenure_value')
    if periodic_rate == 0:
        payment = principal.amount / Decimal(periods)
    else:
        factor = (ONE + periodic_rate) ** periods
        payment = principal.amount * (periodic_rate * factor / (factor - ONE))
    return Money(payment.quantize(principal.currency.quantum, rounding=ROUND_DOWN), principal.currency)


def fixed_total_interest(terms: LoanTerms) -> Money:
    """Flat interest on the original principal for the whole tenure"""
    return terms.principal * (terms.annual_rate * terms.tenure_years)


def _reducing_emi_items(terms: LoanTerms, dates: List[date]) -> Tuple[List[PaymentScheduleItem], Money]:
    """
    Every row but the last pays exactly the nominal EMI. Row balances follow
    the unrounded balance under that EMI, quantized, so per-row interest
    rounding never compounds; each row's interest is the EMI less the
    principal retired. The last row clears what remains plus its interest.
    """
    rate = terms.periodic_rate
    emi = calculate_emi(terms.principal, rate, len(dates))
    if emi.amount <= terms.principal.amount * rate:
        raise InvalidLoanTermsError(
            f"An installment of {emi.to_string()} does not cover the periodic interest on "
            f"{terms.principal.to_string()}; shorten the tenure or raise the principal",
            'tenure_value'
        )

    zero = Money.zero(terms.currency)
    growth = ONE + rate
    exact_balance = terms.principal.amount
    builder = _ScheduleBuilder(terms)
    last = len(dates)

    for number, due_date in enumerate(dates, start=1):
        if number == last:
            principal = builder.balance
            interest = builder.balance * rate
        else:
            exact_balance = exact_balance * growth - emi.amount
            principal = builder.balance - Money(exact_balance, terms.currency)
            if principal.is_negative():
                principal = zero
            elif principal > emi:
                principal = emi
            interest = emi - principal
        builder.add(due_date, principal, interest)

    return builder.items, emi


def _spread_evenly(total: Money, periods: int) -> List[Money]:
    """Split `total` into `periods` quantized parts; the last takes the remainder"""
    share = total / Decimal(periods)
    parts = []
    allocated = Money.zero(total.currency)
    for number in range(1, periods + 1):
        remaining = total - allocated
        if number == periods:
            part = remaining
        else:
            part = share if share <= remaining else remaining
        parts.append(part)
        allocated = allocated + part
    return parts


def _fixed_emi_items(terms: LoanTerms, dates: List[date]) -> Tuple[List[PaymentScheduleItem], Money]:
    periods = len(dates)
    total_interest = fixed_total_interest(terms)
    principals = _spread_evenly(terms.principal, periods)
    interests = _spread_evenly(total_interest, periods)

    builder = _ScheduleBuilder(terms)
    for due_date, principal, interest in zip(dates, principals, interests):
        builder.add(due_date, principal, interest)

    nominal_emi = terms.principal / Decimal(periods) + total_interest / Decimal(periods)
    return builder.items, nominal_emi


def _interest_only_items(terms: LoanTerms, dates: List[date]) -> List[PaymentScheduleItem]:
    periods = len(dates)
    if terms.interest_method == InterestMethod.REDUCING:
        # Balance stays at the full principal until the bullet
        interests = [terms.principal * terms.periodic_rate] * periods
    else:
        interests = _spread_evenly(fixed_total_interest(terms), periods)

    zero = Money.zero(terms.currency)
    builder = _ScheduleBuilder(terms)
    for number, (due_date, interest) in enumerate(zip(dates, interests), start=1):
        principal = terms.principal if number == periods else zero
        builder.add(due_date, principal, interest)
    return builder.items


def _full_payment_items(terms: LoanTerms) -> List[PaymentScheduleItem]:
    maturity = add_months(terms.start_date, terms.tenure_months)

    if terms.interest_method == InterestMethod.FIXED:
        interest = fixed_total_interest(terms)
    else:
        # Unpaid balance compounds monthly until maturity
        monthly_rate = terms.annual_rate / MONTHS_PER_YEAR
        growth = (ONE + monthly_rate) ** terms.tenure_months - ONE
        interest = terms.principal * growth

    builder = _ScheduleBuilder(terms)
    builder.add(maturity, terms.principal, interest)
    return builder.items
