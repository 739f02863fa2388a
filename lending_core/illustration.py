"""
Cost Illustration Module

Presentation-layer estimates shown next to a schedule: APR including fees,
effective annual rate and total cost of credit. These figures are
illustrative only; the amortization engine never reads them.
"""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .currency import Money
from .schedule import RepaymentSchedule
from .terms import LoanTerms, RepaymentStyle


PERCENT_QUANTUM = Decimal('0.01')
RATIO_QUANTUM = Decimal('0.0001')


@dataclass(frozen=True)
class CostIllustration:
    """Cost-of-credit figures for one schedule"""
    apr_percent: Decimal
    effective_annual_rate_percent: Decimal
    processing_fee: Money
    other_charges: Money
    total_charges: Money
    total_cost_of_credit: Money      # Everything the borrower pays: principal, interest, charges
    average_payment: Money
    principal_to_interest_ratio: Optional[Decimal]  # None for interest-free loans
    tenure_days: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'apr_percent': str(self.apr_percent),
            'effective_annual_rate_percent': str(self.effective_annual_rate_percent),
            'processing_fee': str(self.processing_fee.amount),
            'other_charges': str(self.other_charges.amount),
            'total_charges': str(self.total_charges.amount),
            'total_cost_of_credit': str(self.total_cost_of_credit.amount),
            'average_payment': str(self.average_payment.amount),
            'principal_to_interest_ratio': (
                str(self.principal_to_interest_ratio) if self.principal_to_interest_ratio is not None else None
            ),
            'tenure_days': self.tenure_days,
        }


def annualized_cost_rate(principal: Money, cost: Money, tenure_days: int) -> Decimal:
    """
    Simple annualized cost: ((cost / principal) / days) x 365 x 100

    Not a regulatory APR; no discounting of cash flows.
    """
    if tenure_days <= 0:
        raise ValueError("tenure_days must be positive")
    rate = (cost.amount / principal.amount) / Decimal(tenure_days) * Decimal('365') * Decimal('100')
    return rate.quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def effective_annual_rate(annual_rate_percent: Decimal, compounding_per_year: int) -> Decimal:
    """(1 + r/m)^m - 1, as a percentage"""
    nominal = annual_rate_percent / Decimal('100')
    growth = (Decimal('1') + nominal / Decimal(compounding_per_year)) ** compounding_per_year
    return ((growth - Decimal('1')) * Decimal('100')).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def illustrate_cost(
    terms: LoanTerms,
    schedule: RepaymentSchedule,
    processing_fee: Optional[Money] = None,
    other_charges: Optional[Money] = None
) -> CostIllustration:
    """
    Build the cost illustration for a computed schedule

    Args:
        terms: Terms the schedule was generated from
        schedule: Schedule produced by the amortization engine
        processing_fee: One-time fee charged at disbursal
        other_charges: Any further charges (e.g. taxes on the fee)

    Returns:
        CostIllustration with APR over the actual calendar days of the loan
    """
    currency = terms.currency
    processing_fee = processing_fee or Money.zero(currency)
    other_charges = other_charges or Money.zero(currency)
    total_charges = processing_fee + other_charges

    tenure_days = (schedule.maturity_date - terms.start_date).days
    apr = annualized_cost_rate(terms.principal, schedule.total_interest + total_charges, tenure_days)

    # A lump-sum loan compounds monthly regardless of its nominal frequency
    if terms.repayment_style == RepaymentStyle.FULL_PAYMENT:
        compounding = 12
    else:
        compounding = terms.payments_per_year

    total_cost = schedule.total_amount + total_charges
    average_payment = Money(
        total_cost.amount / Decimal(schedule.number_of_payments), currency
    )

    ratio = None
    if schedule.total_interest.is_positive():
        ratio = (terms.principal.amount / schedule.total_interest.amount).quantize(
            RATIO_QUANTUM, rounding=ROUND_HALF_UP
        )

    return CostIllustration(
        apr_percent=apr,
        effective_annual_rate_percent=effective_annual_rate(terms.annual_rate_percent, compounding),
        processing_fee=processing_fee,
        other_charges=other_charges,
        total_charges=total_charges,
        total_cost_of_credit=total_cost,
        average_payment=average_payment,
        principal_to_interest_ratio=ratio,
        tenure_days=tenure_days,
    )
