"""
Payment Period Module

Calendar arithmetic for installment due dates. Works on calendar dates only
(never instants), so results do not depend on the host timezone.
"""

from datetime import date, datetime, timedelta
from enum import Enum
import calendar


class PaymentFrequency(Enum):
    """Installment frequency options"""
    WEEKLY = "weekly"            # 52 payments per year
    BI_WEEKLY = "bi_weekly"      # 26 payments per year
    MONTHLY = "monthly"          # 12 payments per year
    QUARTERLY = "quarterly"      # 4 payments per year
    HALF_YEARLY = "half_yearly"  # 2 payments per year
    YEARLY = "yearly"            # 1 payment per year


PAYMENTS_PER_YEAR = {
    PaymentFrequency.WEEKLY: 52,
    PaymentFrequency.BI_WEEKLY: 26,
    PaymentFrequency.MONTHLY: 12,
    PaymentFrequency.QUARTERLY: 4,
    PaymentFrequency.HALF_YEARLY: 2,
    PaymentFrequency.YEARLY: 1,
}

# Day-based frequencies step in days, the rest in whole months
_DAYS_PER_PERIOD = {
    PaymentFrequency.WEEKLY: 7,
    PaymentFrequency.BI_WEEKLY: 14,
}

_MONTHS_PER_PERIOD = {
    PaymentFrequency.MONTHLY: 1,
    PaymentFrequency.QUARTERLY: 3,
    PaymentFrequency.HALF_YEARLY: 6,
    PaymentFrequency.YEARLY: 12,
}


def payments_per_year(frequency: PaymentFrequency) -> int:
    """Get number of payments per year"""
    try:
        return PAYMENTS_PER_YEAR[frequency]
    except KeyError:
        raise ValueError(f"Unsupported payment frequency: {frequency}")


def periods_in_tenure(tenure_months: int, frequency: PaymentFrequency) -> int:
    """
    Number of whole installments that fit in a tenure.

    A partial trailing period is dropped, so a 6 month loan repaid yearly
    has zero installments; callers must reject that.
    """
    return (tenure_months * payments_per_year(frequency)) // 12


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_period(start_date: date, frequency: PaymentFrequency, count: int = 1) -> date:
    """
    Move `count` installment periods forward from `start_date`.

    Month-based frequencies clamp to the last day of short months
    (Jan 31 + 1 month is Feb 28 or 29).
    """
    if isinstance(start_date, datetime):
        raise TypeError("add_period works on calendar dates, not datetimes")

    if frequency in _DAYS_PER_PERIOD:
        return start_date + timedelta(days=_DAYS_PER_PERIOD[frequency] * count)
    if frequency in _MONTHS_PER_PERIOD:
        return add_months(start_date, _MONTHS_PER_PERIOD[frequency] * count)
    raise ValueError(f"Unsupported payment frequency: {frequency}")


def due_dates(start_date: date, frequency: PaymentFrequency, count: int) -> list:
    """Due dates of installments 1..count, each measured from the start date"""
    return [add_period(start_date, frequency, i) for i in range(1, count + 1)]
