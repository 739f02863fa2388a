"""
Tests for the printable schedule document
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.amortization import generate_schedule
from lending_core.currency import Money
from lending_core.documents import SCHEDULE_COLUMNS, build_schedule_document
from lending_core.illustration import illustrate_cost
from lending_core.terms import LoanTerms, InterestMethod, RepaymentStyle, TenureUnit


def make_terms(style=RepaymentStyle.EMI, tenure=12, **extra):
    return LoanTerms(
        principal=Money(Decimal('120000')),
        annual_rate_percent=Decimal('12'),
        interest_method=InterestMethod.REDUCING,
        tenure_value=tenure,
        tenure_unit=TenureUnit.MONTHS,
        repayment_style=style,
        start_date=date(2024, 1, 15),
        **extra
    )


@pytest.fixture
def terms():
    return make_terms()


@pytest.fixture
def schedule(terms):
    return generate_schedule(terms)


class TestScheduleDocument:

    def test_summary(self, terms, schedule):
        document = build_schedule_document(terms, schedule, loan_id="loan-1", generated_on=date(2024, 1, 16))
        summary = document["summary"]

        assert document["title"] == "Repayment Schedule"
        assert document["generated_on"] == "2024-01-16"
        assert summary["Loan account No."] == "LOAN-1"
        assert summary["Sanctioned loan amount"] == "INR 120,000.00"
        assert summary["Interest rate (p.a.)"] == "12% reducing"
        assert summary["Loan term (in months)"] == "12"
        assert summary["Number of installments"] == "12"
        assert summary["First due date"] == "15 Feb 2024"
        assert summary["Maturity date"] == "15 Jan 2025"
        assert summary["Frequency"] == "monthly"
        assert summary["EMI"] == "INR 10,661.85"

    def test_rows_copied_from_schedule(self, terms, schedule):
        document = build_schedule_document(terms, schedule)
        assert document["columns"] == list(SCHEDULE_COLUMNS)
        assert len(document["rows"]) == 12

        first = document["rows"][0]
        assert first == {
            "#": "1",
            "DUE DATE": "15 Feb 2024",
            "PRINCIPAL": "INR 9,461.85",
            "INTEREST": "INR 1,200.00",
            "EMI/AMOUNT": "INR 10,661.85",
            "BALANCE": "INR 110,538.15",
        }
        assert document["rows"][-1]["BALANCE"] == "INR 0.00"

    def test_totals_match_schedule(self, terms, schedule):
        totals = build_schedule_document(terms, schedule)["totals"]
        assert totals["PRINCIPAL"] == schedule.total_principal.to_string()
        assert totals["INTEREST"] == schedule.total_interest.to_string()
        assert totals["EMI/AMOUNT"] == schedule.total_amount.to_string()

    def test_annotation_columns(self):
        terms = make_terms(grace_period_days=5, late_payment_penalty_percent=Decimal('2'))
        row = build_schedule_document(terms, generate_schedule(terms))["rows"][0]
        assert row["GRACE UNTIL"] == "20 Feb 2024"
        assert row["LATE FEE"] == "INR 213.24"

    def test_full_payment_layout(self):
        terms = make_terms(style=RepaymentStyle.FULL_PAYMENT, tenure=3)
        document = build_schedule_document(terms, generate_schedule(terms))
        assert "Frequency" not in document["summary"]
        assert "EMI" not in document["summary"]
        assert document["summary"]["Repayment"] == "Single payment at maturity"
        assert len(document["rows"]) == 1

    def test_cost_illustration(self, terms, schedule):
        illustration = illustrate_cost(terms, schedule, processing_fee=Money(Decimal('1000')))
        document = build_schedule_document(terms, schedule, illustration=illustration)
        section = document["cost_illustration"]
        assert section["Processing fee"] == "INR 1,000.00"
        assert section["Annual percentage rate (illustrative)"] == f"{illustration.apr_percent}%"

    def test_no_illustration(self, terms, schedule):
        assert build_schedule_document(terms, schedule)["cost_illustration"] is None
