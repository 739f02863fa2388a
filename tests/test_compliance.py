"""
Test suite for the compliance guard

Tests amount and rate ceilings, KYC on both parties, payment checks,
immutable audit records on the hash chain, and compliance reporting.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone, timedelta

from lending_core.amortization import generate_schedule
from lending_core.audit import AuditTrail, AuditEventType
from lending_core.compliance import (
    ComplianceGuard, ComplianceResult, ComplianceRuleId, ComplianceStatus,
    Party, PaymentConfirmation
)
from lending_core.config import LendingConfig
from lending_core.currency import Money
from lending_core.events import DomainEvent, EventDispatcher
from lending_core.storage import InMemoryStorage
from lending_core.terms import LoanTerms, InterestMethod, RepaymentStyle, TenureUnit


def make_terms(principal='120000', rate='12'):
    return LoanTerms(
        principal=Money(Decimal(principal)),
        annual_rate_percent=Decimal(rate),
        interest_method=InterestMethod.REDUCING,
        tenure_value=12,
        tenure_unit=TenureUnit.MONTHS,
        repayment_style=RepaymentStyle.EMI,
        start_date=date(2024, 1, 15),
    )


BORROWER = Party(id="user-b", name="Asha Rao", phone="+919800000001", email="asha@example.com")
LENDER = Party(id="user-l", name="Vikram Shah", phone="+919800000002", email="vikram@example.com")


@pytest.fixture
def audit_trail():
    return AuditTrail(InMemoryStorage())


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def guard(audit_trail, dispatcher):
    return ComplianceGuard(audit_trail, config=LendingConfig(), event_dispatcher=dispatcher)


class TestTermsChecks:

    def test_within_limits(self, guard):
        result = guard.check_terms(make_terms(), "offer-1")
        assert result.is_compliant
        assert result.violations == ()
        assert result.warnings == ()
        assert [r.status for r in result.audit_records] == [
            ComplianceStatus.PASSED, ComplianceStatus.PASSED
        ]
        assert [r.rule_id for r in result.audit_records] == [
            ComplianceRuleId.LOAN_AMOUNT_LIMITS, ComplianceRuleId.INTEREST_RATE_LIMITS
        ]

    def test_amount_above_maximum(self, guard):
        result = guard.check_terms(make_terms(principal='1500000'), "offer-1")
        assert not result.is_compliant
        assert "Loan amount exceeds INR 1,000,000.00 maximum limit" in result.violations
        # Also above the large amount threshold
        assert "Large loan amounts require additional documentation" in result.warnings

    def test_amount_below_minimum(self, audit_trail):
        guard = ComplianceGuard(audit_trail, config=LendingConfig(min_principal="5000"))
        result = guard.check_terms(make_terms(principal='1000'), "offer-1")
        assert result.violations == ("Loan amount must be at least INR 5,000.00",)

    def test_rate_above_maximum(self, guard):
        result = guard.check_terms(make_terms(rate='55'), "offer-1")
        assert not result.is_compliant
        assert "Interest rate exceeds 50% annual maximum" in result.violations
        assert "High interest rate may require additional disclosures" in result.warnings

    def test_high_rate_is_warning_only(self, guard):
        result = guard.check_terms(make_terms(rate='40'), "offer-1")
        assert result.is_compliant
        rate_record = result.audit_records[1]
        assert rate_record.status == ComplianceStatus.WARNING
        assert rate_record.message.startswith("Interest rate compliant with warnings")

    def test_configurable_ceiling(self, audit_trail):
        guard = ComplianceGuard(audit_trail, config=LendingConfig(max_annual_rate_percent="24"))
        result = guard.check_terms(make_terms(rate='30'), "offer-1")
        assert result.violations == ("Interest rate exceeds 24% annual maximum",)

    def test_failure_message_lists_violations(self, guard):
        record = guard.check_terms(make_terms(rate='60'), "offer-1").audit_records[1]
        assert record.status == ComplianceStatus.FAILED
        assert record.message == "Rate violations: Interest rate exceeds 50% annual maximum"


class TestKYC:

    def test_complete_parties(self, guard):
        result = guard.check_parties(BORROWER, LENDER)
        assert result.is_compliant
        assert [r.entity_id for r in result.audit_records] == ["user-b", "user-l"]
        assert all(r.entity_type == "user" for r in result.audit_records)

    def test_missing_phone_and_name(self, guard):
        result = guard.check_parties(Party(id="user-x", email="x@example.com"))
        assert result.violations == ("Phone number is required", "Full name is required")
        assert result.audit_records[0].details['has_phone'] is False

    def test_missing_email_is_warning(self, guard):
        result = guard.check_parties(Party(id="user-y", name="Y", phone="+91980000"))
        assert result.is_compliant
        assert result.warnings == ("Email address is recommended for notifications",)


class TestCheckOffer:

    def test_compliant_offer(self, guard):
        result = guard.check_offer("offer-1", make_terms(), BORROWER, LENDER)
        assert result.is_compliant
        assert len(result.audit_records) == 4

    def test_lender_kyc_blocks_offer(self, guard):
        result = guard.check_offer("offer-1", make_terms(), BORROWER, Party(id="user-l"))
        assert not result.is_compliant
        assert "Phone number is required" in result.violations

    def test_failure_publishes_event(self, guard, dispatcher):
        received = []
        dispatcher.subscribe(DomainEvent.COMPLIANCE_FAILED, received.append)

        guard.check_offer("offer-1", make_terms(rate='70'), BORROWER, LENDER)

        assert len(received) == 1
        assert received[0].entity_id == "offer-1"
        assert received[0].data['violations'] == ["Interest rate exceeds 50% annual maximum"]

    def test_pass_publishes_nothing(self, guard, dispatcher):
        received = []
        dispatcher.subscribe_all(received.append)
        guard.check_offer("offer-1", make_terms(), BORROWER, LENDER)
        assert received == []


class TestPaymentChecks:

    def payment(self, amount, reference="UTR123", installment=1):
        return PaymentConfirmation(
            id="pay-1", loan_id="loan-1", installment_number=installment,
            amount=Money(Decimal(amount)), reference=reference
        )

    def test_valid_payment(self, guard):
        result = guard.check_payment(self.payment('10661.85'))
        assert result.is_compliant
        assert result.warnings == ()
        assert result.audit_records[0].entity_type == "payment"

    def test_non_positive_amount(self, guard):
        result = guard.check_payment(self.payment('0'))
        assert result.violations == ("Payment amount must be positive",)

    def test_warnings(self, guard):
        result = guard.check_payment(self.payment('250000', reference=None))
        assert result.is_compliant
        assert result.warnings == (
            "Large payment amount requires additional verification",
            "Payment reference string recommended for tracking",
        )

    def test_matches_schedule(self, guard):
        schedule = generate_schedule(make_terms())
        assert guard.check_payment(self.payment('10661.85'), schedule).is_compliant

        result = guard.check_payment(self.payment('9000'), schedule)
        assert not result.is_compliant
        assert "less than expected" in result.violations[0]
        assert result.audit_records[0].details['expected_amount'] == Decimal('10661.85')


class TestAuditRecords:

    def test_every_evaluation_is_audited(self, guard, audit_trail):
        guard.check_offer("offer-1", make_terms(), BORROWER, LENDER)
        events = audit_trail.get_events_by_type(AuditEventType.COMPLIANCE_CHECK)
        assert len(events) == 4
        assert audit_trail.verify_integrity()['valid']

    def test_records_are_immutable(self, guard):
        record = guard.check_terms(make_terms(), "offer-1").audit_records[0]
        with pytest.raises(AttributeError):
            record.status = ComplianceStatus.FAILED
        with pytest.raises(TypeError):
            record.details['amount'] = '1'

    def test_read_back_from_trail(self, guard):
        guard.check_terms(make_terms(rate='60'), "offer-1")
        guard.check_parties(BORROWER)

        records = guard.get_audit_records("offer-1")
        assert [r.rule_id for r in records] == [
            ComplianceRuleId.LOAN_AMOUNT_LIMITS, ComplianceRuleId.INTEREST_RATE_LIMITS
        ]
        assert records[1].status == ComplianceStatus.FAILED
        assert records[1].details['annual_rate_percent'] == '60'
        assert len(guard.get_audit_records()) == 3

    def test_audit_logging_disabled(self, audit_trail):
        guard = ComplianceGuard(audit_trail, config=LendingConfig(enable_audit_logging=False))
        result = guard.check_terms(make_terms(), "offer-1")
        assert len(result.audit_records) == 2
        assert audit_trail.count_events() == 0


class TestComplianceResult:

    def test_merge(self):
        a = ComplianceResult(violations=("a",), warnings=())
        b = ComplianceResult(violations=(), warnings=("w",))
        merged = a.merge(b)
        assert merged.violations == ("a",)
        assert merged.warnings == ("w",)
        assert not merged.is_compliant

    def test_empty_is_compliant(self):
        assert ComplianceResult().is_compliant


class TestReport:

    def test_counts(self, guard):
        guard.check_terms(make_terms(), "offer-1")                # 2 passed
        guard.check_terms(make_terms(rate='40'), "offer-2")       # passed + warning
        guard.check_parties(Party(id="user-z"))                   # failed

        report = guard.generate_report()
        assert report['total_entries'] == 5
        assert report['compliance_status'] == {'passed': 3, 'failed': 1, 'warnings': 1}
        assert report['period'] == {'from': 'inception', 'to': 'current'}
        assert len(report['entries']) == 5

    def test_filter_by_entity(self, guard):
        guard.check_terms(make_terms(), "offer-1")
        guard.check_terms(make_terms(), "offer-2")
        report = guard.generate_report(entity_id="offer-2")
        assert report['total_entries'] == 2
        assert all(e['entity_id'] == "offer-2" for e in report['entries'])

    def test_time_window(self, guard):
        guard.check_terms(make_terms(), "offer-1")
        future = datetime.now(timezone.utc) + timedelta(hours=1)
        report = guard.generate_report(start=future)
        assert report['total_entries'] == 0
        assert report['period']['from'] == future.isoformat()
