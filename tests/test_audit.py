"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
and audit event logging for loan progression and compliance.
"""

import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from lending_core.storage import InMemoryStorage, SQLiteStorage
from lending_core.audit import (
    AuditTrail, AuditEvent, AuditEventType
)


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def make_event(self, **overrides):
        now = datetime.now(timezone.utc)
        values = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.INSTALLMENT_ADVANCED,
            entity_type="loan",
            entity_id="LOAN001",
            previous_hash="prev_hash",
            current_hash="",
            metadata={"confirmed_installment": 1}
        )
        values.update(overrides)
        return AuditEvent(**values)

    def test_metadata_serialization(self):
        """Metadata is reduced to JSON-safe values"""
        event = self.make_event(metadata={
            "amount": Decimal('10661.85'),
            "due": datetime(2024, 2, 15, tzinfo=timezone.utc),
            "event": AuditEventType.LOAN_OVERDUE,
            "nested": {"values": [Decimal('1.1'), Decimal('2.2')]}
        })

        assert event.metadata["amount"] == "10661.85"
        assert event.metadata["due"] == "2024-02-15T00:00:00+00:00"
        assert event.metadata["event"] == "loan_overdue"
        assert event.metadata["nested"]["values"] == ["1.1", "2.2"]

    def test_hash_calculation(self):
        event = self.make_event()
        expected_hash = event.calculate_hash()
        assert len(expected_hash) == 64
        assert expected_hash == event.calculate_hash()

    def test_hash_verification(self):
        event = self.make_event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.current_hash = "tampered_hash"
        assert not event.verify_hash()

    def test_hash_includes_entity(self):
        event1 = self.make_event()
        event2 = self.make_event(created_at=event1.created_at, updated_at=event1.updated_at)
        assert event1.calculate_hash() == event2.calculate_hash()

        event2.entity_id = "LOAN002"
        assert event1.calculate_hash() != event2.calculate_hash()

    def test_round_trip(self):
        event = self.make_event(user_id="ops")
        event.current_hash = event.calculate_hash()
        restored = AuditEvent.from_dict(event.to_dict())
        assert restored.event_type == AuditEventType.INSTALLMENT_ADVANCED
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_log_first_event(self):
        event = self.audit_trail.log_event(
            event_type=AuditEventType.SCHEDULE_INITIALIZED,
            entity_type="loan",
            entity_id="LOAN001",
            metadata={"total_installments": 12}
        )

        assert event.previous_hash == ""
        assert event.verify_hash()
        assert self.audit_trail.count_events() == 1

    def test_chain_links(self):
        first = self.audit_trail.log_event(AuditEventType.SCHEDULE_INITIALIZED, "loan", "LOAN001")
        second = self.audit_trail.log_event(AuditEventType.INSTALLMENT_ADVANCED, "loan", "LOAN001")
        third = self.audit_trail.log_event(AuditEventType.LOAN_COMPLETED, "loan", "LOAN001")

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash

    def test_events_for_entity(self):
        self.audit_trail.log_event(AuditEventType.SCHEDULE_INITIALIZED, "loan", "LOAN001")
        self.audit_trail.log_event(AuditEventType.SCHEDULE_INITIALIZED, "loan", "LOAN002")
        self.audit_trail.log_event(AuditEventType.INSTALLMENT_ADVANCED, "loan", "LOAN001")

        events = self.audit_trail.get_events_for_entity("loan", "LOAN001")
        assert [e.event_type for e in events] == [
            AuditEventType.SCHEDULE_INITIALIZED, AuditEventType.INSTALLMENT_ADVANCED
        ]
        assert len(self.audit_trail.get_events_for_entity("loan", "LOAN001", limit=1)) == 1

    def test_events_by_type_and_time(self):
        self.audit_trail.log_event(AuditEventType.COMPLIANCE_CHECK, "offer", "OFFER001")
        self.audit_trail.log_event(AuditEventType.LOAN_OVERDUE, "loan", "LOAN001")

        assert len(self.audit_trail.get_events_by_type(AuditEventType.COMPLIANCE_CHECK)) == 1

        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        assert self.audit_trail.get_events_by_type(AuditEventType.LOAN_OVERDUE, start_time=future) == []

    def test_integrity_valid(self):
        for number in range(1, 6):
            self.audit_trail.log_event(
                AuditEventType.INSTALLMENT_ADVANCED, "loan", "LOAN001",
                metadata={"confirmed_installment": number}
            )

        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 5
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_tampered_metadata_detected(self):
        event = self.audit_trail.log_event(
            AuditEventType.COMPLIANCE_CHECK, "offer", "OFFER001",
            metadata={"status": "failed"}
        )
        self.audit_trail.log_event(AuditEventType.COMPLIANCE_CHECK, "offer", "OFFER002")

        record = self.storage.load("audit_events", event.id)
        record['metadata'] = {"status": "passed"}
        self.storage.save("audit_events", event.id, record)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'][0]['event_id'] == event.id

    def test_deleted_event_breaks_chain(self):
        self.audit_trail.log_event(AuditEventType.SCHEDULE_INITIALIZED, "loan", "LOAN001")
        middle = self.audit_trail.log_event(AuditEventType.INSTALLMENT_ADVANCED, "loan", "LOAN001")
        self.audit_trail.log_event(AuditEventType.LOAN_COMPLETED, "loan", "LOAN001")

        self.storage.delete("audit_events", middle.id)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert len(result['chain_breaks']) == 1

    def test_shared_storage_continues_chain(self):
        """A second trail over the same storage links onto the existing chain"""
        first = self.audit_trail.log_event(AuditEventType.SCHEDULE_INITIALIZED, "loan", "LOAN001")
        other_trail = AuditTrail(self.storage)
        second = other_trail.log_event(AuditEventType.INSTALLMENT_ADVANCED, "loan", "LOAN001")

        assert second.previous_hash == first.current_hash
        assert self.audit_trail.verify_integrity()['valid']


class TestSQLiteAuditTrail:

    def test_chain_survives_reopen(self, tmp_path):
        path = tmp_path / "audit.db"
        storage = SQLiteStorage(path)
        trail = AuditTrail(storage)
        first = trail.log_event(AuditEventType.SCHEDULE_INITIALIZED, "loan", "LOAN001")
        storage.close()

        storage = SQLiteStorage(path)
        reopened = AuditTrail(storage)
        second = reopened.log_event(AuditEventType.INSTALLMENT_ADVANCED, "loan", "LOAN001")

        assert second.previous_hash == first.current_hash
        assert reopened.verify_integrity()['valid']
        storage.close()
