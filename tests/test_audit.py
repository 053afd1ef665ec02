"""
Test suite for the hash-chained audit trail
"""

import pytest
from unittest.mock import patch
import threading
from decimal import Decimal
from datetime import date

from installment_engine.audit import AuditTrail, AuditEvent, AuditEventType
from installment_engine.storage import InMemoryStorage


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


class TestAuditEvent:
    """Test individual audit events"""

    def test_metadata_serialization(self, audit_trail):
        event = audit_trail.log_event(
            AuditEventType.INSTALLMENT_PAID, "plan", "plan-1",
            metadata={"amount": Decimal('7720.26'), "paid_date": date(2024, 2, 1), "installment_no": 1}
        )
        assert event.metadata == {"amount": "7720.26", "paid_date": "2024-02-01", "installment_no": 1}

    def test_hash_verification(self, audit_trail):
        event = audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-1", {"tenure": 6})
        assert event.verify_hash()

        event.metadata["tenure"] = 12
        assert not event.verify_hash()

    def test_storage_round_trip(self, audit_trail, storage):
        event = audit_trail.log_event(AuditEventType.PLAN_CANCELLED, "plan", "plan-1", user_id="clerk-7")
        restored = AuditEvent.from_dict(storage.load("audit_events", event.id))

        assert restored.event_type == AuditEventType.PLAN_CANCELLED
        assert restored.user_id == "clerk-7"
        assert restored.verify_hash()


class TestAuditTrail:
    """Test the audit chain"""

    def test_first_event_starts_chain(self, audit_trail):
        event = audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-1")
        assert event.sequence == 1
        assert event.previous_hash == ""

    def test_events_are_chained(self, audit_trail):
        first = audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-1")
        second = audit_trail.log_event(AuditEventType.INSTALLMENT_PAID, "plan", "plan-1")
        third = audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-2")

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash
        assert [e.sequence for e in audit_trail.get_all_events()] == [1, 2, 3]

    def test_get_events_for_entity(self, audit_trail):
        audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-1")
        audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-2")
        audit_trail.log_event(AuditEventType.PLAN_CANCELLED, "plan", "plan-1")

        events = audit_trail.get_events_for_entity("plan", "plan-1")
        assert [e.event_type for e in events] == [AuditEventType.PLAN_CREATED, AuditEventType.PLAN_CANCELLED]

    def test_verify_integrity_valid_chain(self, audit_trail):
        for i in range(5):
            audit_trail.log_event(AuditEventType.INSTALLMENT_PAID, "plan", "plan-1", {"installment_no": i + 1})

        result = audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 5

    def test_verify_integrity_empty_trail(self, audit_trail):
        assert audit_trail.verify_integrity() == {
            'valid': True, 'total_events': 0, 'hash_errors': [], 'chain_breaks': []
        }

    def test_verify_integrity_detects_tampering(self, audit_trail, storage):
        audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-1", {"tenure": 6})
        paid = audit_trail.log_event(AuditEventType.INSTALLMENT_PAID, "plan", "plan-1", {"amount": "100.00"})

        record = storage.load("audit_events", paid.id)
        record['metadata']['amount'] = "1.00"
        storage.save("audit_events", paid.id, record)

        result = audit_trail.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'][0]['event_id'] == paid.id

    def test_verify_integrity_detects_chain_break(self, audit_trail, storage):
        first = audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-1")
        audit_trail.log_event(AuditEventType.PLAN_CANCELLED, "plan", "plan-1")
        storage.delete("audit_events", first.id)

        result = audit_trail.verify_integrity()
        assert not result['valid']
        assert len(result['chain_breaks']) == 1

    def test_concurrent_event_logging(self, audit_trail):
        def log_events(n):
            for i in range(10):
                audit_trail.log_event(AuditEventType.INSTALLMENT_PAID, "plan", f"plan-{n}", {"i": i})

        threads = [threading.Thread(target=log_events, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        events = audit_trail.get_all_events()
        assert [e.sequence for e in events] == list(range(1, 41))
        assert audit_trail.verify_integrity()['valid']

    def test_appends_do_not_rescan_the_log(self, audit_trail, storage):
        audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-1")

        with patch.object(storage, "load_all", wraps=storage.load_all) as load_all:
            for i in range(5):
                audit_trail.log_event(AuditEventType.INSTALLMENT_PAID, "plan", "plan-1", {"i": i})
        assert load_all.call_count == 0

        assert [e.sequence for e in audit_trail.get_all_events()] == [1, 2, 3, 4, 5, 6]
        assert audit_trail.verify_integrity()['valid']

    def test_chain_continues_after_another_writer(self, audit_trail, storage):
        other_trail = AuditTrail(storage)
        audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-1")
        foreign = other_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-2")

        event = audit_trail.log_event(AuditEventType.PLAN_CANCELLED, "plan", "plan-1")
        assert event.sequence == 3
        assert event.previous_hash == foreign.current_hash
        assert audit_trail.verify_integrity()['valid']

    def test_rolled_back_append_is_not_chained(self, audit_trail, storage):
        audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "plan-1")
        with pytest.raises(RuntimeError):
            with storage.atomic():
                audit_trail.log_event(AuditEventType.PLAN_CANCELLED, "plan", "plan-1")
                raise RuntimeError("abort")

        event = audit_trail.log_event(AuditEventType.PLAN_DEFAULTED, "plan", "plan-1")
        assert event.sequence == 2
        assert audit_trail.verify_integrity()['valid']
