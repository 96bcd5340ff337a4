"""
Tests for the hash-chained audit trail
"""

from decimal import Decimal

from funds_core.storage import InMemoryStorage
from funds_core.audit import AuditTrail, AuditEventType

from factories import ADMIN_ID, make_system, register


class TestAuditTrail:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.audit.log_event(AuditEventType.USER_REGISTERED, "user", "u1", {"username": "alice"})
        second = self.audit.log_event(AuditEventType.BALANCE_ADJUSTED, "transaction", "t1",
                                      {"amount": Decimal('12.50')}, user_id=ADMIN_ID)

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert second.metadata == {"amount": "12.50"}
        assert self.audit.verify_integrity()["valid"]

    def test_tampered_metadata_is_detected(self):
        event = self.audit.log_event(AuditEventType.BALANCE_ADJUSTED, "transaction", "t1", {"amount": "5.00"})
        self.audit.log_event(AuditEventType.TRANSFER_SUBMITTED, "transaction", "t2")

        record = self.storage.load("audit_events", event.id)
        record["metadata"]["amount"] = "5000.00"
        self.storage.save("audit_events", event.id, record)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert [e["event_id"] for e in result["hash_errors"]] == [event.id]

    def test_removed_event_breaks_chain(self):
        self.audit.log_event(AuditEventType.USER_REGISTERED, "user", "u1")
        middle = self.audit.log_event(AuditEventType.USER_STATUS_CHANGED, "user", "u1")
        self.audit.log_event(AuditEventType.USER_DELETED, "user", "u1")

        self.storage.delete("audit_events", middle.id)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_entity_filter_and_limit(self):
        for i in range(3):
            self.audit.log_event(AuditEventType.CARD_FROZEN, "card", f"u{i}")

        assert [e.entity_id for e in self.audit.get_events_for_entity("card", "u1")] == ["u1"]
        assert [e.sequence for e in self.audit.get_all_events(limit=2)] == [2, 3]
        assert self.audit.count_events() == 3


class TestSystemAudit:

    def test_operations_leave_a_valid_chain(self):
        system = make_system()
        alice = register(system, "alice")
        system.user_registry.set_status(alice.id, "Suspended", "Suspicious login activity", ADMIN_ID)
        system.user_registry.set_announcement(alice.id, True, "Branch closed on Friday", ADMIN_ID)

        events = system.audit_trail.get_events_for_entity("user", alice.id)
        assert [e.event_type for e in events] == [
            AuditEventType.USER_REGISTERED,
            AuditEventType.USER_STATUS_CHANGED,
            AuditEventType.ANNOUNCEMENT_CHANGED,
        ]
        assert events[1].user_id == ADMIN_ID
        assert system.audit_trail.verify_integrity()["valid"]
