"""
Tests for ledger versus balance reconciliation
"""

from decimal import Decimal

import pytest

from funds_core.audit import AuditEventType
from funds_core.errors import NotFoundError

from factories import ADMIN_ID, make_system, register, reload, checking


class TestReconciler:

    def setup_method(self):
        self.system = make_system()
        self.reconciler = self.system.reconciler
        self.alice = register(self.system, "alice")
        self.bobby = register(self.system, "bobby", currency="GBP")

    def corrupt_balance(self, user, amount):
        user = reload(self.system, user)
        checking(user).balance = amount
        self.system.user_registry.save_user(user)

    def test_clean_books(self):
        self.system.transfer_engine.admin_adjust_balance(
            self.alice.id, checking(self.alice).account_number, "debit", "30", None, ADMIN_ID
        )
        report = self.reconciler.reconcile(actor_id=ADMIN_ID)

        assert report.balanced
        assert report.checked == 4
        assert report.to_dict()["discrepancies"] == []

    def test_balance_written_outside_the_ledger_is_flagged(self):
        self.corrupt_balance(self.alice, Decimal('999.00'))

        report = self.reconciler.reconcile()

        assert not report.balanced
        [discrepancy] = report.discrepancies
        assert discrepancy.user_id == self.alice.id
        assert discrepancy.account_number == checking(self.alice).account_number
        assert discrepancy.expected == Decimal('100.00')
        assert discrepancy.actual == Decimal('999.00')
        assert discrepancy.difference == Decimal('899.00')
        assert report.to_dict()["discrepancies"][0]["difference"] == "899.00"

    def test_single_user(self):
        self.corrupt_balance(self.alice, Decimal('1.00'))

        report = self.reconciler.reconcile(self.bobby.id)

        assert report.checked == 2
        assert report.balanced

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            self.reconciler.reconcile("missing")

    def test_run_is_audited(self):
        self.reconciler.reconcile(actor_id=ADMIN_ID)
        events = self.system.audit_trail.get_events_for_entity("system", "all")
        assert [e.event_type for e in events] == [AuditEventType.RECONCILIATION_RUN]
        assert events[0].metadata == {"checked": 4, "discrepancies": 0}
