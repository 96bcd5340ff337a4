"""
Tests for check deposit submission and review
"""

import threading
from decimal import Decimal

import pytest

from funds_core.check_deposits import CheckDepositStatus
from funds_core.transactions import TransactionCategory
from funds_core.notifications import NotificationKind
from funds_core.errors import ValidationError, NotFoundError, ConflictError

from factories import ADMIN_ID, make_system, register, reload, checking, savings


class TestCheckDeposits:

    def setup_method(self):
        self.system = make_system()
        self.manager = self.system.deposit_manager
        self.alice = register(self.system, "alice")
        self.account = checking(self.alice).account_number

    def submit(self, amount="75.00", currency="USD", account=None):
        return self.manager.submit_deposit(self.alice.id, amount, currency, account or self.account,
                                           "img/front.jpg", "img/back.jpg")

    def balance(self):
        return checking(reload(self.system, self.alice)).balance

    def test_sequential_ids(self):
        first = self.submit()
        second = self.submit("10")
        assert first.deposit_id == "DEP-1000"
        assert second.deposit_id == "DEP-1001"
        assert first.status == CheckDepositStatus.PENDING
        assert first.username == "alice"
        # Nothing is credited until review
        assert self.balance() == Decimal('100.00')

    def test_approve_credits_once(self):
        deposit = self.submit()

        approved = self.manager.review_deposit(deposit.id, "Approved", None, ADMIN_ID)
        assert approved.status == CheckDepositStatus.APPROVED
        assert approved.reviewed_by_admin == ADMIN_ID
        assert approved.credited_account_number == self.account
        assert self.balance() == Decimal('175.00')

        again = self.manager.review_deposit(deposit.id, "approved", None, ADMIN_ID)
        assert again.status == CheckDepositStatus.APPROVED
        assert self.balance() == Decimal('175.00')

        entry = self.system.ledger.get_by_reference(f"CHK-{deposit.id}")
        assert entry.category == TransactionCategory.CHECK_DEPOSIT
        assert entry.amount == Decimal('75.00')
        assert self.system.reconciler.reconcile(self.alice.id).balanced

    def test_decline_after_approve_conflicts(self):
        deposit = self.submit()
        self.manager.review_deposit(deposit.id, "Approved", None, ADMIN_ID)

        with pytest.raises(ConflictError) as exc_info:
            self.manager.review_deposit(deposit.id, "Declined", "Signature mismatch", ADMIN_ID)
        assert exc_info.value.code == "already_reviewed"
        assert self.balance() == Decimal('175.00')

    def test_decline_requires_notes(self):
        deposit = self.submit()
        with pytest.raises(ValidationError):
            self.manager.review_deposit(deposit.id, "Declined", "bad", ADMIN_ID)

        declined = self.manager.review_deposit(deposit.id, "Declined", "Image is blurry", ADMIN_ID)
        assert declined.status == CheckDepositStatus.DECLINED
        assert declined.review_notes == "Image is blurry"
        assert self.balance() == Decimal('100.00')

    def test_pending_is_not_a_decision(self):
        deposit = self.submit()
        with pytest.raises(ValidationError):
            self.manager.review_deposit(deposit.id, "Pending", None, ADMIN_ID)

    def test_matching_destination_is_credited(self):
        deposit = self.submit("20", account=savings(self.alice).account_number)
        approved = self.manager.review_deposit(deposit.id, "Approved", None, ADMIN_ID)
        assert approved.credited_account_number == savings(self.alice).account_number
        assert savings(reload(self.system, self.alice)).balance == Decimal('520.00')

    def test_mismatched_destination_falls_back_to_currency_match(self):
        deposit = self.submit("20", currency="EUR")
        # Account numbers are regenerated in EUR before the review
        user = self.system.user_registry.change_currency(self.alice.id, "EUR", ADMIN_ID)

        approved = self.manager.review_deposit(deposit.id, "Approved", None, ADMIN_ID)

        assert approved.credited_account_number == checking(user).account_number
        assert checking(reload(self.system, user)).balance == Decimal('120.00')
        assert self.system.reconciler.reconcile(user.id).balanced

    def test_no_account_in_deposit_currency(self):
        deposit = self.submit(currency="EUR")

        with pytest.raises(NotFoundError):
            self.manager.review_deposit(deposit.id, "Approved", None, ADMIN_ID)

        assert self.manager.get_deposit(deposit.id).status == CheckDepositStatus.PENDING
        assert self.balance() == Decimal('100.00')

    @pytest.mark.parametrize("amount", ["0", "-1", "abc", "1e30", "1000000000000.01"])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            self.submit(amount)

    def test_missing_images(self):
        with pytest.raises(ValidationError):
            self.manager.submit_deposit(self.alice.id, "10", "USD", self.account, "front.jpg", "")

    def test_foreign_destination(self):
        bobby = register(self.system, "bobby")
        with pytest.raises(NotFoundError):
            self.submit(account=checking(bobby).account_number)

    def test_unknown_deposit(self):
        with pytest.raises(NotFoundError):
            self.manager.review_deposit("DEP-9999", "Approved", None, ADMIN_ID)

    def test_list_by_status(self):
        first = self.submit()
        self.submit("5")
        self.manager.review_deposit(first.id, "Approved", None, ADMIN_ID)

        pending = self.manager.list_deposits(CheckDepositStatus.PENDING)
        assert [d.id for d in pending] == ["DEP-1001"]
        assert len(self.manager.list_deposits(user_id=self.alice.id)) == 2

    def test_concurrent_submissions_get_unique_ids(self):
        deposits = []

        def worker():
            deposits.append(self.submit("1.00"))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(d.id for d in deposits) == ["DEP-1000", "DEP-1001", "DEP-1002", "DEP-1003"]

    def test_notifications(self):
        deposit = self.submit()
        self.manager.review_deposit(deposit.id, "Approved", None, ADMIN_ID)

        kinds = [n["kind"] for n in self.system.notification_service.list_for_recipient(self.alice.id)]
        assert NotificationKind.CHECK_DEPOSIT_SUBMITTED.value in kinds
        assert NotificationKind.CHECK_DEPOSIT_REVIEWED.value in kinds
