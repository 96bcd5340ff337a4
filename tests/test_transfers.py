"""
Tests for client transfers, admin adjustments and history generation
"""

import random
import re
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from funds_core.currency import Currency
from funds_core.transactions import TransactionStatus, TransactionCategory
from funds_core.transfers import (
    OWN_ACCOUNTS_TRANSFER, get_transfer_types, is_internal_transfer
)
from funds_core.outbox import TaskStatus
from funds_core.errors import (
    ValidationError, InvalidPinError, TransferBlockedError, InsufficientFundsError,
    NotFoundError, InternalError
)

from factories import ADMIN_ID, PIN, make_system, register, reload, checking, savings


class TestTransferTypes:

    def test_types_per_currency(self):
        assert get_transfer_types(Currency.USD)[1] == "ACH Transfer (Domestic)"
        assert "Faster Payments (UK)" in get_transfer_types(Currency.GBP)
        assert "SEPA Instant Credit Transfer" in get_transfer_types(Currency.EUR)
        assert "Interac e-Transfer" in get_transfer_types(Currency.CAD)
        assert "OSKO Payment (Fast)" in get_transfer_types(Currency.AUD)
        for currency in Currency:
            assert get_transfer_types(currency)[0] == OWN_ACCOUNTS_TRANSFER

    def test_internal_detection(self):
        assert is_internal_transfer(OWN_ACCOUNTS_TRANSFER)
        assert is_internal_transfer("Internal Transfer")
        assert is_internal_transfer("transfer between own accounts")
        assert not is_internal_transfer("ACH Transfer (Domestic)")
        assert not is_internal_transfer("International Wire Transfer")


class TestSubmitTransfer:

    def setup_method(self):
        self.system = make_system()
        self.engine = self.system.transfer_engine
        self.alice = register(self.system, "alice")
        self.bobby = register(self.system, "bobby")
        self.source = checking(self.alice).account_number

    def transfer(self, amount="40.00", transfer_type=OWN_ACCOUNTS_TRANSFER, pin=PIN, **kwargs):
        if is_internal_transfer(transfer_type):
            kwargs.setdefault("destination_account_number", savings(self.bobby).account_number)
        return self.engine.submit_transfer(self.alice.id, self.source, amount, transfer_type, pin, **kwargs)

    def balance(self, user=None):
        return checking(reload(self.system, user or self.alice)).balance

    def test_internal_transfer_debits_and_stays_processing(self):
        receipt = self.transfer()

        assert receipt.new_balance == Decimal('60.00')
        assert receipt.status == TransactionStatus.PROCESSING
        assert re.fullmatch(r"TXN-\d+-\d{10}", receipt.reference_id)
        assert self.balance() == Decimal('60.00')

        txn = self.system.ledger.get_transaction(receipt.transaction_id)
        assert txn.amount == Decimal('-40.00')
        assert txn.status == TransactionStatus.PROCESSING
        assert txn.is_internal
        assert txn.category == TransactionCategory.TRANSFER
        assert txn.destination_account_number == savings(self.bobby).account_number

        # Credit leg is deferred
        assert savings(reload(self.system, self.bobby)).balance == Decimal('500.00')

    def test_external_transfer(self):
        receipt = self.transfer("25.50", "ACH Transfer (Domestic)",
                                destination_name="Landlord", destination_bank="Other Bank")
        txn = self.system.ledger.get_transaction(receipt.transaction_id)
        assert not txn.is_internal
        assert txn.destination_name == "Landlord"
        assert self.balance() == Decimal('74.50')

    def test_insufficient_funds_scenario(self):
        with pytest.raises(InsufficientFundsError) as exc_info:
            self.transfer("150.00")

        assert exc_info.value.kind == "insufficient_funds"
        assert exc_info.value.message == "Transaction declined: insufficient funds"
        assert self.balance() == Decimal('100.00')
        entries = self.system.ledger.list_for_user(self.alice.id)
        assert all(e.category == TransactionCategory.OPENING_BALANCE for e in entries)

    def test_exact_balance_allowed(self):
        receipt = self.transfer("100.00")
        assert receipt.new_balance == Decimal('0.00')

    @pytest.mark.parametrize("amount", ["1e30", "99999999999999999999999999999.99", "1E+999999"])
    def test_oversized_amount_is_insufficient_funds(self, amount):
        with pytest.raises(InsufficientFundsError):
            self.transfer(amount)
        assert self.balance() == Decimal('100.00')

    def test_wrong_pin(self):
        with pytest.raises(InvalidPinError):
            self.transfer(pin="9999")
        assert self.balance() == Decimal('100.00')

    def test_policy_message_blocks_transfer(self):
        self.system.user_registry.set_transfer_message(
            self.alice.id, True, "Please visit a branch to verify your identity", ADMIN_ID
        )
        with pytest.raises(TransferBlockedError) as exc_info:
            self.transfer()

        assert exc_info.value.message == "Please visit a branch to verify your identity"
        assert exc_info.value.context["policy_type"] == "ADMIN_POLICY"
        assert self.balance() == Decimal('100.00')

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "10.001", "0.0000001", None, ""])
    def test_invalid_amounts(self, amount):
        with pytest.raises(ValidationError):
            self.transfer(amount)
        assert self.balance() == Decimal('100.00')

    def test_pin_format(self):
        with pytest.raises(ValidationError):
            self.transfer(pin="12a4")

    def test_internal_transfer_needs_destination(self):
        with pytest.raises(ValidationError):
            self.engine.submit_transfer(self.alice.id, self.source, "10", OWN_ACCOUNTS_TRANSFER, PIN)

    def test_internal_transfer_to_same_account(self):
        with pytest.raises(ValidationError):
            self.transfer(destination_account_number=self.source)

    def test_source_must_belong_to_user(self):
        with pytest.raises(NotFoundError):
            self.engine.submit_transfer(self.alice.id, checking(self.bobby).account_number,
                                        "10", "ACH Transfer (Domestic)", PIN)

    def test_failure_after_balance_write_rolls_back(self, monkeypatch):
        def broken_record(transaction):
            raise RuntimeError("simulated ledger outage")

        monkeypatch.setattr(self.system.ledger, "record", broken_record)
        outbox_before = self.system.storage.count("outbox")

        with pytest.raises(InternalError) as exc_info:
            self.transfer()

        assert "simulated" not in exc_info.value.message
        assert self.balance() == Decimal('100.00')
        assert self.system.storage.count("outbox") == outbox_before

    def test_concurrent_transfers_never_overdraw(self):
        outcomes = []

        def worker():
            try:
                self.transfer("20.00", "ACH Transfer (Domestic)")
                outcomes.append("ok")
            except InsufficientFundsError:
                outcomes.append("declined")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 5
        assert outcomes.count("declined") == 3
        assert self.balance() == Decimal('0.00')
        assert self.system.reconciler.reconcile(self.alice.id).balanced

    def test_post_commit_tasks_sent(self):
        receipt = self.transfer()
        events = self.system.audit_trail.get_events_for_entity("transaction", receipt.transaction_id)
        assert len(events) == 1
        assert not self.system.outbox.tasks_with_status(TaskStatus.FAILED)


class TestAdminAdjustBalance:

    def setup_method(self):
        self.system = make_system()
        self.engine = self.system.transfer_engine
        self.alice = register(self.system, "alice")
        self.account = checking(self.alice).account_number

    def test_credit(self):
        receipt = self.engine.admin_adjust_balance(self.alice.id, self.account, "credit", "250.25",
                                                   "Salary correction", ADMIN_ID)
        assert receipt.new_balance == Decimal('350.25')
        assert re.fullmatch(r"ADMIN-\d+-[a-z0-9]{6}", receipt.reference_id)

        txn = self.system.ledger.get_transaction(receipt.transaction_id)
        assert txn.amount == Decimal('250.25')
        assert txn.status == TransactionStatus.SUCCESSFUL
        assert txn.last_updated_by_admin == ADMIN_ID

    def test_debit(self):
        receipt = self.engine.admin_adjust_balance(self.alice.id, self.account, "DEBIT", "30", None, ADMIN_ID)
        assert receipt.new_balance == Decimal('70.00')
        txn = self.system.ledger.get_transaction(receipt.transaction_id)
        assert txn.amount == Decimal('-30.00')
        assert txn.description == "Admin debit"

    def test_debit_respects_zero_floor(self):
        with pytest.raises(InsufficientFundsError):
            self.engine.admin_adjust_balance(self.alice.id, self.account, "debit", "100.01", None, ADMIN_ID)
        assert checking(reload(self.system, self.alice)).balance == Decimal('100.00')

    @pytest.mark.parametrize("amount", ["1e30", "1000000000000.01"])
    def test_credit_above_ceiling_rejected(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            self.engine.admin_adjust_balance(self.alice.id, self.account, "credit", amount, None, ADMIN_ID)
        assert exc_info.value.context["field"] == "amount"
        assert checking(reload(self.system, self.alice)).balance == Decimal('100.00')

    def test_bypasses_transfer_policy(self):
        self.system.user_registry.set_transfer_message(self.alice.id, True, "Transfers on hold", ADMIN_ID)
        receipt = self.engine.admin_adjust_balance(self.alice.id, self.account, "credit", "5", None, ADMIN_ID)
        assert receipt.new_balance == Decimal('105.00')

    def test_invalid_type(self):
        with pytest.raises(ValidationError):
            self.engine.admin_adjust_balance(self.alice.id, self.account, "refund", "5", None, ADMIN_ID)

    def test_unknown_account(self):
        with pytest.raises(NotFoundError):
            self.engine.admin_adjust_balance(self.alice.id, "0000000000", "credit", "5", None, ADMIN_ID)


class TestGenerateHistory:

    def setup_method(self):
        self.system = make_system()
        self.engine = self.system.transfer_engine
        self.alice = register(self.system, "alice")
        self.end = datetime.now(timezone.utc)
        self.start = self.end - timedelta(days=30)

    def generate(self, count=5, kind="mixed", low="1.00", high="10.00"):
        return self.engine.generate_history(self.alice.id, count, low, high, self.start, self.end,
                                            "Coffee shop", kind, ADMIN_ID, rng=random.Random(42))

    def test_credit_history_updates_balance(self):
        result = self.generate(kind="credit")

        assert result.created == 5
        assert result.net_change > 0
        assert result.new_balance == Decimal('100.00') + result.net_change
        assert checking(reload(self.system, self.alice)).balance == result.new_balance

        generated = [e for e in self.system.ledger.list_for_user(self.alice.id)
                     if e.category == TransactionCategory.GENERATED]
        assert len(generated) == 5
        slack = timedelta(seconds=1)
        assert all(self.start - slack <= e.value_date <= self.end + slack for e in generated)
        assert all(Decimal('1.00') <= e.amount <= Decimal('10.00') for e in generated)
        assert self.system.reconciler.reconcile(self.alice.id).balanced

    def test_mixed_history_reconciles(self):
        self.generate(count=20)
        assert self.system.reconciler.reconcile(self.alice.id).balanced

    @pytest.mark.parametrize("count", [0, 501])
    def test_count_bounds(self, count):
        with pytest.raises(ValidationError):
            self.generate(count=count)

    def test_max_below_min(self):
        with pytest.raises(ValidationError):
            self.generate(low="10", high="5")

    def test_overdrawing_history_rejected(self):
        with pytest.raises(InsufficientFundsError):
            self.generate(count=50, kind="debit", low="5", high="10")
        assert len(self.system.ledger.list_for_user(self.alice.id)) == 2
        assert checking(reload(self.system, self.alice)).balance == Decimal('100.00')
