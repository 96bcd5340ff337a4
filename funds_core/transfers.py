"""
Transfer Engine Module

Client transfers and admin balance adjustments. A transfer debits the source
account and records a Processing debit entry in one unit of work; the credit
leg of an internal transfer is deferred until an admin completes it through
the status transition engine.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import random
import string
import time

from .currency import Currency, Money, MAX_AMOUNT, has_sub_cent_digits, parse_amount
from .accounts import AccountType
from .transactions import (
    TransactionLedger, TransactionStatus, TransactionCategory, generate_reference
)
from .users import UserRegistry, PIN_PATTERN
from .storage import StorageInterface
from .outbox import Outbox, OutboxRelay
from .audit import AuditEventType
from .notifications import NotificationKind
from .errors import (
    ValidationError, NotFoundError, TransferBlockedError, InsufficientFundsError, classified
)
from .logging_config import get_logger, log_action


OWN_ACCOUNTS_TRANSFER = "Transfer between own accounts"

TRANSFER_TYPES: Dict[Currency, List[str]] = {
    Currency.USD: [OWN_ACCOUNTS_TRANSFER, "ACH Transfer (Domestic)",
                   "Wire Transfer (Domestic)", "International Wire Transfer"],
    Currency.GBP: [OWN_ACCOUNTS_TRANSFER, "Faster Payments (UK)",
                   "BACS Transfer (UK)", "SWIFT Transfer (International)"],
    Currency.EUR: [OWN_ACCOUNTS_TRANSFER, "SEPA Credit Transfer (Eurozone)",
                   "SEPA Instant Credit Transfer", "International SWIFT Transfer"],
    Currency.CAD: [OWN_ACCOUNTS_TRANSFER, "Interac e-Transfer",
                   "EFT (Electronic Fund Transfer)", "Wire Transfer (Domestic/International)"],
    Currency.AUD: [OWN_ACCOUNTS_TRANSFER, "OSKO Payment (Fast)",
                   "BPay (Bills)", "International SWIFT Transfer"],
}
DEFAULT_TRANSFER_TYPES = [OWN_ACCOUNTS_TRANSFER, "Standard Bank Transfer", "International Transfer"]


def get_transfer_types(currency: Currency) -> List[str]:
    """Transfer types offered for accounts in a currency"""
    return list(TRANSFER_TYPES.get(currency, DEFAULT_TRANSFER_TYPES))


def is_internal_transfer(transfer_type: str) -> bool:
    """Internal transfers credit an account held at this bank"""
    normalized = transfer_type.strip().lower()
    return "internal" in normalized or normalized == OWN_ACCOUNTS_TRANSFER.lower()


class AdjustmentType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class HistoryKind(Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    MIXED = "mixed"


@dataclass
class TransferReceipt:
    transaction_id: str
    reference_id: str
    new_balance: Decimal
    currency: Currency
    status: TransactionStatus


@dataclass
class AdjustmentReceipt:
    transaction_id: str
    reference_id: str
    new_balance: Decimal
    currency: Currency


@dataclass
class HistoryResult:
    created: int
    net_change: Decimal
    new_balance: Decimal
    currency: Currency


def _admin_reference() -> str:
    suffix = "".join(random.SystemRandom().choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"ADMIN-{int(time.time() * 1000)}-{suffix}"


def _positive_amount(value: Any, message: str, maximum: Optional[Decimal] = MAX_AMOUNT) -> Decimal:
    try:
        amount = parse_amount(value, maximum=maximum)
    except ValueError:
        raise ValidationError(message, context={"field": "amount"})
    if amount <= 0:
        raise ValidationError(message, context={"field": "amount"})
    if has_sub_cent_digits(amount):
        raise ValidationError("Amount cannot have more than 2 decimal places", context={"field": "amount"})
    return amount


class TransferEngine:
    """Moves funds out of a user's account and books the matching entries"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserRegistry,
        ledger: TransactionLedger,
        outbox: Outbox,
        relay: OutboxRelay,
        history_max_transactions: int = 500
    ):
        self.storage = storage
        self.users = users
        self.ledger = ledger
        self.outbox = outbox
        self.relay = relay
        self.history_max_transactions = history_max_transactions
        self.logger = get_logger("funds_core.transfers")

    def submit_transfer(
        self,
        user_id: str,
        source_account_number: str,
        amount: Any,
        transfer_type: str,
        pin: str,
        destination_account_number: Optional[str] = None,
        destination_name: Optional[str] = None,
        destination_bank: Optional[str] = None
    ) -> TransferReceipt:
        """
        Debit the source account and record a Processing transfer

        Args:
            user_id: Authenticated account holder
            source_account_number: Account to debit
            amount: Positive amount in the account currency
            transfer_type: One of the currency's transfer types
            pin: 4 digit transfer PIN
            destination_account_number: Required for internal transfers
            destination_name: Beneficiary name
            destination_bank: Beneficiary bank

        Returns:
            TransferReceipt with the new balance and reference id

        Raises:
            ValidationError: Missing or malformed input
            InvalidPinError: PIN mismatch
            TransferBlockedError: Admin transfer policy is active
            NotFoundError: Source account is not the user's
            InsufficientFundsError: Balance would drop below zero
        """
        # 1. input
        if not source_account_number or amount in (None, "") or not transfer_type or not pin:
            raise ValidationError("Missing required transfer fields (source account, amount, type, PIN)")
        # No ceiling here: any amount above the balance is an insufficient-funds decline
        value = _positive_amount(amount, "Invalid transfer amount", maximum=None)
        if not PIN_PATTERN.match(str(pin)):
            raise ValidationError("Transfer PIN must be exactly 4 digits", context={"field": "pin"})
        internal = is_internal_transfer(transfer_type)
        if internal:
            if not destination_account_number:
                raise ValidationError(
                    "Destination account number is required for internal transfers",
                    context={"field": "destination_account_number"}
                )
            if destination_account_number == source_account_number:
                raise ValidationError(
                    "Source and destination accounts must differ",
                    context={"field": "destination_account_number"}
                )

        # 2. PIN, checked before taking the store so the hash cost is not serialized
        user = self.users.get_user(user_id)
        self.users.verify_pin(user, str(pin))

        # 3. policy block
        self._check_transfer_policy(user)

        with classified("transfer"), self.storage.atomic():
            user = self.users.get_user(user_id)
            self._check_transfer_policy(user)

            # 4. source account
            account = user.get_account(source_account_number)
            if not account:
                raise NotFoundError("Source account not found", context={"account_number": source_account_number})

            # 5. zero-balance floor, compared before the amount is rounded into Money
            if value > account.balance:
                raise InsufficientFundsError(
                    "Transaction declined: insufficient funds",
                    context={"available": str(account.balance), "requested": str(value)}
                )
            debit = Money(value, account.currency)
            new_balance = account.money - debit

            account.balance = new_balance.amount
            self.users.save_user(user)

            destination = destination_account_number or destination_name or "External"
            transaction = self.ledger.record(self.ledger.new_entry(
                user_id=user.id,
                account_number=account.account_number,
                account_type=account.account_type,
                amount=-debit,
                description=f"Transfer: {transfer_type} to {destination}",
                reference_id=generate_reference(),
                status=TransactionStatus.PROCESSING,
                category=TransactionCategory.TRANSFER,
                is_internal=internal,
                transfer_type=transfer_type,
                destination_account_number=destination_account_number,
                destination_name=destination_name,
                destination_bank=destination_bank,
                created_by=user.id,
            ))

            tasks = [
                self.outbox.audit(AuditEventType.TRANSFER_SUBMITTED, "transaction", transaction.id, {
                    "reference_id": transaction.reference_id,
                    "amount": str(transaction.amount),
                    "account_number": account.account_number,
                    "is_internal": internal,
                }, user_id=user.id),
                self.outbox.notify(user.id, NotificationKind.TRANSFER_SUBMITTED, {
                    "amount": debit.to_string(),
                    "transfer_type": transfer_type,
                    "account_number": account.account_number,
                    "reference_id": transaction.reference_id,
                    "new_balance": new_balance.to_string(),
                }),
            ]
        self.relay.dispatch(tasks)

        log_action(
            self.logger, "info", "Transfer submitted",
            user_id=user.id, action="submit_transfer", resource=f"transaction:{transaction.id}",
            extra={"reference_id": transaction.reference_id, "amount": debit.to_string(), "internal": internal}
        )
        return TransferReceipt(
            transaction_id=transaction.id,
            reference_id=transaction.reference_id,
            new_balance=new_balance.amount,
            currency=account.currency,
            status=TransactionStatus.PROCESSING,
        )

    def _check_transfer_policy(self, user) -> None:
        if user.transfer_message.is_active:
            raise TransferBlockedError(
                user.transfer_message.content,
                context={"policy_type": "ADMIN_POLICY"}
            )

    def admin_adjust_balance(
        self,
        user_id: str,
        account_number: str,
        adjustment_type: str,
        amount: Any,
        description: Optional[str],
        admin_id: str
    ) -> AdjustmentReceipt:
        """
        Direct credit or debit by an admin, bypassing PIN and transfer policy

        A debit still respects the zero-balance floor.
        """
        try:
            kind = AdjustmentType(str(adjustment_type).strip().lower())
        except ValueError:
            raise ValidationError("Adjustment type must be 'credit' or 'debit'", context={"field": "type"})
        value = _positive_amount(amount, "Amount must be a positive number")
        description = (description or "").strip() or f"Admin {kind.value}"

        with classified("balance adjustment"), self.storage.atomic():
            user = self.users.get_user(user_id)
            account = user.get_account(account_number)
            if not account:
                raise NotFoundError("Account not found", context={"account_number": account_number})

            delta = Money(value, account.currency)
            if kind == AdjustmentType.DEBIT:
                delta = -delta
            new_balance = account.money + delta
            if new_balance.is_negative():
                raise InsufficientFundsError(
                    "Insufficient funds for debit",
                    context={"available": str(account.balance), "requested": str(value)}
                )

            account.balance = new_balance.amount
            self.users.save_user(user)

            transaction = self.ledger.record(self.ledger.new_entry(
                user_id=user.id,
                account_number=account.account_number,
                account_type=account.account_type,
                amount=delta,
                description=description,
                reference_id=_admin_reference(),
                status=TransactionStatus.SUCCESSFUL,
                category=TransactionCategory.ADJUSTMENT,
                last_updated_by_admin=admin_id,
                created_by=admin_id,
            ))

            tasks = [
                self.outbox.audit(AuditEventType.BALANCE_ADJUSTED, "transaction", transaction.id, {
                    "type": kind.value,
                    "amount": str(delta.amount),
                    "account_number": account.account_number,
                    "new_balance": str(new_balance.amount),
                }, user_id=admin_id),
                self.outbox.notify(user.id, NotificationKind.BALANCE_ADJUSTED, {
                    "adjustment_type": kind.value,
                    "amount": abs(delta).to_string(),
                    "account_number": account.account_number,
                    "description": description,
                    "new_balance": new_balance.to_string(),
                }),
            ]
        self.relay.dispatch(tasks)

        log_action(
            self.logger, "info", f"Admin {kind.value} applied",
            user_id=admin_id, action="admin_adjust_balance", resource=f"user:{user_id}",
            extra={"account_number": account_number, "amount": str(delta.amount)}
        )
        return AdjustmentReceipt(
            transaction_id=transaction.id,
            reference_id=transaction.reference_id,
            new_balance=new_balance.amount,
            currency=account.currency,
        )

    def generate_history(
        self,
        user_id: str,
        count: int,
        min_amount: Any,
        max_amount: Any,
        start_date: datetime,
        end_date: datetime,
        description_pattern: str,
        kind: str,
        admin_id: str,
        rng: Optional[random.Random] = None
    ) -> HistoryResult:
        """
        Seed demo history on the user's Checking account.

        Entries are booked as Successful and their net sum is applied to the
        balance in the same unit of work.
        """
        if not isinstance(count, int) or not 1 <= count <= self.history_max_transactions:
            raise ValidationError(
                f"Number of transactions must be between 1 and {self.history_max_transactions}",
                context={"field": "count"}
            )
        low = _positive_amount(min_amount, "Minimum amount must be a positive number")
        high = _positive_amount(max_amount, "Maximum amount must be a positive number")
        if high < low:
            raise ValidationError("Maximum amount must not be below minimum amount")
        if start_date > end_date:
            raise ValidationError("Start date must not be after end date")
        try:
            history_kind = HistoryKind(str(kind).strip().lower())
        except ValueError:
            raise ValidationError("Type must be credit, debit or mixed", context={"field": "type"})
        pattern = (description_pattern or "").strip() or "Transaction"
        rng = rng or random.SystemRandom()

        with classified("history generation"), self.storage.atomic():
            user = self.users.get_user(user_id)
            account = user.account_of_type(AccountType.CHECKING)
            if not account:
                raise NotFoundError("Checking account not found")

            net = Money.zero(account.currency)
            span = (end_date - start_date).total_seconds()
            stamp = int(time.time() * 1000)
            for i in range(count):
                cents = rng.randint(int(low * 100), int(high * 100))
                entry_amount = Money(Decimal(cents) / 100, account.currency)
                is_debit = (history_kind == HistoryKind.DEBIT or
                            (history_kind == HistoryKind.MIXED and rng.random() < 0.5))
                if is_debit:
                    entry_amount = -entry_amount
                net = net + entry_amount
                value_date = datetime.fromtimestamp(
                    start_date.timestamp() + rng.random() * span, tz=timezone.utc
                )
                self.ledger.record(self.ledger.new_entry(
                    user_id=user.id,
                    account_number=account.account_number,
                    account_type=account.account_type,
                    amount=entry_amount,
                    description=f"{pattern} #{i + 1}",
                    reference_id=f"GEN-{stamp}-{i + 1:03d}-{rng.randint(0, 999999):06d}",
                    status=TransactionStatus.SUCCESSFUL,
                    category=TransactionCategory.GENERATED,
                    value_date=value_date,
                    created_by=admin_id,
                ))

            new_balance = account.money + net
            if new_balance.is_negative():
                raise InsufficientFundsError(
                    "Generated history would overdraw the checking account",
                    context={"net_change": str(net.amount), "available": str(account.balance)}
                )
            account.balance = new_balance.amount
            self.users.save_user(user)
            tasks = [self.outbox.audit(AuditEventType.HISTORY_GENERATED, "user", user.id, {
                "count": count,
                "net_change": str(net.amount),
                "account_number": account.account_number,
            }, user_id=admin_id)]
        self.relay.dispatch(tasks)

        return HistoryResult(
            created=count,
            net_change=net.amount,
            new_balance=new_balance.amount,
            currency=account.currency,
        )
