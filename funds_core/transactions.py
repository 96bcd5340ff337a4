"""
Transaction Ledger Module

Append-only log of signed monetary events. Positive amounts are credits,
negative amounts debits. The account balance on the user record is the
source of truth; the ledger is the history/audit view of how it got there.
Reference ids are unique through a separate index table.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import random
import time
import uuid

from .currency import Money, Currency
from .accounts import AccountType
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger


class TransactionStatus(Enum):
    """Lifecycle status of a ledger entry"""
    PROCESSING = "Processing"
    PENDING = "Pending"
    APPROVED = "Approved"
    SUCCESSFUL = "Successful"
    DELIVERED = "Delivered"
    REFUNDED = "Refunded"
    FAILED = "Failed"
    DECLINED = "Declined"

    @classmethod
    def parse(cls, value: str) -> 'TransactionStatus':
        """Case-insensitive lookup by value"""
        if isinstance(value, cls):
            return value
        for status in cls:
            if isinstance(value, str) and status.value.lower() == value.strip().lower():
                return status
        raise ValueError(f"Invalid status: {value}")

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_reversal(self) -> bool:
        return self in REVERSAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TransactionStatus.SUCCESSFUL,
    TransactionStatus.REFUNDED,
    TransactionStatus.FAILED,
    TransactionStatus.DECLINED,
})
REVERSAL_STATUSES = frozenset({
    TransactionStatus.REFUNDED,
    TransactionStatus.FAILED,
    TransactionStatus.DECLINED,
})
COMPLETABLE_STATUSES = frozenset({
    TransactionStatus.PROCESSING,
    TransactionStatus.APPROVED,
    TransactionStatus.PENDING,
})


class TransactionCategory(Enum):
    """What produced the entry"""
    TRANSFER = "transfer"
    CREDIT_LEG = "credit_leg"
    ADJUSTMENT = "admin_adjustment"
    CHECK_DEPOSIT = "check_deposit"
    OPENING_BALANCE = "opening_balance"
    GENERATED = "generated"


@dataclass
class Transaction(StorageRecord):
    """One signed monetary movement against one account"""
    user_id: str
    account_number: str
    account_type: AccountType
    amount: Decimal
    currency: Currency
    description: str
    reference_id: str
    status: TransactionStatus
    category: TransactionCategory
    value_date: datetime
    is_internal: bool = False
    transfer_type: Optional[str] = None
    destination_account_number: Optional[str] = None
    destination_name: Optional[str] = None
    destination_bank: Optional[str] = None
    related_reference_id: Optional[str] = None
    last_updated_by_admin: Optional[str] = None
    created_by: Optional[str] = None

    @property
    def money(self) -> Money:
        return Money(self.amount, self.currency)

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    @property
    def is_credit(self) -> bool:
        return self.amount > 0

    @property
    def affects_balance(self) -> bool:
        """Whether the entry is reflected in the account balance"""
        return not self.status.is_reversal


def generate_reference(prefix: str = "TXN") -> str:
    """Reference id of the form PREFIX-<epoch ms>-<10 digits>"""
    millis = int(time.time() * 1000)
    return f"{prefix}-{millis}-{random.SystemRandom().randint(0, 9_999_999_999):010d}"


class TransactionLedger:
    """Append-only store of Transaction entries"""

    def __init__(self, storage: StorageInterface, table_name: str = "transactions",
                 reference_table: str = "transaction_references"):
        self.storage = storage
        self.table_name = table_name
        self.reference_table = reference_table
        self.logger = get_logger("funds_core.transactions")

    def new_entry(
        self,
        user_id: str,
        account_number: str,
        account_type: AccountType,
        amount: Money,
        description: str,
        reference_id: str,
        status: TransactionStatus,
        category: TransactionCategory,
        value_date: Optional[datetime] = None,
        **details: Any
    ) -> Transaction:
        """Build an entry (not yet recorded)"""
        now = datetime.now(timezone.utc)
        return Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number=account_number,
            account_type=account_type,
            amount=amount.amount,
            currency=amount.currency,
            description=description,
            reference_id=reference_id,
            status=status,
            category=category,
            value_date=value_date or now,
            **details
        )

    def record(self, transaction: Transaction) -> Transaction:
        """
        Append an entry.

        Raises:
            DuplicateKeyError: If the reference id is already used
        """
        self.storage.insert(self.reference_table, transaction.reference_id, {
            'transaction_id': transaction.id
        })
        self.storage.insert(self.table_name, transaction.id, self._transaction_to_dict(transaction))
        return transaction

    def update_status(self, transaction: Transaction, status: TransactionStatus,
                      admin_id: Optional[str] = None) -> Transaction:
        """Write a new status on an existing entry"""
        transaction.status = status
        transaction.last_updated_by_admin = admin_id
        transaction.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, transaction.id, self._transaction_to_dict(transaction))
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def get_by_reference(self, reference_id: str) -> Optional[Transaction]:
        index = self.storage.load(self.reference_table, reference_id)
        if index:
            return self.get_transaction(index['transaction_id'])
        return None

    def list_for_user(self, user_id: str) -> List[Transaction]:
        """Entries owned by a user, newest first"""
        return self._sorted(self.storage.find(self.table_name, {'user_id': user_id}))

    def list_for_account(self, account_number: str) -> List[Transaction]:
        """Entries booked against an account, newest first"""
        return self._sorted(self.storage.find(self.table_name, {'account_number': account_number}))

    def list_all(self, status: Optional[TransactionStatus] = None) -> List[Transaction]:
        if status:
            records = self.storage.find(self.table_name, {'status': status.value})
        else:
            records = self.storage.load_all(self.table_name)
        return self._sorted(records)

    def balance_of(self, account_number: str, currency: Currency) -> Money:
        """Sum of the entries reflected in an account's balance"""
        total = Money.zero(currency)
        for entry in self.list_for_account(account_number):
            if entry.affects_balance:
                total = total + entry.money
        return total

    def _sorted(self, records: List[Dict]) -> List[Transaction]:
        transactions = [self._transaction_from_dict(data) for data in records]
        transactions.sort(key=lambda t: (t.value_date, t.created_at), reverse=True)
        return transactions

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        result = transaction.to_dict()
        result['account_type'] = transaction.account_type.value
        result['currency'] = transaction.currency.code
        result['status'] = transaction.status.value
        result['category'] = transaction.category.value
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        data = Transaction.parse_timestamps(dict(data))
        data['account_type'] = AccountType(data['account_type'])
        data['currency'] = Currency[data['currency']]
        data['amount'] = Decimal(data['amount'])
        data['status'] = TransactionStatus(data['status'])
        data['category'] = TransactionCategory(data['category'])
        data['value_date'] = datetime.fromisoformat(data['value_date'])
        return Transaction(**data)
