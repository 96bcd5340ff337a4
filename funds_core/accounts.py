"""
Account Module

Embedded account sub-records and the account number generator. Candidate
numbers come from a low-entropy source (clock seed plus a short random part),
so every candidate is checked against the account number index and retried
with increasing backoff. The index insert at persistence time is the
authoritative uniqueness constraint.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Dict, Optional
from enum import Enum
import random
import time

from .currency import Currency, Money
from .errors import AccountNumberExhaustedError
from .storage import StorageInterface
from .logging_config import get_logger, log_action


ACCOUNT_INDEX_TABLE = "account_numbers"


class AccountType(Enum):
    """Account products issued at registration"""
    CHECKING = "Checking"
    SAVINGS = "Savings"


TYPE_PREFIXES = {
    AccountType.CHECKING: "1",
    AccountType.SAVINGS: "5",
}
DEFAULT_TYPE_PREFIX = "9"


@dataclass
class Account:
    """Account sub-record owned by a user"""
    account_number: str
    account_type: AccountType
    currency: Currency
    balance: Decimal
    domestic_routing: str
    domestic_label: str
    iban: str
    swift: str
    overdraft_limit: Decimal = Decimal('0')
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.overdraft_limit < 0:
            raise ValueError("Overdraft limit cannot be negative")

    @property
    def money(self) -> Money:
        return Money(self.balance, self.currency)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account_number': self.account_number,
            'account_type': self.account_type.value,
            'currency': self.currency.code,
            'balance': str(self.balance),
            'overdraft_limit': str(self.overdraft_limit),
            'domestic_routing': self.domestic_routing,
            'domestic_label': self.domestic_label,
            'iban': self.iban,
            'swift': self.swift,
            'opened_at': self.opened_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            account_number=data['account_number'],
            account_type=AccountType(data['account_type']),
            currency=Currency[data['currency']],
            balance=Decimal(data['balance']),
            overdraft_limit=Decimal(data.get('overdraft_limit', '0')),
            domestic_routing=data['domestic_routing'],
            domestic_label=data['domestic_label'],
            iban=data['iban'],
            swift=data['swift'],
            opened_at=datetime.fromisoformat(data['opened_at']),
        )


class AccountNumberGenerator:
    """
    Produces structurally valid account details per currency.

    The account number starts with the type prefix and ends with the last
    four digits of the millisecond clock; routing, IBAN and SWIFT follow the
    domestic conventions of the currency.
    """

    def __init__(self, rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time):
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    def _digits(self, count: int) -> str:
        return "".join(str(self.rng.randint(0, 9)) for _ in range(count))

    def _seed(self) -> str:
        return str(int(self.clock() * 1000))[-4:].zfill(4)

    def generate(self, currency: Currency, account_type: AccountType,
                 initial_balance: Decimal = Decimal('0')) -> Account:
        """
        Generate a candidate account (not yet checked for uniqueness)

        Args:
            currency: Account currency
            account_type: Checking or Savings
            initial_balance: Opening balance

        Returns:
            Account candidate
        """
        prefix = TYPE_PREFIXES.get(account_type, DEFAULT_TYPE_PREFIX)
        seed = self._seed()

        if currency == Currency.USD:
            routing = self._digits(9)
            details = (prefix + self._digits(5) + seed, routing, "ABA Routing Number",
                       f"N/A (Wire Routing: {routing})", "BANKUSNY")
        elif currency == Currency.EUR:
            details = (prefix + self._digits(5) + seed, "N/A (Covered by IBAN)", "BIC",
                       "DE" + self._digits(18) + seed[:2], "BANKDEFF")
        elif currency == Currency.GBP:
            sort_code = f"{self._digits(2)}-{self._digits(2)}-{self._digits(2)}"
            details = (prefix + self._digits(3) + seed, sort_code, "Sort Code",
                       "GB" + self._digits(20), "BANKGB2L")
        elif currency == Currency.AUD:
            details = (prefix + self._digits(4) + seed, f"{self._digits(3)}-{self._digits(3)}",
                       "BSB Number", "AU" + self._digits(20), "BANKAU2S")
        elif currency == Currency.CAD:
            transit = self._digits(5)
            details = (prefix + self._digits(2) + seed, f"{transit} / {self._digits(3)}",
                       "Transit/Institution No.", f"N/A (Transit: {transit})", "BANKCA3V")
        else:
            details = (prefix + self._digits(11), "N/A", "Routing", "N/A", "N/A")

        account_number, routing, label, iban, swift = details
        return Account(
            account_number=account_number,
            account_type=account_type,
            currency=currency,
            balance=Money(initial_balance, currency).amount,
            domestic_routing=routing,
            domestic_label=label,
            iban=iban,
            swift=swift,
        )


class AccountNumberAllocator:
    """Uniqueness-enforcing retry wrapper around the generator"""

    def __init__(
        self,
        storage: StorageInterface,
        generator: Optional[AccountNumberGenerator] = None,
        max_attempts: int = 10,
        backoff_ms: int = 50,
        sleep: Callable[[float], None] = time.sleep,
        index_table: str = ACCOUNT_INDEX_TABLE
    ):
        self.storage = storage
        self.generator = generator or AccountNumberGenerator()
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self.sleep = sleep
        self.index_table = index_table
        self.logger = get_logger("funds_core.accounts")

    def allocate(self, currency: Currency, account_type: AccountType,
                 initial_balance: Decimal = Decimal('0'),
                 reserved: Collection[str] = ()) -> Account:
        """
        Generate an account whose number is not in use by any user

        Args:
            currency: Account currency
            account_type: Checking or Savings
            initial_balance: Opening balance
            reserved: Numbers already picked in the same unit of work

        Returns:
            Account with a currently unused number

        Raises:
            AccountNumberExhaustedError: If every attempt collided
        """
        for attempt in range(1, self.max_attempts + 1):
            candidate = self.generator.generate(currency, account_type, initial_balance)
            number = candidate.account_number
            if number not in reserved and not self.storage.exists(self.index_table, number):
                return candidate

            log_action(
                self.logger, "warning", "Account number collision, retrying",
                action="allocate_account_number",
                extra={"attempt": attempt, "currency": currency.code}
            )
            if attempt < self.max_attempts:
                self.sleep(self.backoff_ms * attempt / 1000)

        self.logger.error(f"Account number generation exhausted after {self.max_attempts} attempts")
        raise AccountNumberExhaustedError(
            "Failed to generate a unique bank account number after maximum attempts."
        )
