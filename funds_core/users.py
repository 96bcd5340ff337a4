"""
User Registry Module

Users own their accounts as embedded sub-records. Username, e-mail and every
account number are additionally written to index tables whose keys are the
hard uniqueness constraints; all index rows and the user row are written in
one unit of work together with the opening-balance ledger entries.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import hashlib
import hmac
import re
import secrets
import uuid

from .currency import Currency
from .accounts import Account, AccountType, AccountNumberAllocator
from .transactions import TransactionLedger, TransactionStatus, TransactionCategory
from .storage import StorageInterface, StorageRecord, DuplicateKeyError
from .outbox import Outbox, OutboxRelay
from .audit import AuditEventType
from .notifications import NotificationKind
from .errors import (
    ValidationError, AuthError, NotFoundError, DuplicateError, InvalidPinError, classified
)
from .logging_config import get_logger, log_action


EMAIL_PATTERN = re.compile(r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.[A-Za-z]{2,}$")
PIN_PATTERN = re.compile(r"^\d{4}$")


class UserStatus(Enum):
    """Account holder status"""
    ACTIVE = "Active"
    SUSPENDED = "Suspended"
    RESTRICTED = "Restricted"
    LOCKED = "Locked"
    BLOCKED = "Blocked"
    CLOSED = "Closed"

    @classmethod
    def parse(cls, value: str) -> 'UserStatus':
        for status in cls:
            if isinstance(value, str) and status.value.lower() == value.strip().lower():
                return status
        raise ValueError(f"Invalid status: {value}")


class UserRole(Enum):
    USER = "User"
    ADMIN = "Admin"
    SUPPORT = "Support"


@dataclass
class AdminMessage:
    """Admin-controlled message shown to (or blocking) a user"""
    is_active: bool = False
    content: str = ""
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_active': self.is_active,
            'content': self.content,
            'updated_by': self.updated_by,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AdminMessage':
        if not data:
            return cls()
        return cls(
            is_active=data.get('is_active', False),
            content=data.get('content', ""),
            updated_by=data.get('updated_by'),
            updated_at=datetime.fromisoformat(data['updated_at']) if data.get('updated_at') else None,
        )


@dataclass
class UserProfile:
    """Registration input"""
    username: str
    email: str
    password: str
    pin: str
    full_name: str
    currency: str = "USD"
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    occupation: Optional[str] = None
    profile_picture_ref: Optional[str] = None
    role: UserRole = UserRole.USER


@dataclass
class User(StorageRecord):
    """Account holder with embedded accounts"""
    username: str
    email: str
    full_name: str
    password_hash: str
    password_salt: str
    pin_hash: str
    pin_salt: str
    currency: Currency
    accounts: List[Account] = field(default_factory=list)
    status: UserStatus = UserStatus.ACTIVE
    status_reason: Optional[str] = None
    role: UserRole = UserRole.USER
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    occupation: Optional[str] = None
    profile_picture_ref: Optional[str] = None
    transfer_message: AdminMessage = field(default_factory=AdminMessage)
    announcement_message: AdminMessage = field(default_factory=AdminMessage)

    def get_account(self, account_number: str) -> Optional[Account]:
        for account in self.accounts:
            if account.account_number == account_number:
                return account
        return None

    def account_of_type(self, account_type: AccountType) -> Optional[Account]:
        for account in self.accounts:
            if account.account_type == account_type:
                return account
        return None

    def accounts_in(self, currency: Currency) -> List[Account]:
        return [a for a in self.accounts if a.currency == currency]


@dataclass
class RegistrationResult:
    user_id: str
    accounts: List[Account]


def hash_secret(secret: str, salt: str) -> str:
    """Hash a password or PIN with scrypt"""
    return hashlib.scrypt(
        secret.encode(),
        salt=salt.encode(),
        n=16384, r=8, p=1
    ).hex()


def verify_secret(secret: str, salt: str, expected_hash: str) -> bool:
    """Constant-time comparison against a stored hash"""
    if not secret or not salt or not expected_hash:
        return False
    return hmac.compare_digest(hash_secret(secret, salt), expected_hash)


class UserRegistry:
    """Manages users, their embedded accounts and the uniqueness indexes"""

    def __init__(
        self,
        storage: StorageInterface,
        ledger: TransactionLedger,
        allocator: AccountNumberAllocator,
        outbox: Outbox,
        relay: OutboxRelay,
        opening_balances: Optional[Dict[AccountType, Decimal]] = None,
        password_min_length: int = 8,
        username_min_length: int = 5,
        admin_message_min_length: int = 5,
        status_reason_min_length: int = 10
    ):
        self.storage = storage
        self.ledger = ledger
        self.allocator = allocator
        self.outbox = outbox
        self.relay = relay
        self.opening_balances = opening_balances or {
            AccountType.CHECKING: Decimal('100.00'),
            AccountType.SAVINGS: Decimal('500.00'),
        }
        self.password_min_length = password_min_length
        self.username_min_length = username_min_length
        self.admin_message_min_length = admin_message_min_length
        self.status_reason_min_length = status_reason_min_length
        self.table_name = "users"
        self.identity_table = "user_identities"
        self.account_index_table = allocator.index_table
        self.card_table = "cards"
        self.card_number_table = "card_numbers"
        self.logger = get_logger("funds_core.users")

    # Registration

    def register_user(self, profile: UserProfile) -> RegistrationResult:
        """
        Create a user with a Checking and a Savings account

        Args:
            profile: Registration input

        Returns:
            RegistrationResult with the new user id and accounts

        Raises:
            ValidationError: Malformed input
            DuplicateError: Username, e-mail or account number already taken
            AccountNumberExhaustedError: No unique account number could be found
        """
        username = (profile.username or "").strip().lower()
        email = (profile.email or "").strip().lower()
        currency = self._validate_profile(profile, username, email)

        if self.storage.exists(self.identity_table, f"username:{username}"):
            raise DuplicateError("Username already exists", context={"field": "username"})
        if self.storage.exists(self.identity_table, f"email:{email}"):
            raise DuplicateError("Email already registered", context={"field": "email"})

        # Advisory uniqueness: point-in-time lookups with retry
        accounts = []
        for account_type in (AccountType.CHECKING, AccountType.SAVINGS):
            accounts.append(self.allocator.allocate(
                currency, account_type, self.opening_balances.get(account_type, Decimal('0')),
                reserved=[a.account_number for a in accounts]
            ))

        now = datetime.now(timezone.utc)
        password_salt = secrets.token_hex(16)
        pin_salt = secrets.token_hex(16)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            username=username,
            email=email,
            full_name=profile.full_name.strip(),
            password_hash=hash_secret(profile.password, password_salt),
            password_salt=password_salt,
            pin_hash=hash_secret(profile.pin, pin_salt),
            pin_salt=pin_salt,
            currency=currency,
            accounts=accounts,
            role=profile.role,
            date_of_birth=profile.date_of_birth,
            gender=profile.gender,
            address=profile.address,
            occupation=profile.occupation,
            profile_picture_ref=profile.profile_picture_ref,
        )

        with classified("registration"), self.storage.atomic():
            self._reserve_identity("username", username, user.id, "Username already exists")
            self._reserve_identity("email", email, user.id, "Email already registered")
            for account in accounts:
                self._reserve_account_number(account.account_number, user.id)
                self._book_opening_balance(user, account, "Opening balance")
            self.storage.insert(self.table_name, user.id, self._user_to_dict(user))
            tasks = [
                self.outbox.audit(AuditEventType.USER_REGISTERED, "user", user.id, {
                    "username": username,
                    "currency": currency.code,
                    "accounts": [a.account_number for a in accounts],
                }, user_id=user.id),
                self.outbox.notify(user.id, NotificationKind.WELCOME, {
                    "full_name": user.full_name,
                    "checking_account": accounts[0].account_number,
                    "savings_account": accounts[1].account_number,
                }),
            ]
        self.relay.dispatch(tasks)

        log_action(
            self.logger, "info", "User registered",
            user_id=user.id, action="register_user", resource=f"user:{user.id}",
            extra={"currency": currency.code}
        )
        return RegistrationResult(user_id=user.id, accounts=accounts)

    def _validate_profile(self, profile: UserProfile, username: str, email: str) -> Currency:
        if not username or len(username) < self.username_min_length or " " in username:
            raise ValidationError(
                f"Username must be at least {self.username_min_length} characters without spaces",
                context={"field": "username"}
            )
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Please enter a valid email address", context={"field": "email"})
        if not profile.password or len(profile.password) < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters",
                context={"field": "password"}
            )
        if not profile.pin or not PIN_PATTERN.match(profile.pin):
            raise ValidationError("Transfer PIN must be exactly 4 digits", context={"field": "pin"})
        if not profile.full_name or not profile.full_name.strip():
            raise ValidationError("Full name is required", context={"field": "full_name"})
        try:
            return Currency.from_code(profile.currency)
        except ValueError as e:
            raise ValidationError(str(e), context={"field": "currency"})

    def _reserve_identity(self, kind: str, value: str, user_id: str, message: str) -> None:
        try:
            self.storage.insert(self.identity_table, f"{kind}:{value}", {'user_id': user_id})
        except DuplicateKeyError:
            raise DuplicateError(message, context={"field": kind})

    def _reserve_account_number(self, account_number: str, user_id: str) -> None:
        try:
            self.storage.insert(self.account_index_table, account_number, {'user_id': user_id})
        except DuplicateKeyError:
            raise DuplicateError(
                "Account number collision during registration, please retry",
                context={"field": "account_number"}
            )

    def _book_opening_balance(self, user: User, account: Account, description: str) -> None:
        if account.balance <= 0:
            return
        self.ledger.record(self.ledger.new_entry(
            user_id=user.id,
            account_number=account.account_number,
            account_type=account.account_type,
            amount=account.money,
            description=description,
            reference_id=f"OPEN-{account.account_number}-{uuid.uuid4().hex[:8]}",
            status=TransactionStatus.SUCCESSFUL,
            category=TransactionCategory.OPENING_BALANCE,
        ))

    # Lookups

    def find_user(self, user_id: str) -> Optional[User]:
        data = self.storage.load(self.table_name, user_id)
        if data:
            return self._user_from_dict(data)
        return None

    def get_user(self, user_id: str) -> User:
        """Load a user or raise NotFoundError"""
        user = self.find_user(user_id)
        if not user:
            raise NotFoundError("User not found", context={"user_id": user_id})
        return user

    def find_by_account_number(self, account_number: str) -> Optional[User]:
        """Resolve the owner of an account through the account number index"""
        index = self.storage.load(self.account_index_table, account_number)
        if not index:
            return None
        user = self.find_user(index['user_id'])
        if user and user.get_account(account_number):
            return user
        return None

    def find_by_username(self, username: str) -> Optional[User]:
        index = self.storage.load(self.identity_table, f"username:{username.strip().lower()}")
        return self.find_user(index['user_id']) if index else None

    def email_of(self, user_id: str) -> Optional[str]:
        user = self.find_user(user_id)
        return user.email if user else None

    def list_users(self) -> List[User]:
        users = [self._user_from_dict(d) for d in self.storage.load_all(self.table_name)]
        users.sort(key=lambda u: u.created_at, reverse=True)
        return users

    def save_user(self, user: User) -> None:
        """Persist a user (callers own the unit of work)"""
        user.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, user.id, self._user_to_dict(user))

    def verify_pin(self, user: User, pin: str) -> None:
        """Raise InvalidPinError unless the PIN matches"""
        if not verify_secret(pin, user.pin_salt, user.pin_hash):
            raise InvalidPinError("Invalid Transfer PIN")

    def verify_password(self, username: str, password: str) -> User:
        """
        Check login credentials

        Raises:
            AuthError: Unknown username or wrong password (same message for both)
        """
        user = self.find_by_username(username or "")
        if not user or not verify_secret(password, user.password_salt, user.password_hash):
            raise AuthError("Invalid username or password", code="invalid_credentials")
        return user

    # Admin maintenance

    def change_currency(self, user_id: str, currency_code: str, admin_id: str) -> User:
        """
        Switch a user to another currency.

        Both accounts are regenerated in the new currency's format; balances
        carry over unchanged (no FX conversion) and are booked on the new
        account numbers.
        """
        try:
            currency = Currency.from_code(currency_code)
        except ValueError as e:
            raise ValidationError(str(e), context={"field": "currency"})

        user = self.get_user(user_id)
        if user.currency == currency:
            return user

        replacements = []
        for old in user.accounts:
            new = self.allocator.allocate(
                currency, old.account_type, old.balance,
                reserved=[a.account_number for _, a in replacements]
            )
            replacements.append((old, new))

        with classified("currency change"), self.storage.atomic():
            user = self.get_user(user_id)
            current = {a.account_number: a for a in user.accounts}
            new_accounts = []
            for old, new in replacements:
                # Balance read inside the unit of work
                new.balance = current[old.account_number].balance if old.account_number in current else old.balance
                self.storage.delete(self.account_index_table, old.account_number)
                self._reserve_account_number(new.account_number, user.id)
                self._book_opening_balance(user, new, f"Balance carried over from {old.account_number}")
                new_accounts.append(new)
            previous = user.currency
            user.accounts = new_accounts
            user.currency = currency
            self.save_user(user)
            tasks = [self.outbox.audit(AuditEventType.USER_CURRENCY_CHANGED, "user", user.id, {
                "from": previous.code,
                "to": currency.code,
                "accounts": [a.account_number for a in new_accounts],
            }, user_id=admin_id)]
        self.relay.dispatch(tasks)
        return user

    def set_status(self, user_id: str, status: str, reason: str, admin_id: str) -> User:
        """Change the account holder status with a recorded reason"""
        try:
            new_status = UserStatus.parse(status)
        except ValueError:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(s.value for s in UserStatus)}",
                context={"field": "status"}
            )
        reason = (reason or "").strip()
        if len(reason) < self.status_reason_min_length:
            raise ValidationError(
                f"A reason of at least {self.status_reason_min_length} characters is required",
                context={"field": "reason"}
            )

        with classified("status change"), self.storage.atomic():
            user = self.get_user(user_id)
            user.status = new_status
            user.status_reason = reason
            self.save_user(user)
            tasks = [
                self.outbox.audit(AuditEventType.USER_STATUS_CHANGED, "user", user.id,
                                  {"status": new_status.value, "reason": reason}, user_id=admin_id),
                self.outbox.notify(user.id, NotificationKind.ACCOUNT_STATUS_CHANGED,
                                   {"status": new_status.value, "reason": reason}),
            ]
        self.relay.dispatch(tasks)
        return user

    def set_transfer_message(self, user_id: str, is_active: bool, content: str, admin_id: str) -> User:
        """Activate or clear the policy message that blocks transfers"""
        return self._set_admin_message(user_id, "transfer_message", is_active, content, admin_id,
                                       AuditEventType.TRANSFER_POLICY_CHANGED)

    def set_announcement(self, user_id: str, is_active: bool, content: str, admin_id: str) -> User:
        return self._set_admin_message(user_id, "announcement_message", is_active, content, admin_id,
                                       AuditEventType.ANNOUNCEMENT_CHANGED)

    def _set_admin_message(self, user_id: str, attribute: str, is_active: bool, content: str,
                           admin_id: str, event_type: AuditEventType) -> User:
        content = (content or "").strip()
        if is_active and len(content) < self.admin_message_min_length:
            raise ValidationError(
                f"Message content must be at least {self.admin_message_min_length} characters when active",
                context={"field": "content"}
            )

        with classified("admin message update"), self.storage.atomic():
            user = self.get_user(user_id)
            setattr(user, attribute, AdminMessage(
                is_active=is_active,
                content=content,
                updated_by=admin_id,
                updated_at=datetime.now(timezone.utc),
            ))
            self.save_user(user)
            tasks = [self.outbox.audit(event_type, "user", user.id,
                                       {"is_active": is_active, "content": content}, user_id=admin_id)]
        self.relay.dispatch(tasks)
        return user

    def change_pin(self, user_id: str, new_pin: str, admin_id: str) -> None:
        """Admin reset of a user's transfer PIN"""
        if not new_pin or not PIN_PATTERN.match(new_pin):
            raise ValidationError("Transfer PIN must be exactly 4 digits", context={"field": "pin"})

        with classified("pin change"), self.storage.atomic():
            user = self.get_user(user_id)
            user.pin_salt = secrets.token_hex(16)
            user.pin_hash = hash_secret(new_pin, user.pin_salt)
            self.save_user(user)
            tasks = [self.outbox.audit(AuditEventType.PIN_CHANGED, "user", user.id, {}, user_id=admin_id)]
        self.relay.dispatch(tasks)

    def delete_user(self, user_id: str, admin_id: str) -> None:
        """Remove a user, their card and release their identity and account numbers"""
        with classified("user deletion"), self.storage.atomic():
            user = self.get_user(user_id)
            self.storage.delete(self.identity_table, f"username:{user.username}")
            self.storage.delete(self.identity_table, f"email:{user.email}")
            for account in user.accounts:
                self.storage.delete(self.account_index_table, account.account_number)
            card = self.storage.load(self.card_table, user.id)
            if card:
                self.storage.delete(self.card_number_table, card['card_number'])
                self.storage.delete(self.card_table, user.id)
            self.storage.delete(self.table_name, user.id)
            tasks = [self.outbox.audit(AuditEventType.USER_DELETED, "user", user.id,
                                       {"username": user.username}, user_id=admin_id)]
        self.relay.dispatch(tasks)

    def _user_to_dict(self, user: User) -> Dict:
        return {
            'id': user.id,
            'created_at': user.created_at.isoformat(),
            'updated_at': user.updated_at.isoformat(),
            'username': user.username,
            'email': user.email,
            'full_name': user.full_name,
            'password_hash': user.password_hash,
            'password_salt': user.password_salt,
            'pin_hash': user.pin_hash,
            'pin_salt': user.pin_salt,
            'currency': user.currency.code,
            'accounts': [a.to_dict() for a in user.accounts],
            'status': user.status.value,
            'status_reason': user.status_reason,
            'role': user.role.value,
            'date_of_birth': user.date_of_birth,
            'gender': user.gender,
            'address': user.address,
            'occupation': user.occupation,
            'profile_picture_ref': user.profile_picture_ref,
            'transfer_message': user.transfer_message.to_dict(),
            'announcement_message': user.announcement_message.to_dict(),
        }

    def _user_from_dict(self, data: Dict) -> User:
        data = User.parse_timestamps(dict(data))
        data['currency'] = Currency[data['currency']]
        data['accounts'] = [Account.from_dict(a) for a in data.get('accounts', [])]
        data['status'] = UserStatus(data['status'])
        data['role'] = UserRole(data['role'])
        data['transfer_message'] = AdminMessage.from_dict(data.get('transfer_message'))
        data['announcement_message'] = AdminMessage.from_dict(data.get('announcement_message'))
        return User(**data)
