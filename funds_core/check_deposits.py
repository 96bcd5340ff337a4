"""
Check Deposit Module

Pending → Approved / Declined review of mobile check deposits. Approval
credits the account exactly once; declining needs a written justification.
Deposit ids are sequential (``DEP-1000``, ``DEP-1001``, ...). The computed
next id is only a suggestion: the insert is the uniqueness constraint and a
lost race recomputes the id.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Currency, Money, parse_amount
from .transactions import TransactionLedger, TransactionStatus, TransactionCategory
from .users import UserRegistry
from .storage import StorageInterface, StorageRecord
from .outbox import Outbox, OutboxRelay
from .audit import AuditEventType
from .notifications import NotificationKind
from .errors import ValidationError, NotFoundError, ConflictError, DuplicateError, classified
from .logging_config import get_logger, log_action


DEPOSIT_PREFIX = "DEP-"


class CheckDepositStatus(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    DECLINED = "Declined"

    @classmethod
    def parse(cls, value: str) -> 'CheckDepositStatus':
        for status in cls:
            if isinstance(value, str) and status.value.lower() == value.strip().lower():
                return status
        raise ValueError(f"Invalid deposit status: {value}")


@dataclass
class CheckDeposit(StorageRecord):
    """A submitted check awaiting or past review; ``id`` is the deposit id"""
    user_id: str
    username: str
    amount: Decimal
    currency: Currency
    destination_account_number: str
    image_front_ref: str
    image_back_ref: str
    status: CheckDepositStatus = CheckDepositStatus.PENDING
    reviewed_by_admin: Optional[str] = None
    review_notes: Optional[str] = None
    credited_account_number: Optional[str] = None

    @property
    def deposit_id(self) -> str:
        return self.id

    @property
    def money(self) -> Money:
        return Money(self.amount, self.currency)


class CheckDepositManager:
    """Submission and admin review of check deposits"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserRegistry,
        ledger: TransactionLedger,
        outbox: Outbox,
        relay: OutboxRelay,
        id_start: int = 1000,
        min_amount: Decimal = Decimal('0.01'),
        decline_notes_min_length: int = 5,
        max_id_attempts: int = 5
    ):
        self.storage = storage
        self.users = users
        self.ledger = ledger
        self.outbox = outbox
        self.relay = relay
        self.id_start = id_start
        self.min_amount = min_amount
        self.decline_notes_min_length = decline_notes_min_length
        self.max_id_attempts = max_id_attempts
        self.table_name = "check_deposits"
        self.logger = get_logger("funds_core.check_deposits")

    def next_deposit_id(self) -> str:
        """Highest existing numeric suffix plus one"""
        highest = self.id_start - 1
        for data in self.storage.load_all(self.table_name):
            suffix = data['id'][len(DEPOSIT_PREFIX):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{DEPOSIT_PREFIX}{highest + 1}"

    def submit_deposit(
        self,
        user_id: str,
        amount: Any,
        currency_code: str,
        destination_account_number: str,
        image_front_ref: str,
        image_back_ref: str
    ) -> CheckDeposit:
        """
        Record a Pending check deposit

        Raises:
            ValidationError: Bad amount, currency or missing images
            NotFoundError: Destination account is not the user's
            DuplicateError: No free deposit id after repeated races
        """
        try:
            value = parse_amount(amount)
        except ValueError:
            raise ValidationError("Invalid deposit amount", context={"field": "amount"})
        if value < self.min_amount:
            raise ValidationError(f"Deposit amount must be at least {self.min_amount}", context={"field": "amount"})
        try:
            currency = Currency.from_code(currency_code)
        except ValueError as e:
            raise ValidationError(str(e), context={"field": "currency"})
        if not image_front_ref or not image_back_ref:
            raise ValidationError("Both front and back check images are required", context={"field": "images"})

        user = self.users.get_user(user_id)
        if not user.get_account(destination_account_number):
            raise NotFoundError("Destination account not found",
                                context={"account_number": destination_account_number})

        for attempt in range(1, self.max_id_attempts + 1):
            now = datetime.now(timezone.utc)
            deposit = CheckDeposit(
                id=self.next_deposit_id(),
                created_at=now,
                updated_at=now,
                user_id=user.id,
                username=user.username,
                amount=Money(value, currency).amount,
                currency=currency,
                destination_account_number=destination_account_number,
                image_front_ref=image_front_ref,
                image_back_ref=image_back_ref,
            )
            try:
                with classified("check deposit submission"), self.storage.atomic():
                    self.storage.insert(self.table_name, deposit.id, self._deposit_to_dict(deposit))
                    tasks = [
                        self.outbox.audit(AuditEventType.CHECK_DEPOSIT_SUBMITTED, "check_deposit", deposit.id, {
                            "amount": str(deposit.amount),
                            "currency": currency.code,
                        }, user_id=user.id),
                        self.outbox.notify(user.id, NotificationKind.CHECK_DEPOSIT_SUBMITTED, {
                            "deposit_id": deposit.id,
                            "amount": deposit.money.to_string(),
                        }),
                    ]
            except DuplicateError:
                self.logger.warning(f"Deposit id {deposit.id} taken concurrently (attempt {attempt})")
                continue
            self.relay.dispatch(tasks)
            return deposit

        raise DuplicateError("Could not allocate a deposit id, please retry")

    def get_deposit(self, deposit_id: str) -> CheckDeposit:
        data = self.storage.load(self.table_name, deposit_id)
        if not data:
            raise NotFoundError("Check deposit not found", context={"deposit_id": deposit_id})
        return self._deposit_from_dict(data)

    def list_deposits(self, status: Optional[CheckDepositStatus] = None,
                      user_id: Optional[str] = None) -> List[CheckDeposit]:
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if user_id:
            filters['user_id'] = user_id
        deposits = [self._deposit_from_dict(d) for d in self.storage.find(self.table_name, filters)]
        deposits.sort(key=lambda d: d.created_at, reverse=True)
        return deposits

    def review_deposit(self, deposit_id: str, decision: str, notes: Optional[str],
                       admin_id: str) -> CheckDeposit:
        """
        Approve or decline a pending deposit

        Args:
            deposit_id: Deposit to review
            decision: Approved or Declined
            notes: Review notes, required when declining
            admin_id: Acting admin

        Returns:
            The deposit after review (unchanged for a repeated decision)

        Raises:
            ValidationError: Unknown decision or missing decline notes
            ConflictError: Deposit already reviewed with another outcome
            NotFoundError: Deposit or a matching-currency account missing
        """
        try:
            target = CheckDepositStatus.parse(decision)
        except ValueError:
            raise ValidationError("Decision must be Approved or Declined", context={"field": "status"})
        if target == CheckDepositStatus.PENDING:
            raise ValidationError("Decision must be Approved or Declined", context={"field": "status"})
        notes = (notes or "").strip()
        if target == CheckDepositStatus.DECLINED and len(notes) < self.decline_notes_min_length:
            raise ValidationError(
                f"Decline notes of at least {self.decline_notes_min_length} characters are required",
                context={"field": "notes"}
            )

        with classified("check deposit review"), self.storage.atomic():
            deposit = self.get_deposit(deposit_id)
            if deposit.status == target:
                return deposit
            if deposit.status != CheckDepositStatus.PENDING:
                raise ConflictError(
                    f"Check deposit was already {deposit.status.value}",
                    code="already_reviewed",
                    context={"status": deposit.status.value}
                )

            if target == CheckDepositStatus.APPROVED:
                deposit.credited_account_number = self._credit(deposit, admin_id)

            deposit.status = target
            deposit.reviewed_by_admin = admin_id
            deposit.review_notes = notes or None
            deposit.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, deposit.id, self._deposit_to_dict(deposit))

            tasks = [
                self.outbox.audit(AuditEventType.CHECK_DEPOSIT_REVIEWED, "check_deposit", deposit.id, {
                    "status": target.value,
                    "notes": notes,
                    "credited_account_number": deposit.credited_account_number,
                }, user_id=admin_id),
                self.outbox.notify(deposit.user_id, NotificationKind.CHECK_DEPOSIT_REVIEWED, {
                    "deposit_id": deposit.id,
                    "amount": deposit.money.to_string(),
                    "status": target.value.lower(),
                    "notes": notes,
                }),
            ]
        self.relay.dispatch(tasks)

        log_action(
            self.logger, "info", f"Check deposit {target.value.lower()}",
            user_id=admin_id, action="review_deposit", resource=f"check_deposit:{deposit.id}"
        )
        return deposit

    def _credit(self, deposit: CheckDeposit, admin_id: str) -> str:
        user = self.users.get_user(deposit.user_id)
        account = user.get_account(deposit.destination_account_number)
        if not account or account.currency != deposit.currency:
            matches = user.accounts_in(deposit.currency)
            account = matches[0] if matches else None
        if not account:
            raise NotFoundError(
                f"User has no {deposit.currency.code} account to credit",
                context={"currency": deposit.currency.code}
            )

        account.balance = (account.money + deposit.money).amount
        self.users.save_user(user)
        self.ledger.record(self.ledger.new_entry(
            user_id=user.id,
            account_number=account.account_number,
            account_type=account.account_type,
            amount=deposit.money,
            description=f"Mobile check deposit {deposit.id}",
            reference_id=f"CHK-{deposit.id}",
            status=TransactionStatus.SUCCESSFUL,
            category=TransactionCategory.CHECK_DEPOSIT,
            last_updated_by_admin=admin_id,
            created_by=admin_id,
        ))
        return account.account_number

    def _deposit_to_dict(self, deposit: CheckDeposit) -> Dict:
        result = deposit.to_dict()
        result['currency'] = deposit.currency.code
        result['status'] = deposit.status.value
        return result

    def _deposit_from_dict(self, data: Dict) -> CheckDeposit:
        data = CheckDeposit.parse_timestamps(dict(data))
        data['amount'] = Decimal(data['amount'])
        data['currency'] = Currency[data['currency']]
        data['status'] = CheckDepositStatus(data['status'])
        return CheckDeposit(**data)
