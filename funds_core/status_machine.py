"""
Status Transition Module

Admin-driven lifecycle of ledger entries. ``plan_transition`` is a pure
function from (entry, requested status) to the balance effects the change
implies; ``StatusTransitionEngine`` applies a plan atomically together with
the status write and the post-commit tasks.

Completion of an internal debit credits the destination account and books
the credit leg (``<reference>-CR``). Reversal of a debit that was neither
completed nor already reversed restores the source balance. Terminal
statuses accept only a repeat of themselves.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Optional, Tuple, Union
from enum import Enum

from .currency import Money
from .transactions import (
    Transaction, TransactionLedger, TransactionStatus, TransactionCategory,
    COMPLETABLE_STATUSES
)
from .users import UserRegistry
from .storage import StorageInterface
from .outbox import Outbox, OutboxRelay
from .audit import AuditEventType
from .notifications import NotificationKind
from .errors import (
    ValidationError, NotFoundError, RecipientNotFoundError, TerminalStatusError, classified
)
from .logging_config import get_logger, log_action


class TransitionOutcome(Enum):
    NOOP = "noop"
    COMPLETE = "complete"
    REVERSE = "reverse"
    RELABEL = "relabel"


@dataclass(frozen=True)
class CreditRecipient:
    """Credit the destination of an internal transfer"""
    account_number: Optional[str]
    amount: Decimal


@dataclass(frozen=True)
class RestoreSource:
    """Give a reversed debit back to its source account"""
    account_number: str
    amount: Decimal


Effect = Union[CreditRecipient, RestoreSource]


@dataclass(frozen=True)
class TransitionPlan:
    current: TransactionStatus
    target: TransactionStatus
    outcome: TransitionOutcome
    effects: Tuple[Effect, ...] = ()


def plan_transition(transaction: Transaction, target: TransactionStatus) -> TransitionPlan:
    """
    Decide what moving ``transaction`` to ``target`` means

    Raises:
        TerminalStatusError: The entry is already final and ``target`` differs
    """
    current = transaction.status
    if target == current:
        return TransitionPlan(current, target, TransitionOutcome.NOOP)

    if current.is_terminal:
        raise TerminalStatusError(
            f"Transaction is already {current.value} and cannot be changed",
            context={"status": current.value}
        )

    if target == TransactionStatus.SUCCESSFUL and current in COMPLETABLE_STATUSES:
        effects: Tuple[Effect, ...] = ()
        if transaction.is_internal and transaction.is_debit:
            effects = (CreditRecipient(transaction.destination_account_number, abs(transaction.amount)),)
        return TransitionPlan(current, target, TransitionOutcome.COMPLETE, effects)

    if target.is_reversal:
        if transaction.is_debit:
            return TransitionPlan(
                current, target, TransitionOutcome.REVERSE,
                (RestoreSource(transaction.account_number, abs(transaction.amount)),)
            )
        return TransitionPlan(current, target, TransitionOutcome.REVERSE)

    return TransitionPlan(current, target, TransitionOutcome.RELABEL)


@dataclass
class TransitionResult:
    transaction_id: str
    reference_id: str
    previous_status: TransactionStatus
    new_status: TransactionStatus
    changed: bool
    credit_transaction_id: Optional[str] = None


class StatusTransitionEngine:
    """Applies transition plans inside a unit of work"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserRegistry,
        ledger: TransactionLedger,
        outbox: Outbox,
        relay: OutboxRelay
    ):
        self.storage = storage
        self.users = users
        self.ledger = ledger
        self.outbox = outbox
        self.relay = relay
        self.logger = get_logger("funds_core.status_machine")

    def set_transaction_status(self, transaction_id: str, new_status: str, admin_id: str) -> TransitionResult:
        """
        Move a ledger entry to a new status

        Args:
            transaction_id: Entry to change
            new_status: Requested status (case-insensitive)
            admin_id: Acting admin

        Returns:
            TransitionResult; ``changed`` is False for a repeated status

        Raises:
            ValidationError: Unknown status
            NotFoundError: Entry or source account missing
            RecipientNotFoundError: Internal destination account missing
            TerminalStatusError: Entry already final
        """
        try:
            target = TransactionStatus.parse(new_status)
        except ValueError:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(s.value for s in TransactionStatus)}",
                context={"field": "status"}
            )

        with classified("status update"), self.storage.atomic():
            transaction = self.ledger.get_transaction(transaction_id)
            if not transaction:
                raise NotFoundError("Transaction not found", context={"transaction_id": transaction_id})

            plan = plan_transition(transaction, target)
            if plan.outcome == TransitionOutcome.NOOP:
                return TransitionResult(
                    transaction_id=transaction.id,
                    reference_id=transaction.reference_id,
                    previous_status=plan.current,
                    new_status=plan.current,
                    changed=False,
                )

            credit: Optional[Transaction] = None
            for effect in plan.effects:
                if isinstance(effect, CreditRecipient):
                    credit = self._credit_recipient(transaction, effect, admin_id)
                elif isinstance(effect, RestoreSource):
                    self._restore_source(transaction, effect)

            self.ledger.update_status(transaction, target, admin_id)
            tasks = self._post_commit_tasks(transaction, plan, credit, admin_id)
        self.relay.dispatch(tasks)

        log_action(
            self.logger, "info", f"Transaction status changed to {target.value}",
            user_id=admin_id, action="set_transaction_status", resource=f"transaction:{transaction.id}",
            extra={"from": plan.current.value, "to": target.value, "outcome": plan.outcome.value}
        )
        return TransitionResult(
            transaction_id=transaction.id,
            reference_id=transaction.reference_id,
            previous_status=plan.current,
            new_status=target,
            changed=True,
            credit_transaction_id=credit.id if credit else None,
        )

    def complete_transaction(self, transaction_id: str, admin_id: str) -> TransitionResult:
        """Shortcut for moving an entry to Successful"""
        return self.set_transaction_status(transaction_id, TransactionStatus.SUCCESSFUL.value, admin_id)

    def _credit_recipient(self, transaction: Transaction, effect: CreditRecipient,
                          admin_id: str) -> Transaction:
        recipient = self.users.find_by_account_number(effect.account_number) if effect.account_number else None
        if not recipient:
            raise RecipientNotFoundError(
                "Recipient account not found; transfer cannot be completed",
                context={"destination_account_number": effect.account_number}
            )
        account = recipient.get_account(effect.account_number)
        amount = Money(effect.amount, account.currency)
        account.balance = (account.money + amount).amount
        self.users.save_user(recipient)

        return self.ledger.record(self.ledger.new_entry(
            user_id=recipient.id,
            account_number=account.account_number,
            account_type=account.account_type,
            amount=amount,
            description=f"Internal Credit Ref: {transaction.reference_id}",
            reference_id=f"{transaction.reference_id}-CR",
            status=TransactionStatus.SUCCESSFUL,
            category=TransactionCategory.CREDIT_LEG,
            is_internal=True,
            related_reference_id=transaction.reference_id,
            last_updated_by_admin=admin_id,
            created_by=admin_id,
        ))

    def _restore_source(self, transaction: Transaction, effect: RestoreSource) -> None:
        owner = self.users.find_user(transaction.user_id)
        account = owner.get_account(effect.account_number) if owner else None
        if not account:
            raise NotFoundError(
                "Source account not found; refund cannot be applied",
                context={"account_number": effect.account_number}
            )
        account.balance = (account.money + Money(effect.amount, account.currency)).amount
        self.users.save_user(owner)

    def _post_commit_tasks(self, transaction: Transaction, plan: TransitionPlan,
                           credit: Optional[Transaction], admin_id: str):
        tasks = [
            self.outbox.audit(AuditEventType.TRANSACTION_STATUS_CHANGED, "transaction", transaction.id, {
                "reference_id": transaction.reference_id,
                "from": plan.current.value,
                "to": plan.target.value,
                "outcome": plan.outcome.value,
                "credit_reference_id": credit.reference_id if credit else None,
            }, user_id=admin_id),
            self.outbox.notify(transaction.user_id, NotificationKind.TRANSACTION_STATUS_UPDATED, {
                "reference_id": transaction.reference_id,
                "amount": transaction.money.to_string(),
                "previous_status": plan.current.value,
                "status": plan.target.value,
            }),
        ]
        if credit:
            tasks.append(self.outbox.notify(credit.user_id, NotificationKind.CREDIT_RECEIVED, {
                "amount": credit.money.to_string(),
                "account_number": credit.account_number,
                "reference_id": credit.reference_id,
            }))
        return tasks
