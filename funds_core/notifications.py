"""
Notification Module

The ``notify(recipient_address, kind, payload)`` capability. Templates are
rendered here and handed to channel providers; actual e-mail delivery lives
outside this service (a webhook relay or the log provider in development).
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
from abc import ABC, abstractmethod
import uuid

import requests

from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger


class NotificationKind(Enum):
    """Templates the core sends"""
    WELCOME = "welcome"
    TRANSFER_SUBMITTED = "transfer_submitted"
    TRANSACTION_STATUS_UPDATED = "transaction_status_updated"
    CREDIT_RECEIVED = "credit_received"
    BALANCE_ADJUSTED = "balance_adjusted"
    CHECK_DEPOSIT_SUBMITTED = "check_deposit_submitted"
    CHECK_DEPOSIT_REVIEWED = "check_deposit_reviewed"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"
    CARD_ISSUED = "card_issued"


class NotificationStatus(Enum):
    SENT = "sent"
    FAILED = "failed"


TEMPLATES = {
    NotificationKind.WELCOME: (
        "Welcome to the bank, {full_name}",
        "Your checking account {checking_account} and savings account {savings_account} are open."
    ),
    NotificationKind.TRANSFER_SUBMITTED: (
        "Transfer submitted: {amount}",
        "Your {transfer_type} of {amount} from account {account_number} is processing. "
        "Reference: {reference_id}. New balance: {new_balance}."
    ),
    NotificationKind.TRANSACTION_STATUS_UPDATED: (
        "Transaction {reference_id} is now {status}",
        "The status of your transaction of {amount} changed from {previous_status} to {status}."
    ),
    NotificationKind.CREDIT_RECEIVED: (
        "You received {amount}",
        "A new credit of {amount} was posted to account {account_number}. Reference: {reference_id}."
    ),
    NotificationKind.BALANCE_ADJUSTED: (
        "Account {account_number} was {adjustment_type}ed",
        "An adjustment of {amount} was applied to account {account_number}: {description}. "
        "New balance: {new_balance}."
    ),
    NotificationKind.CHECK_DEPOSIT_SUBMITTED: (
        "Check deposit {deposit_id} received",
        "We received your check deposit of {amount}. It is pending review."
    ),
    NotificationKind.CHECK_DEPOSIT_REVIEWED: (
        "Check deposit {deposit_id} {status}",
        "Your check deposit of {amount} was {status}. {notes}"
    ),
    NotificationKind.ACCOUNT_STATUS_CHANGED: (
        "Your account status is now {status}",
        "Your account status changed to {status}. Reason: {reason}"
    ),
    NotificationKind.CARD_ISSUED: (
        "Your new card is ready",
        "A card ending in {last_four} was issued to you, valid until {expiry_date}."
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


@dataclass
class Notification(StorageRecord):
    """A rendered, attempted notification"""
    kind: NotificationKind
    recipient_address: str
    subject: str
    body: str
    status: NotificationStatus
    recipient_id: Optional[str] = None
    failed_reason: Optional[str] = None
    channel_status: Dict[str, str] = field(default_factory=dict)


class NotificationError(Exception):
    """A delivery channel refused the notification"""


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    name = "channel"

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Logs notifications instead of delivering them"""

    name = "log"

    def __init__(self, logger=None):
        self.logger = logger or get_logger("funds_core.notifications")

    def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"EMAIL to {notification.recipient_address}: {notification.subject} | {notification.body[:100]}"
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """Posts notifications to an external mail relay"""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        response = requests.post(
            self.url,
            json={
                "notification_id": notification.id,
                "kind": notification.kind.value,
                "to": notification.recipient_address,
                "subject": notification.subject,
                "body": notification.body,
                "timestamp": notification.created_at.isoformat(),
            },
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return 200 <= response.status_code < 300


class NotificationService:
    """Renders templates and sends them through the configured providers"""

    def __init__(
        self,
        storage: StorageInterface,
        providers: Optional[List[ChannelProvider]] = None,
        address_resolver: Optional[Callable[[str], Optional[str]]] = None,
        table_name: str = "notifications"
    ):
        self.storage = storage
        self.providers = providers if providers is not None else [LogChannelProvider()]
        self.address_resolver = address_resolver
        self.table_name = table_name
        self.logger = get_logger("funds_core.notifications")

    def render(self, kind: NotificationKind, payload: Dict[str, Any]):
        subject, body = TEMPLATES[kind]
        values = _SafeDict({k: v for k, v in payload.items() if v is not None})
        return subject.format_map(values), body.format_map(values)

    def notify(self, recipient_address: str, kind: NotificationKind, payload: Dict[str, Any],
               recipient_id: Optional[str] = None) -> Notification:
        """
        Render and send one notification

        Every provider is attempted and its outcome kept in ``channel_status``.
        One refusal fails the notification so the outbox task is retried.

        Raises:
            NotificationError: If any provider refused it or errored
        """
        subject, body = self.render(kind, payload)
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            recipient_address=recipient_address,
            recipient_id=recipient_id,
            subject=subject,
            body=body,
            status=NotificationStatus.SENT,
        )

        errors = []
        for provider in self.providers:
            try:
                delivered = provider.send(notification)
                if not delivered:
                    errors.append(f"{provider.name} refused")
            except Exception as e:
                delivered = False
                errors.append(f"{provider.name}: {e}")
            status = NotificationStatus.SENT if delivered else NotificationStatus.FAILED
            notification.channel_status[provider.name] = status.value

        if errors:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = "; ".join(errors)
        self.storage.save(self.table_name, notification.id, notification.to_dict())

        if notification.status == NotificationStatus.FAILED:
            raise NotificationError(notification.failed_reason)
        return notification

    def deliver(self, task_payload: Dict[str, Any]) -> Notification:
        """Outbox handler: resolve the recipient's address and notify"""
        recipient_id = task_payload['recipient_id']
        address = self.address_resolver(recipient_id) if self.address_resolver else None
        if not address:
            raise NotificationError(f"No address for recipient {recipient_id}")
        return self.notify(address, NotificationKind(task_payload['kind']),
                           task_payload.get('data', {}), recipient_id=recipient_id)

    def list_for_recipient(self, recipient_id: str) -> List[Dict[str, Any]]:
        return self.storage.find(self.table_name, {'recipient_id': recipient_id})
