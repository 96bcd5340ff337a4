"""
Banking system container: builds storage and every service from configuration
"""

from datetime import timedelta
from decimal import Decimal
from typing import Dict, Any, Optional

from .config import BankConfig, get_config
from .storage import StorageInterface, InMemoryStorage, create_storage
from .audit import AuditTrail, AuditEventType
from .accounts import AccountType, AccountNumberGenerator, AccountNumberAllocator
from .transactions import TransactionLedger
from .outbox import Outbox, OutboxRelay, TaskKind, TaskStatus
from .notifications import NotificationService, LogChannelProvider, WebhookChannelProvider
from .users import UserRegistry
from .transfers import TransferEngine
from .status_machine import StatusTransitionEngine
from .check_deposits import CheckDepositManager
from .cards import CardManager
from .reconciliation import Reconciler
from .logging_config import get_logger


class BankingSystem:
    """Funds core with all components initialized"""

    def __init__(self, config: Optional[BankConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 generator: Optional[AccountNumberGenerator] = None):
        self.config = config or get_config()
        self.logger = get_logger("funds_core.system")

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url,
            mongo_database=self.config.mongo_database,
            timeout_ms=self.config.store_timeout_ms,
        )

        # Post-commit plumbing
        self.audit_trail = AuditTrail(self.storage)
        self.outbox = Outbox(self.storage)
        self.relay = OutboxRelay(
            self.outbox,
            async_mode=self.config.outbox_async,
            max_attempts=self.config.outbox_max_attempts,
        )

        # Core components
        self.ledger = TransactionLedger(self.storage)
        self.allocator = AccountNumberAllocator(
            self.storage,
            generator=generator,
            max_attempts=self.config.account_number_max_attempts,
            backoff_ms=self.config.account_number_backoff_ms,
        )
        self.user_registry = UserRegistry(
            self.storage, self.ledger, self.allocator, self.outbox, self.relay,
            opening_balances={
                AccountType.CHECKING: Decimal(self.config.checking_opening_balance),
                AccountType.SAVINGS: Decimal(self.config.savings_opening_balance),
            },
            password_min_length=self.config.password_min_length,
            username_min_length=self.config.username_min_length,
            admin_message_min_length=self.config.admin_message_min_length,
            status_reason_min_length=self.config.status_reason_min_length,
        )
        self.transfer_engine = TransferEngine(
            self.storage, self.user_registry, self.ledger, self.outbox, self.relay,
            history_max_transactions=self.config.history_max_transactions,
        )
        self.status_engine = StatusTransitionEngine(
            self.storage, self.user_registry, self.ledger, self.outbox, self.relay
        )
        self.deposit_manager = CheckDepositManager(
            self.storage, self.user_registry, self.ledger, self.outbox, self.relay,
            id_start=self.config.deposit_id_start,
            min_amount=Decimal(self.config.deposit_min_amount),
            decline_notes_min_length=self.config.decline_notes_min_length,
        )
        self.card_manager = CardManager(self.storage, self.user_registry, self.outbox, self.relay)
        self.reconciler = Reconciler(self.storage, self.user_registry, self.ledger, self.outbox, self.relay)

        self.notification_service = NotificationService(
            self.storage,
            providers=self._create_providers(),
            address_resolver=self.user_registry.email_of,
        )

        self.relay.register(TaskKind.AUDIT, self._append_audit_event)
        self.relay.register(TaskKind.NOTIFY, self.notification_service.deliver)

    @classmethod
    def in_memory(cls, generator: Optional[AccountNumberGenerator] = None, **overrides) -> 'BankingSystem':
        """Synchronous, in-memory system for tests and local experiments"""
        settings = {
            "database_url": "memory://",
            "outbox_async": False,
            "account_number_backoff_ms": 0,
        }
        settings.update(overrides)
        return cls(config=BankConfig(**settings), storage=InMemoryStorage(), generator=generator)

    def _create_providers(self):
        """Log provider always; webhook relay when a URL is configured"""
        providers = [LogChannelProvider()]
        if self.config.notification_webhook_url:
            providers.append(WebhookChannelProvider(
                self.config.notification_webhook_url,
                timeout=self.config.notification_timeout,
            ))
        return providers

    def _append_audit_event(self, payload: Dict[str, Any]) -> None:
        self.audit_trail.log_event(
            AuditEventType(payload['event_type']),
            payload['entity_type'],
            payload['entity_id'],
            metadata=payload.get('metadata'),
            user_id=payload.get('user_id'),
        )

    def start(self) -> None:
        self.relay.start()
        # Tasks left pending by an earlier process
        self.relay.dispatch(self.outbox.pending_tasks())
        self.purge_outbox()
        self.logger.info("Banking system started")

    def purge_outbox(self, older_than_hours: Optional[int] = None) -> int:
        """Drop sent outbox tasks past the retention window"""
        hours = self.config.outbox_retention_hours if older_than_hours is None else older_than_hours
        purged = self.outbox.purge_sent(timedelta(hours=hours))
        if purged:
            self.logger.info(f"Purged {purged} sent outbox tasks older than {hours}h")
        return purged

    def shutdown(self) -> None:
        self.relay.stop()
        self.storage.close()
        self.logger.info("Banking system stopped")

    def health(self) -> Dict[str, Any]:
        try:
            store_ok = self.storage.ping()
        except Exception as e:
            self.logger.error(f"Store health check failed: {e}")
            store_ok = False
        return {
            "status": "healthy" if store_ok else "degraded",
            "store": "up" if store_ok else "down",
            "outbox_failed": len(self.outbox.tasks_with_status(TaskStatus.FAILED)) if store_ok else None,
        }
