"""
Reconciliation Module

Compares every stored account balance with the sum of the ledger entries
booked against it. Entries in a reversal status are excluded because their
effect was given back to the account when they were reversed.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .transactions import TransactionLedger
from .users import UserRegistry
from .storage import StorageInterface
from .outbox import Outbox, OutboxRelay
from .audit import AuditEventType
from .errors import classified
from .logging_config import get_logger, log_action


@dataclass
class Discrepancy:
    user_id: str
    account_number: str
    currency: str
    expected: Decimal  # ledger sum
    actual: Decimal  # stored balance

    @property
    def difference(self) -> Decimal:
        return self.actual - self.expected

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'account_number': self.account_number,
            'currency': self.currency,
            'expected': str(self.expected),
            'actual': str(self.actual),
            'difference': str(self.difference),
        }


@dataclass
class ReconciliationReport:
    checked: int
    discrepancies: List[Discrepancy] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def balanced(self) -> bool:
        return not self.discrepancies

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked': self.checked,
            'balanced': self.balanced,
            'discrepancies': [d.to_dict() for d in self.discrepancies],
            'run_at': self.run_at.isoformat(),
        }


class Reconciler:
    """Ledger versus balance comparison"""

    def __init__(self, storage: StorageInterface, users: UserRegistry, ledger: TransactionLedger,
                 outbox: Outbox, relay: OutboxRelay):
        self.storage = storage
        self.users = users
        self.ledger = ledger
        self.outbox = outbox
        self.relay = relay
        self.logger = get_logger("funds_core.reconciliation")

    def reconcile(self, user_id: Optional[str] = None, actor_id: Optional[str] = None) -> ReconciliationReport:
        """
        Check one user's accounts, or every account when ``user_id`` is None

        Raises:
            NotFoundError: Unknown user_id
        """
        with classified("reconciliation"), self.storage.atomic():
            users = [self.users.get_user(user_id)] if user_id else self.users.list_users()
            report = ReconciliationReport(checked=0)
            for user in users:
                for account in user.accounts:
                    report.checked += 1
                    expected = self.ledger.balance_of(account.account_number, account.currency)
                    if expected != account.money:
                        report.discrepancies.append(Discrepancy(
                            user_id=user.id,
                            account_number=account.account_number,
                            currency=account.currency.code,
                            expected=expected.amount,
                            actual=account.balance,
                        ))
            tasks = [self.outbox.audit(AuditEventType.RECONCILIATION_RUN, "system", user_id or "all", {
                "checked": report.checked,
                "discrepancies": len(report.discrepancies),
            }, user_id=actor_id)]
        self.relay.dispatch(tasks)

        if report.discrepancies:
            log_action(
                self.logger, "error", "Ledger and balances disagree",
                user_id=actor_id, action="reconcile",
                extra={"discrepancies": [d.to_dict() for d in report.discrepancies]}
            )
        else:
            self.logger.info(f"Reconciliation clean: {report.checked} accounts checked")
        return report
