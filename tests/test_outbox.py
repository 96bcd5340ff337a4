"""
Tests for the transactional outbox and its relay
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from funds_core.storage import InMemoryStorage
from funds_core.outbox import Outbox, OutboxRelay, TaskKind, TaskStatus
from funds_core.audit import AuditEventType
from funds_core.notifications import ChannelProvider, NotificationKind
from funds_core.transfers import OWN_ACCOUNTS_TRANSFER

from factories import PIN, make_system, register, checking, savings


class ExplodingProvider(ChannelProvider):
    def send(self, notification):
        raise ConnectionError("mail relay down")


class TestOutbox:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.outbox = Outbox(self.storage)
        self.relay = OutboxRelay(self.outbox, async_mode=False)
        self.handled = []

    def test_tasks_written_in_rolled_back_work_never_exist(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.outbox.audit(AuditEventType.TRANSFER_SUBMITTED, "transaction", "t1")
                raise RuntimeError("abort")
        assert self.outbox.pending_tasks() == []

    def test_sync_dispatch_runs_handlers(self):
        self.relay.register(TaskKind.AUDIT, self.handled.append)
        task = self.outbox.audit(AuditEventType.TRANSFER_SUBMITTED, "transaction", "t1", {"amount": "1.00"})

        self.relay.dispatch([task])

        assert self.handled == [task.payload]
        stored = self.outbox.get_task(task.id)
        assert stored.status == TaskStatus.SENT
        assert stored.attempts == 1
        assert stored.processed_at is not None

    def test_sent_task_is_not_repeated(self):
        self.relay.register(TaskKind.AUDIT, self.handled.append)
        task = self.outbox.audit(AuditEventType.TRANSFER_SUBMITTED, "transaction", "t1")
        self.relay.dispatch([task])
        self.relay.dispatch([task.id])
        assert len(self.handled) == 1

    def test_failed_handler_is_recorded_and_retried(self):
        calls = []

        def flaky(payload):
            calls.append(payload)
            if len(calls) == 1:
                raise ValueError("first call fails")

        self.relay.register(TaskKind.NOTIFY, flaky)
        task = self.outbox.notify("u1", NotificationKind.CARD_ISSUED, {"last_four": "1234"})

        self.relay.dispatch([task])
        failed = self.outbox.get_task(task.id)
        assert failed.status == TaskStatus.FAILED
        assert "first call fails" in failed.last_error

        stats = self.relay.retry_failed()
        assert stats == {"retried": 1, "sent": 1, "failed": 0}
        assert self.outbox.get_task(task.id).status == TaskStatus.SENT

    def test_retry_skips_exhausted_tasks(self):
        def broken(payload):
            raise ValueError("always")

        self.relay.register(TaskKind.AUDIT, broken)
        task = self.outbox.audit(AuditEventType.TRANSFER_SUBMITTED, "transaction", "t1")
        self.relay.dispatch([task])

        assert self.relay.retry_failed(max_attempts=2) == {"retried": 1, "sent": 0, "failed": 1}
        assert self.relay.retry_failed(max_attempts=2) == {"retried": 0, "sent": 0, "failed": 0}
        assert self.outbox.get_task(task.id).attempts == 2

    def test_purge_removes_only_old_sent_tasks(self):
        self.relay.register(TaskKind.AUDIT, self.handled.append)
        sent = self.outbox.audit(AuditEventType.TRANSFER_SUBMITTED, "transaction", "t1")
        self.relay.dispatch([sent])
        pending = self.outbox.audit(AuditEventType.TRANSFER_SUBMITTED, "transaction", "t2")

        assert self.outbox.purge_sent(timedelta(hours=1)) == 0

        later = datetime.now(timezone.utc) + timedelta(hours=2)
        assert self.outbox.purge_sent(timedelta(hours=1), now=later) == 1
        assert self.outbox.get_task(sent.id) is None
        assert self.outbox.get_task(pending.id).status == TaskStatus.PENDING

    def test_async_worker_drains_queue(self):
        relay = OutboxRelay(self.outbox, async_mode=True)
        seen = threading.Event()
        relay.register(TaskKind.AUDIT, lambda payload: seen.set())
        relay.start()
        try:
            task = self.outbox.audit(AuditEventType.TRANSFER_SUBMITTED, "transaction", "t1")
            relay.dispatch([task])
            relay.drain()
            assert seen.is_set()
            assert self.outbox.get_task(task.id).status == TaskStatus.SENT
        finally:
            relay.stop()


class TestSideEffectFailures:

    def test_failing_notification_does_not_fail_transfer(self):
        system = make_system()
        system.notification_service.providers = [ExplodingProvider()]
        alice = register(system, "alice")
        bobby = register(system, "bobby")

        receipt = system.transfer_engine.submit_transfer(
            alice.id, checking(alice).account_number, "10.00",
            OWN_ACCOUNTS_TRANSFER, PIN, destination_account_number=savings(bobby).account_number
        )

        assert system.ledger.get_transaction(receipt.transaction_id) is not None
        failed = system.outbox.tasks_with_status(TaskStatus.FAILED)
        assert failed
        assert all(t.kind == TaskKind.NOTIFY for t in failed)
        # Audit side effects still went through
        assert system.audit_trail.get_events_for_entity("transaction", receipt.transaction_id)

    def test_webhook_outage_is_recorded_and_retried(self):
        system = make_system(notification_webhook_url="https://mail.example.com/hook")

        with patch("funds_core.notifications.requests.post") as post:
            post.return_value = MagicMock(status_code=503)
            alice = register(system, "alice")

            [failed] = system.outbox.tasks_with_status(TaskStatus.FAILED)
            assert failed.kind == TaskKind.NOTIFY
            assert "webhook refused" in failed.last_error
            [stored] = system.notification_service.list_for_recipient(alice.id)
            assert stored["channel_status"] == {"log": "sent", "webhook": "failed"}

            post.return_value = MagicMock(status_code=202)
            assert system.relay.retry_failed() == {"retried": 1, "sent": 1, "failed": 0}

        assert system.outbox.get_task(failed.id).status == TaskStatus.SENT
        statuses = sorted(n["status"] for n in system.notification_service.list_for_recipient(alice.id))
        assert statuses == ["failed", "sent"]

    def test_start_replays_pending_tasks(self):
        system = make_system()
        task = system.outbox.audit(AuditEventType.RECONCILIATION_RUN, "system", "reconciliation")

        system.start()
        try:
            assert system.outbox.get_task(task.id).status == TaskStatus.SENT
            assert system.audit_trail.count_events() == 1
        finally:
            system.shutdown()
