"""
Outbox Module

Post-commit side effects (audit appends, customer notifications) are written
as outbox tasks inside the same unit of work as the money movement, so they
exist only if it commits. The relay hands committed tasks to the handlers
registered for their kind, either inline or on a background worker thread.
Handler failures are recorded on the task and can be retried; they never
reach the caller of the financial operation.
"""

from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from enum import Enum
from threading import RLock, Thread
import queue
import uuid

from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class TaskKind(Enum):
    AUDIT = "audit"
    NOTIFY = "notify"


class TaskStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class OutboxTask(StorageRecord):
    """A side effect waiting to run after commit"""
    kind: TaskKind
    payload: Dict[str, Any]
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OutboxTask':
        data = cls.parse_timestamps(dict(data))
        data['kind'] = TaskKind(data['kind'])
        data['status'] = TaskStatus(data['status'])
        if data.get('processed_at'):
            data['processed_at'] = datetime.fromisoformat(data['processed_at'])
        return cls(**data)


class Outbox:
    """Persistent task table"""

    def __init__(self, storage: StorageInterface, table_name: str = "outbox"):
        self.storage = storage
        self.table_name = table_name

    def enqueue(self, kind: TaskKind, payload: Dict[str, Any]) -> OutboxTask:
        """Persist a pending task in the caller's unit of work"""
        now = datetime.now(timezone.utc)
        task = OutboxTask(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            payload=payload,
        )
        self.storage.insert(self.table_name, task.id, task.to_dict())
        return task

    def audit(self, event_type: Enum, entity_type: str, entity_id: str,
              metadata: Optional[Dict[str, Any]] = None,
              user_id: Optional[str] = None) -> OutboxTask:
        return self.enqueue(TaskKind.AUDIT, {
            'event_type': event_type.value,
            'entity_type': entity_type,
            'entity_id': entity_id,
            'metadata': metadata or {},
            'user_id': user_id,
        })

    def notify(self, recipient_id: str, kind: Enum, data: Dict[str, Any]) -> OutboxTask:
        return self.enqueue(TaskKind.NOTIFY, {
            'recipient_id': recipient_id,
            'kind': kind.value,
            'data': data,
        })

    def get_task(self, task_id: str) -> Optional[OutboxTask]:
        data = self.storage.load(self.table_name, task_id)
        if data:
            return OutboxTask.from_dict(data)
        return None

    def tasks_with_status(self, status: TaskStatus) -> List[OutboxTask]:
        tasks = [OutboxTask.from_dict(d) for d in self.storage.find(self.table_name, {'status': status.value})]
        tasks.sort(key=lambda t: t.created_at)
        return tasks

    def pending_tasks(self) -> List[OutboxTask]:
        return self.tasks_with_status(TaskStatus.PENDING)

    def purge_sent(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """
        Delete sent tasks processed before ``now - older_than``

        Pending and failed tasks are kept whatever their age.

        Returns:
            Number of tasks deleted
        """
        cutoff = (now or datetime.now(timezone.utc)) - older_than
        purged = 0
        for task in self.tasks_with_status(TaskStatus.SENT):
            if (task.processed_at or task.updated_at) < cutoff:
                if self.storage.delete(self.table_name, task.id):
                    purged += 1
        return purged

    def save(self, task: OutboxTask) -> None:
        task.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, task.id, task.to_dict())


Handler = Callable[[Dict[str, Any]], Any]


class OutboxRelay:
    """
    Dispatches committed outbox tasks to registered handlers

    In async mode a daemon worker consumes task ids from an in-process
    queue; otherwise tasks run inline when ``dispatch`` is called.
    """

    _STOP = object()

    def __init__(self, outbox: Outbox, async_mode: bool = True, max_attempts: int = 3):
        self.outbox = outbox
        self.async_mode = async_mode
        self.max_attempts = max_attempts
        self._handlers: Dict[TaskKind, List[Handler]] = {}
        self._lock = RLock()
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._worker: Optional[Thread] = None
        self.logger = get_logger("funds_core.outbox")

    def register(self, kind: TaskKind, handler: Handler) -> None:
        """Subscribe a handler to a task kind"""
        with self._lock:
            self._handlers.setdefault(kind, []).append(handler)

    def start(self) -> None:
        """Start the background worker (async mode only)"""
        if not self.async_mode or (self._worker and self._worker.is_alive()):
            return
        self._worker = Thread(target=self._run, name="outbox-relay", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Finish queued work and stop the worker"""
        if self._worker and self._worker.is_alive():
            self._queue.put(self._STOP)
            self._worker.join(timeout)
        self._worker = None

    def drain(self) -> None:
        """Block until every queued task has been handled"""
        if self.async_mode and self._worker and self._worker.is_alive():
            self._queue.join()

    def dispatch(self, tasks: Iterable[Union[OutboxTask, str]]) -> None:
        """Hand committed tasks to their handlers; never raises"""
        for task in tasks:
            task_id = task.id if isinstance(task, OutboxTask) else task
            if self.async_mode and self._worker and self._worker.is_alive():
                self._queue.put(task_id)
            else:
                self.process(task_id)

    def process(self, task_id: str) -> bool:
        """Run one task. Returns True when it ended up sent."""
        try:
            task = self.outbox.get_task(task_id)
            if task is None or task.status == TaskStatus.SENT:
                return task is not None

            with self._lock:
                handlers = list(self._handlers.get(task.kind, []))

            task.attempts += 1
            try:
                for handler in handlers:
                    handler(task.payload)
            except Exception as e:
                task.status = TaskStatus.FAILED
                task.last_error = f"{type(e).__name__}: {e}"
                self.outbox.save(task)
                log_action(
                    self.logger, "error", f"Outbox task failed: {task.kind.value}",
                    action="outbox_dispatch", resource=f"outbox:{task.id}",
                    extra={"attempts": task.attempts, "error": task.last_error}
                )
                return False

            task.status = TaskStatus.SENT
            task.last_error = None
            task.processed_at = datetime.now(timezone.utc)
            self.outbox.save(task)
            return True
        except Exception:
            # The task row itself could not be read or written
            self.logger.exception(f"Outbox bookkeeping failed for task {task_id}")
            return False

    def retry_failed(self, max_attempts: Optional[int] = None) -> Dict[str, int]:
        """
        Re-run failed tasks that still have attempts left

        Returns:
            Counts of retried, sent and still failing tasks
        """
        limit = max_attempts or self.max_attempts
        stats = {"retried": 0, "sent": 0, "failed": 0}
        for task in self.outbox.tasks_with_status(TaskStatus.FAILED):
            if task.attempts >= limit:
                continue
            stats["retried"] += 1
            if self.process(task.id):
                stats["sent"] += 1
            else:
                stats["failed"] += 1
        return stats

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is self._STOP:
                    return
                self.process(item)
            finally:
                self._queue.task_done()
