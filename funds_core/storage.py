"""
Storage Backend Module

Provides the abstract document-store interface and implementations for
in-memory (testing), SQLite (single node persistence) and MongoDB (document
database). Every backend supports a serialized ``atomic()`` unit of work and a
hard uniqueness primitive (``insert``). All monetary values stored as Decimal
strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager


class StorageError(Exception):
    """Base class for backend failures"""


class DuplicateKeyError(StorageError):
    """Raised by ``insert`` when the key is already taken"""

    def __init__(self, table: str, record_id: str):
        super().__init__(f"Duplicate key in {table}")
        self.table = table
        self.record_id = record_id


class StorageUnavailable(StorageError):
    """Store timed out or aborted the transaction; nothing was persisted"""


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
        return result

    @staticmethod
    def parse_timestamps(data: Dict[str, Any]) -> Dict[str, Any]:
        """Convert ISO strings back to datetime objects"""
        for key in ('created_at', 'updated_at'):
            if key in data and isinstance(data[key], str):
                data[key] = datetime.fromisoformat(data[key])
        return data


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (upsert) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, raising DuplicateKeyError if the key exists"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def ping(self) -> bool:
        """Health check"""
        return True

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for a unit of work.

        Nested scopes join the outermost one; only the outermost commit or
        rollback reaches the backend.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


def _copy(data: Any) -> Any:
    # Deep copy through JSON so callers never share state with the store
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    A unit of work holds the store lock for its whole duration and restores
    a snapshot on rollback, so concurrent read-modify-write sequences are
    serialized and aborted work leaves no trace.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = _copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record, refusing existing keys"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateKeyError(table, record_id)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                _copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Acquire the store and snapshot it for the outermost scope"""
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = _copy(self._data)
        self._depth += 1

    def commit(self) -> None:
        """Release the store, discarding the snapshot"""
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        """Restore the snapshot once the outermost scope unwinds"""
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return _copy(self._data)


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue BEGIN/COMMIT explicitly
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _translate(self):
        try:
            yield
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise StorageUnavailable(str(e)) from e
            raise

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._translate():
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS "{table}" (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS "idx_{table}_created_at"
                ON "{table}"(created_at)
            """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._translate():
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO "{table}" (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM "{table}" WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a record; the primary key is the uniqueness constraint"""
        with self._lock, self._translate():
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO "{table}" (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(table, record_id) from e

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._translate():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM "{table}" WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock, self._translate():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM "{table}" ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock, self._translate():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM "{table}" WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._translate():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM "{table}" WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock, self._translate():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM "{table}"
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._translate():
            self._ensure_table(table)
            self._connection.execute(f'DELETE FROM "{table}"')

    def ping(self) -> bool:
        with self._lock:
            return self._connection.execute("SELECT 1").fetchone() is not None

    def begin_transaction(self) -> None:
        """Start a write transaction for the outermost scope"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                with self._translate():
                    self._connection.execute("BEGIN IMMEDIATE")
            except BaseException:
                self._lock.release()
                raise
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            if self._depth == 1:
                with self._translate():
                    self._connection.execute("COMMIT")
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            if self._depth == 1:
                self._connection.execute("ROLLBACK")
                # Tables created inside the aborted scope are gone again
                self._tables.clear()
        finally:
            self._depth -= 1
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class MongoStorage(StorageInterface):
    """
    MongoDB storage backend using client sessions and multi-document
    transactions (requires a replica set or sharded cluster)

    Each table is a collection; ``_id`` holds the record id, which makes
    ``insert`` the uniqueness constraint.
    """

    def __init__(self, uri: str, database: str = "funds_core", timeout_ms: int = 5000,
                 client: Any = None):
        try:
            import pymongo
            from pymongo import errors
            self.pymongo = pymongo
            self.errors = errors
        except ImportError:
            raise ImportError("pymongo is required for MongoDB storage. Install with: pip install pymongo")

        self.uri = uri
        self.timeout_ms = timeout_ms
        self._client = client or pymongo.MongoClient(
            uri,
            serverSelectionTimeoutMS=timeout_ms,
            timeoutMS=timeout_ms,
        )
        self._db = self._client[database]
        self._local = threading.local()

    def _session(self):
        return getattr(self._local, "session", None)

    @contextmanager
    def _translate(self):
        try:
            yield
        except self.errors.DuplicateKeyError:
            raise
        except (self.errors.ServerSelectionTimeoutError,
                self.errors.NetworkTimeout,
                self.errors.ExecutionTimeout,
                self.errors.AutoReconnect) as e:
            raise StorageUnavailable(str(e)) from e
        except self.errors.PyMongoError as e:
            if e.has_error_label("TransientTransactionError") or \
                    e.has_error_label("UnknownTransactionCommitResult"):
                raise StorageUnavailable(str(e)) from e
            raise

    @staticmethod
    def _strip(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if document is None:
            return None
        document.pop("_id", None)
        return document

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._translate():
            self._db[table].replace_one(
                {"_id": record_id}, {**_copy(data), "_id": record_id},
                upsert=True, session=self._session()
            )

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        try:
            with self._translate():
                self._db[table].insert_one({**_copy(data), "_id": record_id}, session=self._session())
        except self.errors.DuplicateKeyError as e:
            raise DuplicateKeyError(table, record_id) from e

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._translate():
            return self._strip(self._db[table].find_one({"_id": record_id}, session=self._session()))

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        with self._translate():
            result = self._db[table].delete_one({"_id": record_id}, session=self._session())
            return result.deleted_count > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._translate():
            return self._db[table].count_documents(
                {"_id": record_id}, limit=1, session=self._session()
            ) > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._translate():
            cursor = self._db[table].find(filters, session=self._session()).sort("created_at", 1)
            return [self._strip(document) for document in cursor]

    def count(self, table: str) -> int:
        with self._translate():
            return self._db[table].count_documents({}, session=self._session())

    def clear_table(self, table: str) -> None:
        with self._translate():
            self._db[table].delete_many({}, session=self._session())

    def ping(self) -> bool:
        with self._translate():
            self._client.admin.command("ping")
            return True

    def begin_transaction(self) -> None:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            with self._translate():
                session = self._client.start_session()
                session.start_transaction()
            self._local.session = session
        self._local.depth = depth + 1

    def commit(self) -> None:
        self._local.depth -= 1
        if self._local.depth == 0:
            session = self._local.session
            self._local.session = None
            try:
                with self._translate():
                    session.commit_transaction()
            finally:
                session.end_session()

    def rollback(self) -> None:
        self._local.depth -= 1
        if self._local.depth == 0:
            session = self._local.session
            self._local.session = None
            try:
                if session.in_transaction:
                    session.abort_transaction()
            finally:
                session.end_session()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def create_storage(database_url: str, mongo_database: str = "funds_core",
                   timeout_ms: int = 5000) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db`` (or
    ``sqlite://:memory:``) and ``mongodb://`` / ``mongodb+srv://``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", timeout=timeout_ms / 1000)
    if database_url.startswith(("mongodb://", "mongodb+srv://")):
        return MongoStorage(database_url, database=mongo_database, timeout_ms=timeout_ms)
    raise ValueError(f"Unsupported database URL: {database_url}")
