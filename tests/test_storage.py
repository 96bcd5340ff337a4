"""
Tests for storage backends and unit-of-work support
"""

import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from funds_core.storage import (
    InMemoryStorage, SQLiteStorage, MongoStorage, DuplicateKeyError, create_storage
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


class StorageContract:
    """Behaviour every backend must share"""

    def make_storage(self):
        raise NotImplementedError

    def setup_method(self):
        self.storage = self.make_storage()

    def teardown_method(self):
        self.storage.close()

    def test_basic_operations(self):
        self.storage.save("test_table", "record_1", test_data)
        assert self.storage.load("test_table", "record_1") == test_data
        assert self.storage.exists("test_table", "record_1")
        assert not self.storage.exists("test_table", "missing")

        self.storage.save("test_table", "record_2", {"id": "record_2", "name": "Other"})
        assert len(self.storage.load_all("test_table")) == 2
        assert self.storage.count("test_table") == 2

        results = self.storage.find("test_table", {"name": "Test Record"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"

        assert self.storage.delete("test_table", "record_1")
        assert not self.storage.delete("test_table", "record_1")
        assert self.storage.count("test_table") == 1

        self.storage.clear_table("test_table")
        assert self.storage.count("test_table") == 0

    def test_save_overwrites(self):
        self.storage.save("test_table", "r", {"id": "r", "v": 1})
        self.storage.save("test_table", "r", {"id": "r", "v": 2})
        assert self.storage.load("test_table", "r")["v"] == 2
        assert self.storage.count("test_table") == 1

    def test_insert_refuses_existing_key(self):
        self.storage.insert("index", "key-1", {"owner": "a"})
        with pytest.raises(DuplicateKeyError) as exc_info:
            self.storage.insert("index", "key-1", {"owner": "b"})
        assert exc_info.value.table == "index"
        assert self.storage.load("index", "key-1") == {"owner": "a"}

    def test_atomic_commits(self):
        with self.storage.atomic():
            self.storage.save("test_table", "a", {"id": "a"})
            self.storage.insert("test_table", "b", {"id": "b"})
        assert self.storage.exists("test_table", "a")
        assert self.storage.exists("test_table", "b")

    def test_atomic_rolls_back_on_error(self):
        self.storage.save("test_table", "keep", {"id": "keep", "v": 1})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("test_table", "keep", {"id": "keep", "v": 2})
                self.storage.save("test_table", "new", {"id": "new"})
                raise RuntimeError("simulated fault")

        assert self.storage.load("test_table", "keep")["v"] == 1
        assert not self.storage.exists("test_table", "new")

    def test_nested_atomic_joins_outer_scope(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                with self.storage.atomic():
                    self.storage.save("test_table", "inner", {"id": "inner"})
                raise RuntimeError("outer fails after inner finished")
        assert not self.storage.exists("test_table", "inner")

    def test_returned_records_are_copies(self):
        self.storage.save("test_table", "r", {"id": "r", "items": [1]})
        loaded = self.storage.load("test_table", "r")
        loaded["items"].append(2)
        assert self.storage.load("test_table", "r")["items"] == [1]

    def test_concurrent_read_modify_write_is_serialized(self):
        self.storage.save("counters", "c", {"value": 0})

        def increment():
            for _ in range(20):
                with self.storage.atomic():
                    current = self.storage.load("counters", "c")["value"]
                    self.storage.save("counters", "c", {"value": current + 1})

        threads = [threading.Thread(target=increment) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert self.storage.load("counters", "c")["value"] == 100


class TestInMemoryStorage(StorageContract):

    def make_storage(self):
        return InMemoryStorage()

    def test_get_all_data(self):
        self.storage.save("t", "1", {"id": "1"})
        assert self.storage.get_all_data() == {"t": {"1": {"id": "1"}}}


class TestSQLiteStorage(StorageContract):

    def make_storage(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        return SQLiteStorage(Path(self.temp_dir.name) / "test.db")

    def teardown_method(self):
        super().teardown_method()
        self.temp_dir.cleanup()

    def test_persistence_across_instances(self):
        path = Path(self.temp_dir.name) / "persist.db"
        first = SQLiteStorage(path)
        first.save("test_table", "r", {"id": "r"})
        first.close()

        second = SQLiteStorage(path)
        assert second.load("test_table", "r") == {"id": "r"}
        second.close()

    def test_ping(self):
        assert self.storage.ping()

    @pytest.mark.parametrize("table", ["order", "group", "select"])
    def test_reserved_word_table_names(self, table):
        self.storage.save(table, "r", {"id": "r"})
        assert self.storage.exists(table, "r")
        assert self.storage.count(table) == 1
        self.storage.clear_table(table)
        assert self.storage.load_all(table) == []


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage(f"sqlite:///{temp_dir}/bank.db")
            assert isinstance(storage, SQLiteStorage)
            assert storage.db_path.endswith("bank.db")
            storage.close()

    def test_sqlite_in_memory_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("redis://localhost")


MONGO_URL = os.environ.get("BANK_TEST_MONGO_URL")


@pytest.mark.skipif(not MONGO_URL, reason="BANK_TEST_MONGO_URL not set (needs a replica set)")
class TestMongoStorage(StorageContract):

    def make_storage(self):
        storage = MongoStorage(MONGO_URL, database="funds_core_test")
        for table in ("test_table", "index", "counters"):
            storage.clear_table(table)
        return storage
