"""
Unit tests for the key/value substrate and PersistenceWriter.

Tests:
- get/set/remove contract on every backend
- Backend selection from settings
- Writer ordering, flush/close and swallowed failures
"""

import threading

import pytest

from config import Settings, StorageBackend
from src.mastery.exceptions import StorageError
from src.mastery.storage import (
    JsonFileKeyValueStore,
    MemoryKeyValueStore,
    PersistenceWriter,
    SQLiteKeyValueStore,
    create_key_value_store,
)


class FailingStore(MemoryKeyValueStore):
    """Memory store whose writes always fail."""

    def set(self, key, value):
        raise StorageError("set", key, OSError("disk full"))

    def remove(self, key):
        raise StorageError("remove", key, OSError("read-only"))


class SlowStore(MemoryKeyValueStore):
    """Records write order; blocks each write until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.order = []

    def set(self, key, value):
        self.release.wait(timeout=5)
        self.order.append(value)
        super().set(key, value)


@pytest.fixture(params=["memory", "json", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        yield MemoryKeyValueStore()
    elif request.param == "json":
        yield JsonFileKeyValueStore(tmp_path / "kv")
    else:
        store = SQLiteKeyValueStore(tmp_path / "kv.db")
        yield store
        store.close()


class TestBackends:
    """Contract tests shared by every backend."""

    def test_missing_key_returns_none(self, backend):
        assert backend.get("@quantara_module_progress") is None

    def test_set_then_get(self, backend):
        backend.set("@quantara_module_progress", b'{"a": 1}')

        assert backend.get("@quantara_module_progress") == b'{"a": 1}'

    def test_set_replaces(self, backend):
        backend.set("key", b"first")
        backend.set("key", b"second")

        assert backend.get("key") == b"second"

    def test_remove(self, backend):
        backend.set("key", b"value")
        backend.remove("key")

        assert backend.get("key") is None

    def test_remove_missing_key_is_noop(self, backend):
        backend.remove("never-set")

    def test_keys_are_independent(self, backend):
        backend.set("@quantara_module_progress", b"{}")
        backend.set("@quantara_wrong_answer_registry", b"[]")
        backend.remove("@quantara_module_progress")

        assert backend.get("@quantara_wrong_answer_registry") == b"[]"


class TestJsonFileStore:
    def test_key_is_sanitised_into_file_name(self, tmp_path):
        store = JsonFileKeyValueStore(tmp_path)

        assert store.path_for("@quantara_module_progress").name == "quantara_module_progress.json"

    def test_value_survives_new_instance(self, tmp_path):
        JsonFileKeyValueStore(tmp_path).set("key", b"[1]")

        assert JsonFileKeyValueStore(tmp_path).get("key") == b"[1]"

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonFileKeyValueStore(tmp_path)
        store.set("key", b"[1]")

        assert [p.name for p in tmp_path.iterdir()] == ["key.json"]


class TestSQLiteStore:
    def test_value_survives_new_connection(self, tmp_path):
        first = SQLiteKeyValueStore(tmp_path / "state.db")
        first.set("key", b"payload")
        first.close()

        second = SQLiteKeyValueStore(tmp_path / "state.db")
        assert second.get("key") == b"payload"
        second.close()


class TestCreateKeyValueStore:
    def test_memory(self, tmp_path):
        settings = Settings(storage_backend=StorageBackend.MEMORY, data_dir=tmp_path)
        assert isinstance(create_key_value_store(settings), MemoryKeyValueStore)

    def test_json(self, tmp_path):
        settings = Settings(storage_backend=StorageBackend.JSON, data_dir=tmp_path)
        store = create_key_value_store(settings)

        assert isinstance(store, JsonFileKeyValueStore)
        assert store.directory == tmp_path

    def test_sqlite(self, tmp_path):
        settings = Settings(storage_backend=StorageBackend.SQLITE, data_dir=tmp_path)
        store = create_key_value_store(settings)

        assert isinstance(store, SQLiteKeyValueStore)
        assert store.db_path == tmp_path / "mastery.db"
        store.close()


class TestPersistenceWriter:
    """Tests for the fire-and-forget writer."""

    def test_inline_write(self):
        store = MemoryKeyValueStore()
        writer = PersistenceWriter(store, background=False)
        writer.write("key", b"value")

        assert store.get("key") == b"value"
        assert writer.has_pending_writes is False

    def test_background_write_applied_after_flush(self):
        store = MemoryKeyValueStore()
        writer = PersistenceWriter(store)
        writer.write("key", b"value")
        writer.flush(timeout=5)

        assert store.get("key") == b"value"
        writer.close()

    def test_write_returns_before_store_completes(self):
        store = SlowStore()
        writer = PersistenceWriter(store)
        writer.write("key", b"1")

        assert store.get("key") is None
        assert writer.has_pending_writes is True

        store.release.set()
        writer.flush(timeout=5)
        assert store.get("key") == b"1"
        assert writer.has_pending_writes is False
        writer.close()

    def test_writes_applied_in_call_order(self):
        store = SlowStore()
        writer = PersistenceWriter(store)
        for i in range(5):
            writer.write("key", str(i).encode())
        store.release.set()
        writer.flush(timeout=5)

        assert store.order == [b"0", b"1", b"2", b"3", b"4"]
        assert store.get("key") == b"4"
        writer.close()

    def test_delete_after_write_wins(self):
        store = MemoryKeyValueStore()
        writer = PersistenceWriter(store)
        writer.write("key", b"value")
        writer.delete("key")
        writer.flush(timeout=5)

        assert store.get("key") is None
        writer.close()

    @pytest.mark.parametrize("background", [True, False])
    def test_failures_are_swallowed_and_counted(self, background):
        writer = PersistenceWriter(FailingStore(), background=background)
        writer.write("key", b"value")
        writer.delete("key")
        writer.flush(timeout=5)

        assert writer.failed_writes == 2
        assert isinstance(writer.last_error, StorageError)
        writer.close()

    def test_write_after_close_is_inline(self):
        store = MemoryKeyValueStore()
        writer = PersistenceWriter(store)
        writer.close()
        writer.write("key", b"late")

        assert store.get("key") == b"late"

    def test_close_is_idempotent(self):
        writer = PersistenceWriter(MemoryKeyValueStore())
        writer.close()
        writer.close()


class TestUnusableLocation:
    """Opening a backend under a regular file raises StorageError."""

    def test_json_store(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")

        with pytest.raises(StorageError) as exc_info:
            JsonFileKeyValueStore(blocker / "kv")
        assert exc_info.value.operation == "open"

    def test_sqlite_store(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")

        with pytest.raises(StorageError) as exc_info:
            SQLiteKeyValueStore(blocker / "sub" / "kv.db")
        assert exc_info.value.operation == "open"

    def test_factory_propagates(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        settings = Settings(storage_backend=StorageBackend.JSON, data_dir=blocker / "sub")

        with pytest.raises(StorageError):
            create_key_value_store(settings)
