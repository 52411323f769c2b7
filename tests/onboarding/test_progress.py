"""
Tests for the versioned progress store and its storage backends.
"""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from onboarding.errors import PersistenceError
from onboarding.progress import (
    JsonFileStorage,
    MemoryStorage,
    ProgressRecord,
    ProgressStore,
    SupabaseStorage,
    build_store,
)


def _run(coro):
    return asyncio.run(coro)


class FlakyStorage(MemoryStorage):
    """Fails the first `failures` writes."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures
        self.writes = 0

    def write(self, key: str, payload: dict) -> None:
        self.writes += 1
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("disk full")
        super().write(key, payload)


class TestProgressRecord:
    def test_mark_section_complete_appends_once(self):
        record = ProgressRecord()
        assert record.mark_section_complete("legal") is True
        assert record.mark_section_complete("legal") is False
        assert record.completed_sections == ["legal"]

    def test_duplicates_removed_on_load(self):
        record = ProgressRecord.model_validate({"completed_sections": ["legal", "baseline", "legal"]})
        assert record.completed_sections == ["legal", "baseline"]


class TestLoad:
    def test_missing_record_is_default(self):
        store = ProgressStore(MemoryStorage(), key="k", version="1.0.0")
        record = store.load()
        assert record.current_section_index == 0
        assert record.responses == {}

    def test_round_trip(self):
        storage = MemoryStorage()
        store = ProgressStore(storage, key="k", version="1.0.0")
        store.update(current_section_index=2, responses={"legal": {"name": {"name": "Ada"}}})
        assert store.save() is True

        resumed = ProgressStore(storage, key="k", version="1.0.0").load()
        assert resumed.current_section_index == 2
        assert resumed.responses["legal"]["name"] == {"name": "Ada"}

    def test_version_mismatch_discards_and_deletes(self):
        storage = MemoryStorage()
        storage.data["k"] = {"version": "0.9.0", "data": {"current_section_index": 4}}

        record = ProgressStore(storage, key="k", version="1.0.0").load()

        assert record.current_section_index == 0
        assert "k" not in storage.data

    def test_invalid_record_is_discarded(self):
        storage = MemoryStorage()
        storage.data["k"] = {"version": "1.0.0", "data": {"current_section_index": -3}}

        record = ProgressStore(storage, key="k", version="1.0.0").load()

        assert record.current_section_index == 0
        assert "k" not in storage.data

    def test_unreadable_storage_is_discarded(self):
        storage = MagicMock()
        storage.read.side_effect = PersistenceError("corrupt")

        record = ProgressStore(storage, key="k", version="1.0.0").load()

        assert record.current_section_index == 0
        assert record.completed_sections == []
        storage.delete.assert_called_once_with("k")


class TestSave:
    def test_save_wraps_in_version_envelope(self):
        storage = MemoryStorage()
        store = ProgressStore(storage, key="k", version="2.0.0")
        store.save()

        assert storage.data["k"]["version"] == "2.0.0"
        assert storage.data["k"]["data"]["schema_version"] == "2.0.0"

    def test_failed_save_stays_dirty(self):
        store = ProgressStore(FlakyStorage(failures=1), key="k", version="1.0.0")
        store.update(current_question_index=1)

        assert store.save() is False
        assert store.dirty is True
        assert store.last_error == "disk full"

    def test_autosave_tick_retries(self):
        storage = FlakyStorage(failures=1)
        store = ProgressStore(storage, key="k", version="1.0.0")
        store.update(current_question_index=1)
        store.save()

        _run(store.autosave_tick())

        assert store.dirty is False
        assert storage.data["k"]["data"]["current_question_index"] == 1

    def test_tick_skips_clean_store(self):
        storage = FlakyStorage(failures=0)
        store = ProgressStore(storage, key="k", version="1.0.0")
        _run(store.autosave_tick())
        assert storage.writes == 0

    def test_autosave_loop_flushes(self):
        storage = MemoryStorage()
        store = ProgressStore(storage, key="k", version="1.0.0", autosave_interval=0.01)

        async def _test():
            store.start_autosave()
            assert store.autosave_running
            store.update(current_section_index=3)
            await asyncio.sleep(0.05)
            await store.stop_autosave(flush=False)

        _run(_test())
        assert store.autosave_running is False
        assert storage.data["k"]["data"]["current_section_index"] == 3

    def test_stop_autosave_flushes_dirty_record(self):
        storage = MemoryStorage()
        store = ProgressStore(storage, key="k", version="1.0.0", autosave_interval=60)

        async def _test():
            store.start_autosave()
            store.update(current_section_index=5)
            await store.stop_autosave()

        _run(_test())
        assert storage.data["k"]["data"]["current_section_index"] == 5


def test_reset_clears_memory_and_storage():
    storage = MemoryStorage()
    store = ProgressStore(storage, key="k", version="1.0.0")
    store.update(current_section_index=4, completed_sections=["legal"])
    store.save()

    record = store.reset()

    assert record.current_section_index == 0
    assert record.completed_sections == []
    assert "k" not in storage.data


class TestJsonFileStorage:
    def test_write_read_delete(self, tmp_path):
        storage = JsonFileStorage(tmp_path / "nested" / "progress.json")
        storage.write("a", {"version": "1.0.0", "data": {}})
        storage.write("b", {"version": "1.0.0", "data": {"x": 1}})

        assert storage.read("b") == {"version": "1.0.0", "data": {"x": 1}}
        storage.delete("a")
        assert storage.read("a") is None
        assert json.loads(storage.path.read_text()) == {"b": {"version": "1.0.0", "data": {"x": 1}}}

    def test_corrupt_file_raises_on_read(self, tmp_path):
        path = tmp_path / "progress.json"
        path.write_text("{not json")
        with pytest.raises(PersistenceError):
            JsonFileStorage(path).read("k")

    def test_corrupt_file_resumes_as_default(self, tmp_path):
        path = tmp_path / "progress.json"
        path.write_text("{not json")
        store = ProgressStore(JsonFileStorage(path), key="k", version="1.0.0")

        assert store.load().current_section_index == 0
        assert store.save() is True
        assert "k" in json.loads(path.read_text())

    def test_no_temp_file_left_behind(self, tmp_path):
        storage = JsonFileStorage(tmp_path / "progress.json")
        storage.write("k", {"version": "1.0.0"})
        assert [p.name for p in tmp_path.iterdir()] == ["progress.json"]


class TestSupabaseStorage:
    def test_read_returns_payload(self, mock_supabase):
        table = mock_supabase.table.return_value
        table.execute.return_value = MagicMock(data=[{"payload": {"version": "1.0.0", "data": {}}}])

        assert SupabaseStorage(mock_supabase).read("k") == {"version": "1.0.0", "data": {}}
        mock_supabase.table.assert_called_with("onboarding_progress")
        table.eq.assert_called_with("key", "k")

    def test_read_missing(self, mock_supabase):
        assert SupabaseStorage(mock_supabase).read("k") is None

    def test_write_upserts_on_key(self, mock_supabase):
        SupabaseStorage(mock_supabase).write("k", {"version": "1.0.0"})

        row = mock_supabase.table.return_value.upsert.call_args.args[0]
        assert row["key"] == "k"
        assert row["payload"] == {"version": "1.0.0"}
        assert mock_supabase.table.return_value.upsert.call_args.kwargs["on_conflict"] == "key"

    def test_failures_become_persistence_errors(self, mock_supabase):
        mock_supabase.table.return_value.execute.side_effect = RuntimeError("network")
        storage = SupabaseStorage(mock_supabase)

        with pytest.raises(PersistenceError):
            storage.write("k", {})
        with pytest.raises(PersistenceError):
            storage.read("k")

    def test_store_survives_backend_outage(self, mock_supabase):
        mock_supabase.table.return_value.execute.side_effect = RuntimeError("network")
        store = ProgressStore(SupabaseStorage(mock_supabase), key="k", version="1.0.0")

        assert store.load().current_section_index == 0
        assert store.save() is False
        assert store.dirty


class TestBuildStore:
    def test_memory_backend_keyed_by_user(self):
        store = build_store("user-1")
        assert isinstance(store.storage, MemoryStorage)
        assert store.key == "onboarding_progress:user-1"

    def test_file_backend(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PROGRESS_BACKEND", "file")
        monkeypatch.setenv("PROGRESS_PATH", str(tmp_path / "p.json"))

        store = build_store()

        assert isinstance(store.storage, JsonFileStorage)
        assert store.storage.path == tmp_path / "p.json"
        assert store.key == "onboarding_progress"
