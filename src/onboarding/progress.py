"""
Progress Store.

Versioned, auto-saving persistence of onboarding progress. The durable
layout is a single record stored under one well-known key:

    {"version": "1.0.0", "data": {<ProgressRecord>}}

A missing record, a version mismatch or an undecodable record all mean
"no prior progress": a fresh default record is returned and the stale
record is deleted. No migration is attempted.

Saves are last-write-wins. A failed save is logged, leaves the store dirty
and is retried on the next autosave tick; it never raises to the caller.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator

from nutriflow.config import settings
from onboarding.errors import PersistenceError

logger = logging.getLogger(__name__)

PROGRESS_TABLE = "onboarding_progress"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProgressRecord(BaseModel):
    """Durable snapshot of onboarding state."""

    schema_version: str = "1.0.0"
    current_section_index: int = Field(default=0, ge=0)
    current_question_index: int = Field(default=0, ge=0)
    responses: dict[str, dict[str, Any]] = Field(default_factory=dict)
    completed_sections: list[str] = Field(default_factory=list)
    flow_complete: bool = False
    last_updated: datetime = Field(default_factory=_now)

    @field_validator("completed_sections")
    @classmethod
    def dedupe_sections(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for section_id in v:
            if section_id not in seen:
                seen.append(section_id)
        return seen

    def mark_section_complete(self, section_id: str) -> bool:
        """Append once. Returns False if it was already complete."""
        if section_id in self.completed_sections:
            return False
        self.completed_sections.append(section_id)
        return True


# =============================================================================
# Storage backends
# =============================================================================


class ProgressStorage(Protocol):
    def read(self, key: str) -> dict | None:
        ...

    def write(self, key: str, payload: dict) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStorage:
    """In-process storage (tests, API sessions without durable backend)."""

    def __init__(self):
        self.data: dict[str, Any] = {}

    def read(self, key: str) -> dict | None:
        return self.data.get(key)

    def write(self, key: str, payload: dict) -> None:
        self.data[key] = json.loads(json.dumps(payload))

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStorage:
    """
    All keys in one JSON file. Writes go through a temp file and an atomic
    rename so a crash mid-write never leaves a half-written file.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _read_all(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Progress file {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Progress file {self.path} is not an object")
        return data

    def _write_all(self, data: dict) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e

    def read(self, key: str) -> dict | None:
        return self._read_all().get(key)

    def write(self, key: str, payload: dict) -> None:
        try:
            data = self._read_all()
        except PersistenceError:
            logger.warning(f"Overwriting unreadable progress file {self.path}")
            data = {}
        data[key] = payload
        self._write_all(data)

    def delete(self, key: str) -> None:
        try:
            data = self._read_all()
        except PersistenceError:
            data = {}
        data.pop(key, None)
        self._write_all(data)


class SupabaseStorage:
    """Rows of (key, payload, updated_at) in the onboarding_progress table."""

    def __init__(self, client=None, table: str = PROGRESS_TABLE):
        if client is None:
            from nutriflow.db import get_client
            client = get_client()
        self.client = client
        self.table = table

    def read(self, key: str) -> dict | None:
        try:
            result = self.client.table(self.table).select("payload").eq("key", key).limit(1).execute()
        except Exception as e:
            raise PersistenceError(f"Supabase read failed: {e}") from e
        if not result.data:
            return None
        return result.data[0].get("payload")

    def write(self, key: str, payload: dict) -> None:
        row = {"key": key, "payload": payload, "updated_at": _now().isoformat()}
        try:
            self.client.table(self.table).upsert(row, on_conflict="key").execute()
        except Exception as e:
            raise PersistenceError(f"Supabase write failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.table(self.table).delete().eq("key", key).execute()
        except Exception as e:
            raise PersistenceError(f"Supabase delete failed: {e}") from e


# =============================================================================
# Store
# =============================================================================


class ProgressStore:
    """
    Versioned progress persistence with an asyncio autosave task.

    Args:
        storage: Backend (JsonFileStorage, MemoryStorage, SupabaseStorage)
        key: Storage key (defaults to settings.progress_storage_key)
        version: Current schema version; anything else is discarded on load
        autosave_interval: Seconds between autosave ticks
    """

    def __init__(
        self,
        storage: ProgressStorage,
        key: str | None = None,
        version: str | None = None,
        autosave_interval: float | None = None,
    ):
        self.storage = storage
        self.key = key or settings.progress_storage_key
        self.version = version or settings.progress_schema_version
        self.autosave_interval = (
            settings.autosave_interval_seconds if autosave_interval is None else autosave_interval
        )
        self.record = self._default()
        self.dirty = False
        self.last_error: str | None = None
        self._autosave_task: asyncio.Task | None = None

    def _default(self) -> ProgressRecord:
        return ProgressRecord(schema_version=self.version)

    def _discard(self, reason: str) -> ProgressRecord:
        logger.info(f"Discarding stored progress for {self.key}: {reason}")
        try:
            self.storage.delete(self.key)
        except PersistenceError as e:
            logger.error(f"Failed to delete stale progress: {e}")
        self.record = self._default()
        self.dirty = False
        return self.record

    def load(self) -> ProgressRecord:
        """Read the stored record, or a fresh default if there is none usable."""
        try:
            payload = self.storage.read(self.key)
        except PersistenceError as e:
            return self._discard(f"unreadable ({e})")

        if payload is None:
            self.record = self._default()
            self.dirty = False
            return self.record

        if not isinstance(payload, dict) or payload.get("version") != self.version:
            found = payload.get("version") if isinstance(payload, dict) else None
            return self._discard(f"version {found!r} != {self.version!r}")

        try:
            record = ProgressRecord.model_validate(payload.get("data"))
        except ValidationError as e:
            return self._discard(f"invalid record ({e.error_count()} errors)")

        if record.schema_version != self.version:
            return self._discard(f"schema_version {record.schema_version!r} != {self.version!r}")

        self.record = record
        self.dirty = False
        logger.info(
            f"Resumed progress: section {record.current_section_index}, "
            f"question {record.current_question_index}, {len(record.completed_sections)} completed"
        )
        return record

    def update(self, **changes: Any) -> ProgressRecord:
        """Apply changes in memory and mark dirty. Call save() to persist."""
        self.record = self.record.model_copy(update=changes)
        self.dirty = True
        return self.record

    def mark_dirty(self) -> None:
        self.dirty = True

    def save(self, record: ProgressRecord | None = None) -> bool:
        """
        Persist the current record (last-write-wins).

        Returns False on failure; the store stays dirty so the next autosave
        tick retries.
        """
        if record is not None:
            self.record = record
        self.record.last_updated = _now()
        payload = {"version": self.version, "data": self.record.model_dump(mode="json")}
        try:
            self.storage.write(self.key, payload)
        except (PersistenceError, OSError) as e:
            logger.error(f"Failed to save progress for {self.key}: {e}")
            self.dirty = True
            self.last_error = str(e)
            return False
        self.dirty = False
        self.last_error = None
        return True

    def reset(self) -> ProgressRecord:
        """Clear the in-memory record and the durable copy."""
        try:
            self.storage.delete(self.key)
        except PersistenceError as e:
            logger.error(f"Failed to delete progress for {self.key}: {e}")
        self.record = self._default()
        self.dirty = False
        logger.info(f"Progress reset for {self.key}")
        return self.record

    # -------------------------------------------------------------------------
    # Autosave
    # -------------------------------------------------------------------------

    @property
    def autosave_running(self) -> bool:
        return self._autosave_task is not None and not self._autosave_task.done()

    async def autosave_tick(self) -> None:
        if self.dirty:
            self.save()

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval)
            await self.autosave_tick()

    def start_autosave(self) -> None:
        if self.autosave_running:
            return
        self._autosave_task = asyncio.create_task(self._autosave_loop())

    async def stop_autosave(self, flush: bool = True) -> None:
        task, self._autosave_task = self._autosave_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if flush and self.dirty:
            self.save()


def build_store(user_id: str | None = None) -> ProgressStore:
    """Store for the configured backend, keyed per user when given."""
    backend = settings.progress_backend
    if backend == "memory":
        storage: ProgressStorage = MemoryStorage()
    elif backend == "supabase":
        storage = SupabaseStorage()
    else:
        storage = JsonFileStorage(settings.progress_path)

    key = settings.progress_storage_key
    if user_id:
        key = f"{key}:{user_id}"
    return ProgressStore(storage, key=key)
