from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol, Union
from uuid import uuid4

from loguru import logger

from oloro.config import Config
from oloro.core.error_taxonomy import classify_error_message, user_message_for_category
from oloro.core.errors import RemoteSyncFailure, StorageError, SyncTimeout, ValidationError
from oloro.core.logging_setup import emit_event
from oloro.core.sync_state import (
    UNSYNCED_STATUSES,
    SyncStatus,
    SyncTransition,
    parse_status,
    transition,
)
from oloro.data.kv_store import RECORDS_KEY, KeyValueStore, dump_json, load_json


def _now_iso() -> str:
    return datetime.now().isoformat()


@dataclass(frozen=True)
class Record:
    id: str
    title: str
    created_at: str = field(default_factory=_now_iso)
    payload: dict[str, Any] = field(default_factory=dict)
    sync_status: SyncStatus = SyncStatus.PENDING
    last_error: str = ""
    attempts: int = 0
    last_attempt_at: str = ""

    @classmethod
    def new(cls, title: str, payload: dict[str, Any] | None = None) -> "Record":
        return cls(id=uuid4().hex, title=title, payload=dict(payload or {}))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Record":
        payload = data.get("payload")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            created_at=str(data.get("created_at") or ""),
            payload=payload if isinstance(payload, dict) else {},
            sync_status=parse_status(data.get("sync_status")),
            last_error=str(data.get("last_error") or ""),
            attempts=int(data.get("attempts") or 0),
            last_attempt_at=str(data.get("last_attempt_at") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "payload": self.payload,
            "sync_status": self.sync_status.value,
            "last_error": self.last_error,
            "attempts": self.attempts,
            "last_attempt_at": self.last_attempt_at,
        }

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "payload": self.payload,
            "syncStatus": self.sync_status.value,
            "lastError": self.last_error,
            "attempts": self.attempts,
            "lastAttemptAt": self.last_attempt_at,
        }


@dataclass(frozen=True)
class SyncOutcome:
    record_id: str
    ok: bool
    # None when the record id is unknown.
    status: Optional[SyncStatus]
    reason: str = ""


class OnlineSignal(Protocol):
    @property
    def is_online(self) -> bool: ...


Uploader = Callable[[Record], Awaitable[Any]]
RecordListener = Callable[[Record, Optional[SyncTransition]], None]


class RecordSyncQueue:
    """Local record collection mirrored to a remote store when connectivity allows.

    Records are kept most-recent-first and persisted as one list. Status
    changes go through :mod:`oloro.core.sync_state` and never reorder the list.
    At most one upload per record id is in flight; concurrent callers for the
    same id await the running attempt.

    Offline attempts are not made at all and leave the record as it was, so a
    fresh record stays ``pending``. Only a real upload error or timeout moves a
    record to ``failed``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        uploader: Uploader,
        connectivity: OnlineSignal | None = None,
        timeout_seconds: float | None = None,
    ):
        self._store = store
        self._uploader = uploader
        self._connectivity = connectivity
        timeout = timeout_seconds if timeout_seconds is not None else Config.SYNC_TIMEOUT_SECONDS
        self._timeout = max(0.001, float(timeout))
        self._lock = threading.Lock()
        self._inflight: dict[str, asyncio.Task] = {}
        self._listeners: list[RecordListener] = []
        self._records: list[Record] = self._load()
        logger.info(f"Loaded {len(self._records)} records ({self.pending_count()} awaiting sync)")

    def _load(self) -> list[Record]:
        raw = load_json(self._store, RECORDS_KEY, [])
        if not isinstance(raw, list):
            raise StorageError(f"Stored record list has unexpected type {type(raw).__name__}")
        try:
            return [Record.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Stored record list is malformed: {exc}") from exc

    def _commit(self, records: list[Record]) -> None:
        # Caller holds the lock; the cache only changes once the store accepted the write.
        dump_json(self._store, RECORDS_KEY, [rec.to_dict() for rec in records])
        self._records = records

    @property
    def is_online(self) -> bool:
        if self._connectivity is None:
            return True
        return bool(self._connectivity.is_online)

    def subscribe(self, callback: RecordListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _notify(self, record: Record, change: SyncTransition | None) -> None:
        for callback in list(self._listeners):
            try:
                callback(record, change)
            except Exception:
                logger.exception("Record listener failed")

    def list_records(self) -> list[Record]:
        with self._lock:
            return list(self._records)

    def get_record(self, record_id: str) -> Record | None:
        with self._lock:
            for rec in self._records:
                if rec.id == record_id:
                    return rec
        return None

    def grouped_by_date(self) -> list[tuple[str, list[Record]]]:
        groups: list[tuple[str, list[Record]]] = []
        for rec in self.list_records():
            day = (rec.created_at or "")[:10]
            if not groups or groups[-1][0] != day:
                groups.append((day, [rec]))
            else:
                groups[-1][1].append(rec)
        return groups

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for rec in self._records if rec.sync_status in UNSYNCED_STATUSES)

    def enqueue(self, record: Record) -> Record:
        if not record.id:
            raise ValidationError("Record id must not be empty")
        queued = replace(
            record,
            sync_status=SyncStatus.PENDING,
            created_at=record.created_at or _now_iso(),
            last_error="",
            attempts=0,
            last_attempt_at="",
        )
        with self._lock:
            if any(rec.id == queued.id for rec in self._records):
                raise ValidationError(f"Record already queued: {queued.id}")
            self._commit([queued, *self._records])
        emit_event(logger, f"Queued record '{queued.title}'", event="record_enqueued", stage="sync", record_id=queued.id)
        self._notify(queued, None)
        return queued

    def create_record(self, title: str, payload: dict[str, Any] | None = None) -> Record:
        return self.enqueue(Record.new(title or f"New Recording {datetime.now():%H:%M:%S}", payload))

    def _set_status(self, record_id: str, target: SyncStatus, **changes: Any) -> Record:
        with self._lock:
            for index, rec in enumerate(self._records):
                if rec.id == record_id:
                    new_status = transition(rec.sync_status, target)
                    updated = replace(rec, sync_status=new_status, **changes)
                    records = list(self._records)
                    records[index] = updated
                    self._commit(records)
                    break
            else:
                raise ValidationError(f"Unknown record: {record_id}")
        change = None
        if rec.sync_status != updated.sync_status:
            change = SyncTransition(record_id=record_id, source=rec.sync_status, target=updated.sync_status)
        self._notify(updated, change)
        return updated

    async def attempt_sync(self, record: Union[Record, str]) -> SyncOutcome:
        record_id = record if isinstance(record, str) else record.id
        current = self.get_record(record_id)
        if current is None:
            return SyncOutcome(record_id=record_id, ok=False, status=None, reason="Record not found")
        if current.sync_status == SyncStatus.SYNCED:
            return SyncOutcome(record_id=record_id, ok=True, status=SyncStatus.SYNCED)

        running = self._inflight.get(record_id)
        if running is not None:
            return await asyncio.shield(running)

        if not self.is_online:
            emit_event(
                logger,
                f"Offline; sync of '{current.title}' deferred",
                level="DEBUG",
                event="sync_deferred",
                stage="sync",
                record_id=record_id,
                outcome="offline",
            )
            return SyncOutcome(record_id=record_id, ok=False, status=current.sync_status, reason="offline")

        task = asyncio.ensure_future(self._upload(record_id))
        self._inflight[record_id] = task
        task.add_done_callback(lambda _t: self._inflight.pop(record_id, None))
        return await asyncio.shield(task)

    async def _upload(self, record_id: str) -> SyncOutcome:
        rec = self._set_status(record_id, SyncStatus.PENDING)
        started = time.perf_counter()
        try:
            try:
                await asyncio.wait_for(self._uploader(rec), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                raise SyncTimeout(self._timeout) from exc
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            category = classify_error_message(reason)
            if not isinstance(exc, RemoteSyncFailure):
                logger.debug(f"Uploader raised {type(exc).__name__} for record {record_id}")
            self._set_status(
                record_id,
                SyncStatus.FAILED,
                last_error=reason,
                attempts=rec.attempts + 1,
                last_attempt_at=_now_iso(),
            )
            emit_event(
                logger,
                f"Sync of '{rec.title}' failed: {reason}",
                level="WARNING",
                event="sync_failed",
                stage="sync",
                record_id=record_id,
                outcome="failed",
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
                error_category=category.value,
            )
            return SyncOutcome(record_id=record_id, ok=False, status=SyncStatus.FAILED, reason=reason)

        self._set_status(
            record_id,
            SyncStatus.SYNCED,
            last_error="",
            attempts=rec.attempts + 1,
            last_attempt_at=_now_iso(),
        )
        emit_event(
            logger,
            f"Synced '{rec.title}'",
            event="sync_succeeded",
            stage="sync",
            record_id=record_id,
            outcome="synced",
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return SyncOutcome(record_id=record_id, ok=True, status=SyncStatus.SYNCED)

    async def retry_pending(self) -> int:
        candidates = [rec.id for rec in reversed(self.list_records()) if rec.sync_status in UNSYNCED_STATUSES]
        if not candidates:
            return 0
        if not self.is_online:
            logger.debug(f"Offline; {len(candidates)} records left for the next retry")
            return 0
        synced = 0
        for record_id in candidates:
            outcome = await self.attempt_sync(record_id)
            if outcome.ok:
                synced += 1
            elif outcome.reason == "offline":
                break
        logger.info(f"Retry pass synced {synced}/{len(candidates)} records")
        return synced

    @staticmethod
    def failure_message(record: Record) -> str:
        if record.sync_status != SyncStatus.FAILED:
            return ""
        return user_message_for_category(classify_error_message(record.last_error))
