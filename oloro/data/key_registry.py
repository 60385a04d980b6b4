from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from loguru import logger

from oloro.config import Config
from oloro.core.errors import StorageError, ValidationError
from oloro.core.logging_setup import emit_event, mask_secret
from oloro.data.kv_store import CREDENTIALS_KEY, KeyValueStore, dump_json, load_json


class SelectionStrategy(str, Enum):
    FIRST_HEALTHY = "first"
    LEAST_RECENTLY_USED = "lru"


@dataclass(frozen=True)
class CredentialUsage:
    total_requests: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    last_used: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CredentialUsage":
        data = data or {}
        return cls(
            total_requests=int(data.get("total_requests") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
            cost=float(data.get("cost") or 0.0),
            last_used=data.get("last_used") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_tokens": self.total_tokens,
            "cost": self.cost,
            "last_used": self.last_used,
        }


@dataclass(frozen=True)
class CredentialRecord:
    id: str
    secret: str
    label: str
    active: bool = True
    error_count: int = 0
    usage: CredentialUsage = field(default_factory=CredentialUsage)
    last_error: Optional[str] = None

    @property
    def masked_secret(self) -> str:
        return mask_secret(self.secret)

    def is_healthy(self, threshold: int) -> bool:
        return self.active and self.error_count < threshold

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CredentialRecord":
        return cls(
            id=str(data["id"]),
            secret=str(data.get("secret") or ""),
            label=str(data.get("label") or ""),
            active=bool(data.get("active", True)),
            error_count=int(data.get("error_count") or 0),
            usage=CredentialUsage.from_dict(data.get("usage")),
            last_error=data.get("last_error") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "secret": self.secret,
            "label": self.label,
            "active": self.active,
            "error_count": self.error_count,
            "usage": self.usage.to_dict(),
            "last_error": self.last_error,
        }

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.masked_secret,
            "label": self.label,
            "isActive": self.active,
            "errorCount": self.error_count,
            "lastError": self.last_error,
            "usage": {
                "totalRequests": self.usage.total_requests,
                "totalTokens": self.usage.total_tokens,
                "cost": self.usage.cost,
                "lastUsed": self.usage.last_used,
            },
        }


class KeyRegistry:
    """Durable set of API credentials with health-based selection and usage metering.

    Every mutation is a read-modify-write of the whole persisted list, done
    under one lock so concurrent writers never lose an update. ``error_count``
    and usage counters are written only by :meth:`log_success` and
    :meth:`log_failure`.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        error_threshold: int | None = None,
        cost_per_million_tokens: float | None = None,
        strategy: SelectionStrategy | str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._threshold = max(1, int(error_threshold if error_threshold is not None else Config.KEY_ERROR_THRESHOLD))
        rate = cost_per_million_tokens if cost_per_million_tokens is not None else Config.COST_PER_MILLION_TOKENS
        self._rate = max(0.0, float(rate))
        self._strategy = SelectionStrategy(strategy or Config.KEY_SELECTION)
        self._clock = clock or datetime.now
        self._lock = threading.RLock()

    @property
    def error_threshold(self) -> int:
        return self._threshold

    @property
    def strategy(self) -> SelectionStrategy:
        return self._strategy

    def _load(self) -> list[CredentialRecord]:
        raw = load_json(self._store, CREDENTIALS_KEY, [])
        if not isinstance(raw, list):
            raise StorageError(f"Stored credential list has unexpected type {type(raw).__name__}")
        try:
            return [CredentialRecord.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Stored credential list is malformed: {exc}") from exc

    def _save(self, records: list[CredentialRecord]) -> None:
        dump_json(self._store, CREDENTIALS_KEY, [rec.to_dict() for rec in records])

    def _update(self, credential_id: str, fn: Callable[[CredentialRecord], CredentialRecord]) -> CredentialRecord | None:
        with self._lock:
            records = self._load()
            for index, rec in enumerate(records):
                if rec.id == credential_id:
                    updated = fn(rec)
                    records[index] = updated
                    self._save(records)
                    return updated
        logger.debug(f"KeyRegistry: no credential with id={credential_id}; ignoring")
        return None

    def list_credentials(self) -> list[CredentialRecord]:
        with self._lock:
            return self._load()

    def get_credential(self, credential_id: str) -> CredentialRecord | None:
        for rec in self.list_credentials():
            if rec.id == credential_id:
                return rec
        return None

    def add_credential(self, secret: str, label: str = "") -> CredentialRecord:
        secret = (secret or "").strip()
        if not secret:
            raise ValidationError("API key must not be empty")
        with self._lock:
            records = self._load()
            record = CredentialRecord(
                id=uuid4().hex,
                secret=secret,
                label=(label or "").strip() or f"Key {len(records) + 1}",
            )
            records.append(record)
            self._save(records)
        emit_event(
            logger,
            f"Added API key '{record.label}' ({record.masked_secret})",
            event="credential_added",
            stage="keys",
            credential_id=record.id,
        )
        return record

    def remove_credential(self, credential_id: str) -> None:
        with self._lock:
            records = self._load()
            kept = [rec for rec in records if rec.id != credential_id]
            if len(kept) == len(records):
                logger.debug(f"KeyRegistry: remove of unknown id={credential_id} ignored")
                return
            self._save(kept)
        emit_event(logger, "Removed API key", event="credential_removed", stage="keys", credential_id=credential_id)

    def set_active(self, credential_id: str, active: bool) -> CredentialRecord | None:
        return self._update(credential_id, lambda rec: replace(rec, active=bool(active)))

    def select_credential(self, *, exclude: Iterable[str] = ()) -> CredentialRecord | None:
        skip = set(exclude)
        records = self.list_credentials()
        healthy = [rec for rec in records if rec.is_healthy(self._threshold) and rec.id not in skip]
        if not healthy:
            if records and not skip:
                logger.warning("No healthy API keys available")
            return None
        if self._strategy == SelectionStrategy.LEAST_RECENTLY_USED:
            # Never-used keys first, then oldest use; sorted() keeps store order on ties.
            return sorted(healthy, key=lambda rec: (rec.usage.last_used is not None, rec.usage.last_used or ""))[0]
        return healthy[0]

    def healthy_count(self) -> int:
        return sum(1 for rec in self.list_credentials() if rec.is_healthy(self._threshold))

    def log_success(self, credential_id: str, tokens_consumed: int) -> CredentialRecord | None:
        tokens = int(tokens_consumed)
        if tokens < 0:
            raise ValidationError("tokens_consumed must be non-negative")
        now = self._clock().isoformat()

        def _apply(rec: CredentialRecord) -> CredentialRecord:
            total_tokens = rec.usage.total_tokens + tokens
            usage = CredentialUsage(
                total_requests=rec.usage.total_requests + 1,
                total_tokens=total_tokens,
                cost=(total_tokens / 1_000_000) * self._rate,
                last_used=now,
            )
            return replace(rec, usage=usage, error_count=0)

        updated = self._update(credential_id, _apply)
        if updated is not None:
            emit_event(
                logger,
                f"API key {updated.masked_secret} used ({tokens} tokens)",
                level="DEBUG",
                event="credential_success",
                stage="keys",
                credential_id=credential_id,
                outcome="success",
            )
        return updated

    def log_failure(self, credential_id: str, message: str) -> CredentialRecord | None:
        text = str(message or "Unknown error")
        updated = self._update(
            credential_id,
            lambda rec: replace(rec, error_count=rec.error_count + 1, last_error=text),
        )
        if updated is not None:
            quarantined = updated.error_count >= self._threshold
            emit_event(
                logger,
                f"API key {updated.masked_secret} failed ({updated.error_count}/{self._threshold}): {text}",
                level="WARNING" if quarantined else "INFO",
                event="credential_failure",
                stage="keys",
                credential_id=credential_id,
                outcome="quarantined" if quarantined else "failure",
            )
        return updated

    def usage_summary(self) -> dict[str, Any]:
        records = self.list_credentials()
        return {
            "keys": len(records),
            "healthy": sum(1 for rec in records if rec.is_healthy(self._threshold)),
            "totalRequests": sum(rec.usage.total_requests for rec in records),
            "totalTokens": sum(rec.usage.total_tokens for rec in records),
            "cost": sum(rec.usage.cost for rec in records),
        }
