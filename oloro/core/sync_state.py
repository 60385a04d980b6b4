from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


_VALID_TRANSITIONS: dict[SyncStatus, set[SyncStatus]] = {
    SyncStatus.PENDING: {SyncStatus.SYNCED, SyncStatus.FAILED},
    SyncStatus.FAILED: {SyncStatus.PENDING},
    SyncStatus.SYNCED: set(),
}

UNSYNCED_STATUSES = frozenset({SyncStatus.PENDING, SyncStatus.FAILED})


@dataclass(frozen=True)
class SyncTransition:
    record_id: str
    source: SyncStatus
    target: SyncStatus


class InvalidSyncTransition(RuntimeError):
    def __init__(self, source: SyncStatus, target: SyncStatus):
        super().__init__(f"Invalid sync status transition: {source.value} -> {target.value}")
        self.source = source
        self.target = target


def parse_status(value: str | SyncStatus | None) -> SyncStatus:
    if isinstance(value, SyncStatus):
        return value
    try:
        return SyncStatus(str(value or SyncStatus.PENDING.value).strip().lower())
    except ValueError:
        return SyncStatus.PENDING


def can_transition(source: SyncStatus, target: SyncStatus) -> bool:
    if source == target:
        return True
    return target in _VALID_TRANSITIONS.get(source, set())


def transition(source: SyncStatus, target: SyncStatus) -> SyncStatus:
    if source == target:
        return source
    if target not in _VALID_TRANSITIONS.get(source, set()):
        raise InvalidSyncTransition(source, target)
    return target
