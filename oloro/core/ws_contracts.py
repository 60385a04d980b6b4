from __future__ import annotations

from typing import Any


class WSContractError(ValueError):
    pass


_SYNC_STATUSES = {"pending", "synced", "failed"}


def sync_status_event(record: dict[str, Any], *, pending_count: int, message: str = "") -> dict[str, Any]:
    return {
        "type": "sync_status",
        "record": dict(record),
        "pendingCount": int(pending_count),
        "message": str(message),
    }


def records_updated_event(*, pending_count: int) -> dict[str, Any]:
    return {"type": "records_updated", "pendingCount": int(pending_count)}


def credentials_updated_event(*, healthy: int, total: int) -> dict[str, Any]:
    return {"type": "credentials_updated", "healthy": int(healthy), "total": int(total)}


def settings_changed_event(changed: list[str] | set[str]) -> dict[str, Any]:
    return {"type": "settings_changed", "changed": sorted(str(key) for key in changed)}


def connectivity_event(online: bool) -> dict[str, Any]:
    return {"type": "connectivity", "online": bool(online)}


def error_event(message: str) -> dict[str, Any]:
    return {"type": "error", "message": str(message)}


def validate_event_payload(payload: dict[str, Any]) -> None:
    if not isinstance(payload, dict):
        raise WSContractError("WebSocket payload must be a dict")
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise WSContractError("WebSocket payload requires non-empty string 'type'")

    if event_type == "sync_status":
        record = payload.get("record")
        if not isinstance(record, dict) or not isinstance(record.get("id"), str):
            raise WSContractError("sync_status event requires object 'record' with string 'id'")
        if record.get("syncStatus") not in _SYNC_STATUSES:
            raise WSContractError("sync_status event requires a valid 'record.syncStatus'")
        if not isinstance(payload.get("pendingCount"), int):
            raise WSContractError("sync_status event requires int 'pendingCount'")
    elif event_type == "records_updated":
        if not isinstance(payload.get("pendingCount"), int):
            raise WSContractError("records_updated event requires int 'pendingCount'")
    elif event_type == "credentials_updated":
        if not isinstance(payload.get("healthy"), int) or not isinstance(payload.get("total"), int):
            raise WSContractError("credentials_updated event requires int 'healthy' and 'total'")
    elif event_type == "settings_changed":
        changed = payload.get("changed")
        if not isinstance(changed, list) or not all(isinstance(key, str) for key in changed):
            raise WSContractError("settings_changed event requires list of strings 'changed'")
    elif event_type == "connectivity":
        if not isinstance(payload.get("online"), bool):
            raise WSContractError("connectivity event requires bool 'online'")
    elif event_type == "error":
        if not isinstance(payload.get("message"), str):
            raise WSContractError("error event requires string 'message'")
    else:
        raise WSContractError(f"Unknown event type: {event_type}")
