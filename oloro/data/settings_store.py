"""
User preferences persisted in the local key-value store.

Stored values are merged over defaults on every read so that settings saved
by an older version pick up newly added keys. Dependents subscribe to
changes instead of polling.
"""
from __future__ import annotations

import copy
import threading
from typing import Any, Callable

from loguru import logger

from oloro.core.errors import StorageError, ValidationError
from oloro.data.kv_store import SETTINGS_KEY, KeyValueStore, dump_json, load_json

SettingsListener = Callable[[dict[str, Any], set[str]], None]

DEFAULT_SETTINGS: dict[str, Any] = {
    "data_saver": False,
    "language": "English",
    "theme_color": "blue",
    "vocabulary": [],
    "user_context": "",
    "gemini_model": "gemini-2.5-flash",
    "notifications": {
        "my_conversations": True,
        "shared_with_me": True,
        "live_notes": True,
        "highlights": True,
        "meeting_summary": True,
        "comments": True,
        "calendar_events": True,
        "activity_stats": False,
        "product_tips": True,
        "offers": True,
        "daily_digest": False,
    },
    "meeting": {
        "auto_share": "Don't share",
        "default_permission": "Collaborator",
        "collaborators_can_share": True,
        "auto_join": "Meetings where I am the host",
        "auto_capture": True,
        "email_host": False,
        "pre_recording_emails": False,
        "send_link_via_chat": False,
    },
    "advanced": {
        "dark_mode": "Default",
        "sync_photos": False,
        "record_bluetooth": False,
        "remove_branding": False,
        "show_speaker_time": False,
        "prevent_auto_lock": True,
        "show_bottom_nav": True,
    },
}

_NESTED_GROUPS = ("notifications", "meeting", "advanced")


def _check_value_types(values: dict[str, Any]) -> None:
    vocabulary = values.get("vocabulary", [])
    if not isinstance(vocabulary, list) or not all(isinstance(term, str) for term in vocabulary):
        raise ValidationError("'vocabulary' must be a list of strings")
    for group in _NESTED_GROUPS:
        if group in values and not isinstance(values[group], dict):
            raise ValidationError(f"'{group}' must be an object")


def _merge_over_defaults(stored: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(DEFAULT_SETTINGS)
    for key, value in stored.items():
        if key in _NESTED_GROUPS and isinstance(value, dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


class SettingsStore:
    def __init__(self, store: KeyValueStore):
        self._store = store
        self._lock = threading.RLock()
        self._listeners: list[SettingsListener] = []

    def subscribe(self, callback: SettingsListener) -> Callable[[], None]:
        """Register ``callback(settings, changed_keys)``; returns an unsubscribe function."""
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _notify(self, settings: dict[str, Any], changed: set[str]) -> None:
        if not changed:
            return
        for callback in list(self._listeners):
            try:
                callback(copy.deepcopy(settings), set(changed))
            except Exception:
                logger.exception("Settings listener failed")

    def get_settings(self) -> dict[str, Any]:
        with self._lock:
            stored = load_json(self._store, SETTINGS_KEY, {})
        if not isinstance(stored, dict):
            raise StorageError(f"Stored settings have unexpected type {type(stored).__name__}")
        return _merge_over_defaults(stored)

    def _write(self, updated: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            current = self.get_settings()
            dump_json(self._store, SETTINGS_KEY, updated)
            result = _merge_over_defaults(updated)
        changed = {key for key in result if result.get(key) != current.get(key)}
        if changed:
            logger.debug(f"Settings changed: {', '.join(sorted(changed))}")
        self._notify(result, changed)
        return result

    def update_settings(self, partial: dict[str, Any]) -> dict[str, Any]:
        unknown = set(partial) - set(DEFAULT_SETTINGS)
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        _check_value_types(partial)
        with self._lock:
            updated = {**self.get_settings(), **partial}
            return self._write(updated)

    def replace_settings(self, settings: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(settings, dict):
            raise ValidationError("Settings must be an object")
        _check_value_types(settings)
        return self._write(dict(settings))

    def get_vocabulary(self) -> list[str]:
        return list(self.get_settings().get("vocabulary") or [])

    def add_vocabulary_term(self, term: str) -> list[str]:
        term = (term or "").strip()
        if not term:
            raise ValidationError("Vocabulary term must not be empty")
        with self._lock:
            current = self.get_vocabulary()
            if term in current:
                return current
            return self.update_settings({"vocabulary": [*current, term]})["vocabulary"]

    def remove_vocabulary_term(self, term: str) -> list[str]:
        with self._lock:
            current = self.get_vocabulary()
            if term not in current:
                return current
            return self.update_settings({"vocabulary": [t for t in current if t != term]})["vocabulary"]
