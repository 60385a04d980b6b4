from __future__ import annotations


class OloroError(Exception):
    """Base class for errors raised by the credential and sync core."""


class ValidationError(OloroError, ValueError):
    """Invalid input to a mutation. The operation had no effect."""


class NotFoundError(OloroError, LookupError):
    def __init__(self, kind: str, item_id: str):
        super().__init__(f"{kind} not found: {item_id}")
        self.kind = kind
        self.item_id = item_id


class NoCredentialAvailable(OloroError):
    def __init__(self, message: str = "No valid API keys available. Please add a Gemini API key in Settings."):
        super().__init__(message)


class StorageError(OloroError):
    """The durable local store is broken; the operation cannot proceed."""


class RemoteSyncFailure(OloroError):
    """Raised by upload collaborators; recorded as record state, never surfaced."""


class SyncTimeout(RemoteSyncFailure):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"Sync upload timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds
