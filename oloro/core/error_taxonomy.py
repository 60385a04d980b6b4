from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    OFFLINE = "offline"
    TRANSIENT_NETWORK = "transient_network"
    TRANSIENT_PROVIDER = "transient_provider"
    AUTH_INVALID = "auth_invalid"
    AUTH_EXPIRED = "auth_expired"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    CONFIG_INVALID = "config_invalid"
    INTERNAL_BUG = "internal_bug"


_CATEGORY_TO_USER_MESSAGE: dict[ErrorCategory, str] = {
    ErrorCategory.OFFLINE: "You are offline. Your notes are saved locally and will sync when you reconnect.",
    ErrorCategory.TRANSIENT_NETWORK: "Could not reach the server. We will retry automatically.",
    ErrorCategory.TRANSIENT_PROVIDER: "The service is temporarily unavailable. Please try again shortly.",
    ErrorCategory.AUTH_INVALID: "Invalid API key or expired sign-in. Please check your credentials in Settings.",
    ErrorCategory.AUTH_EXPIRED: "Your plan has expired or requires payment.",
    ErrorCategory.QUOTA_EXCEEDED: "Storage or usage quota reached. Free up space or add another API key.",
    ErrorCategory.RATE_LIMITED: "Rate limit reached. Another API key will be used if available.",
    ErrorCategory.CONFIG_INVALID: "Invalid configuration detected. Please verify your settings.",
    ErrorCategory.INTERNAL_BUG: "Something went wrong. Your data is safe locally; please retry.",
}


def classify_error_message(message: str) -> ErrorCategory:
    text = (message or "").lower().strip()
    if not text:
        return ErrorCategory.INTERNAL_BUG

    if any(token in text for token in ("offline", "no network", "network unreachable")):
        return ErrorCategory.OFFLINE
    if any(token in text for token in ("payment required", "plan expired", "billing")):
        return ErrorCategory.AUTH_EXPIRED
    if any(token in text for token in ("quota", "resource_exhausted", "resource exhausted", "storage full")):
        return ErrorCategory.QUOTA_EXCEEDED
    if any(token in text for token in ("rate limit", "rate limited", "429", "too many requests")):
        return ErrorCategory.RATE_LIMITED
    if any(token in text for token in ("401", "unauthorized", "invalid api key", "api key not valid", "unauthenticated")):
        return ErrorCategory.AUTH_INVALID
    if any(token in text for token in ("403", "forbidden", "permission_denied", "permission denied")):
        return ErrorCategory.AUTH_INVALID
    if any(token in text for token in ("timeout", "timed out", "connection", "dns", "cannot connect")):
        return ErrorCategory.TRANSIENT_NETWORK
    if any(token in text for token in ("missing api key", "invalid config", "configuration")):
        return ErrorCategory.CONFIG_INVALID
    if any(token in text for token in ("service unavailable", "internal server error", "500", "502", "503", "bad gateway")):
        return ErrorCategory.TRANSIENT_PROVIDER
    return ErrorCategory.INTERNAL_BUG


def classify_exception(exc: BaseException) -> ErrorCategory:
    return classify_error_message(str(exc) or type(exc).__name__)


def user_message_for_category(category: ErrorCategory) -> str:
    return _CATEGORY_TO_USER_MESSAGE.get(category, _CATEGORY_TO_USER_MESSAGE[ErrorCategory.INTERNAL_BUG])


def user_message_for_exception(exc: BaseException) -> str:
    return user_message_for_category(classify_exception(exc))


def is_retryable(category: ErrorCategory) -> bool:
    return category in {
        ErrorCategory.OFFLINE,
        ErrorCategory.TRANSIENT_NETWORK,
        ErrorCategory.TRANSIENT_PROVIDER,
    }


def should_rotate_credential(category: ErrorCategory) -> bool:
    """Whether a generation failure is specific enough to the key that another key may succeed."""
    return category in {
        ErrorCategory.TRANSIENT_NETWORK,
        ErrorCategory.TRANSIENT_PROVIDER,
        ErrorCategory.AUTH_INVALID,
        ErrorCategory.AUTH_EXPIRED,
        ErrorCategory.QUOTA_EXCEEDED,
        ErrorCategory.RATE_LIMITED,
    }
