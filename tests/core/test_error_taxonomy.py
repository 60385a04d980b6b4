from oloro.core.error_taxonomy import (
    ErrorCategory,
    classify_error_message,
    is_retryable,
    should_rotate_credential,
    user_message_for_category,
)


def test_classify_auth_invalid():
    assert classify_error_message("401 unauthorized: API key not valid") is ErrorCategory.AUTH_INVALID


def test_classify_rate_limit():
    assert classify_error_message("429 Too Many Requests") is ErrorCategory.RATE_LIMITED


def test_classify_quota():
    assert classify_error_message("RESOURCE_EXHAUSTED: quota exceeded for model") is ErrorCategory.QUOTA_EXCEEDED


def test_classify_network_timeout():
    assert classify_error_message("Sync upload timed out after 30s") is ErrorCategory.TRANSIENT_NETWORK


def test_classify_remote_server_error():
    assert classify_error_message("Remote store rejected record (503): service unavailable") is ErrorCategory.TRANSIENT_PROVIDER


def test_empty_message_is_internal():
    assert classify_error_message("") is ErrorCategory.INTERNAL_BUG


def test_retryable_categories():
    assert is_retryable(ErrorCategory.TRANSIENT_NETWORK) is True
    assert is_retryable(ErrorCategory.OFFLINE) is True
    assert is_retryable(ErrorCategory.AUTH_INVALID) is False


def test_rotation_categories():
    assert should_rotate_credential(ErrorCategory.RATE_LIMITED) is True
    assert should_rotate_credential(ErrorCategory.AUTH_INVALID) is True
    assert should_rotate_credential(ErrorCategory.CONFIG_INVALID) is False
    assert should_rotate_credential(ErrorCategory.INTERNAL_BUG) is False


def test_user_message_exists_for_all_categories():
    for category in ErrorCategory:
        message = user_message_for_category(category)
        assert isinstance(message, str)
        assert message
