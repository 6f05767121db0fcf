"""Unit tests for storage retry helpers."""

from unittest.mock import MagicMock

import pytest

from pbxsync_core.domain.errors import StorageError
from pbxsync_core.infrastructure.retry import (
    RetryConfig,
    call_with_retry,
    exponential_backoff,
    with_retry,
)


def no_sleep_config(**kwargs):
    sleeps = []
    config = RetryConfig(retryable_exceptions=(StorageError,), sleep=sleeps.append, **kwargs)
    return config, sleeps


class TestRetry:
    """Tests for call_with_retry."""

    def test_succeeds_after_transient_failures(self):
        config, sleeps = no_sleep_config(max_attempts=3, base_delay=1.0)
        func = MagicMock(side_effect=[StorageError("503"), StorageError("503"), b"ok"])

        assert call_with_retry(func, config, "a.jpg") == b"ok"
        assert func.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_reraises_after_last_attempt(self):
        config, sleeps = no_sleep_config(max_attempts=2)
        func = MagicMock(side_effect=StorageError("down"))

        with pytest.raises(StorageError, match="down"):
            call_with_retry(func, config)
        assert func.call_count == 2

    def test_other_errors_are_not_retried(self):
        config, sleeps = no_sleep_config(max_attempts=5)
        func = MagicMock(side_effect=ValueError("bad input"))

        with pytest.raises(ValueError):
            call_with_retry(func, config)
        assert func.call_count == 1
        assert sleeps == []

    def test_backoff_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, exponential_base=2.0)

        assert [exponential_backoff(n, config) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_decorator(self):
        config, _ = no_sleep_config(max_attempts=2)
        calls = []

        @with_retry(config)
        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise StorageError("once")
            return "done"

        assert flaky() == "done"
