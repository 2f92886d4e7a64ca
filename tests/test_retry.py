"""
Tests for retry with exponential backoff.

Run with: pytest tests/test_retry.py -v
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
import requests

from retry import (
    RetryConfig,
    RetryEvent,
    async_retry_with_backoff,
    calculate_backoff,
    create_retry_wrapper,
    get_retry_after_seconds,
    retry_with_backoff,
)


class ServerError(Exception):
    def __init__(self, message="upstream failure", status=503):
        super().__init__(message)
        self.status = status


class FlakyOperation:
    """Fails ``failures`` times with ``error``, then returns ``result``."""

    def __init__(self, failures, error=None, result="ok"):
        self.failures = failures
        self.error = error or ServerError()
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestRetryConfig:
    """Tests for RetryConfig defaults and validation."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.base_delay == 1.0
        assert config.max_delay == 10.0
        assert config.on_retry is None

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryConfig(max_attempts=0)

    def test_rejects_negative_delay(self):
        with pytest.raises(ValueError):
            RetryConfig(base_delay=-1)


class TestCalculateBackoff:
    """Tests for calculate_backoff."""

    def test_exponential_growth_with_jitter(self):
        with patch("retry.random.uniform", return_value=0.25):
            assert calculate_backoff(1, 1.0, 10.0) == 1.25
            assert calculate_backoff(2, 1.0, 10.0) == 2.25
            assert calculate_backoff(3, 1.0, 10.0) == 4.25

    def test_capped_at_max_delay(self):
        with patch("retry.random.uniform", return_value=0.9):
            assert calculate_backoff(10, 1.0, 10.0) == 10.0

    def test_jitter_range(self):
        for _ in range(50):
            delay = calculate_backoff(1, 1.0, 100.0, jitter=1.0)
            assert 1.0 <= delay <= 2.0


class TestRetryWithBackoff:
    """Tests for the synchronous retry executor."""

    def test_success_first_try(self):
        sleep = MagicMock()
        op = FlakyOperation(failures=0)
        assert retry_with_backoff(op, sleep=sleep) == "ok"
        assert op.calls == 1
        sleep.assert_not_called()

    def test_success_after_retries(self):
        sleep = MagicMock()
        op = FlakyOperation(failures=2)
        assert retry_with_backoff(op, RetryConfig(max_attempts=3), sleep=sleep) == "ok"
        assert op.calls == 3
        assert sleep.call_count == 2

    def test_always_failing_calls_exactly_max_attempts(self):
        sleep = MagicMock()
        error = ServerError()
        op = FlakyOperation(failures=99, error=error)

        with patch("retry.random.uniform", return_value=0.5):
            with pytest.raises(ServerError) as exc_info:
                retry_with_backoff(op, RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0),
                                   sleep=sleep)

        assert exc_info.value is error  # propagated unchanged, not wrapped
        assert op.calls == 3
        # delay before attempt n = min(base * 2^(n-2) + jitter, max)
        assert [c.args[0] for c in sleep.call_args_list] == [1.5, 2.5]

    def test_delays_capped(self):
        sleep = MagicMock()
        op = FlakyOperation(failures=99)
        with patch("retry.random.uniform", return_value=0.5):
            with pytest.raises(ServerError):
                retry_with_backoff(op, RetryConfig(max_attempts=5, base_delay=4.0, max_delay=10.0),
                                   sleep=sleep)
        assert [c.args[0] for c in sleep.call_args_list] == [4.5, 8.5, 10.0, 10.0]

    def test_non_retryable_short_circuits(self):
        sleep = MagicMock()
        on_retry = MagicMock()
        op = FlakyOperation(failures=99, error=ServerError("denied", status=401))

        with pytest.raises(ServerError):
            retry_with_backoff(op, RetryConfig(max_attempts=5, on_retry=on_retry), sleep=sleep)

        assert op.calls == 1
        sleep.assert_not_called()
        on_retry.assert_not_called()

    def test_validation_error_not_retried(self):
        op = FlakyOperation(failures=99, error=ValueError("Invalid email address"))
        with pytest.raises(ValueError):
            retry_with_backoff(op, sleep=MagicMock())
        assert op.calls == 1

    def test_single_attempt_no_retry(self):
        sleep = MagicMock()
        op = FlakyOperation(failures=1)
        with pytest.raises(ServerError):
            retry_with_backoff(op, RetryConfig(max_attempts=1), sleep=sleep)
        assert op.calls == 1
        sleep.assert_not_called()

    def test_last_error_propagated(self):
        errors = [ServerError("first"), ServerError("second"), ServerError("third")]
        calls = iter(errors)

        def op():
            raise next(calls)

        with pytest.raises(ServerError, match="third"):
            retry_with_backoff(op, sleep=MagicMock())

    def test_on_retry_receives_event(self):
        events = []
        op = FlakyOperation(failures=2)
        with patch("retry.random.uniform", return_value=0.0):
            retry_with_backoff(op, RetryConfig(on_retry=events.append), sleep=MagicMock())

        assert [e.attempt for e in events] == [1, 2]
        assert all(isinstance(e, RetryEvent) for e in events)
        assert events[0].max_attempts == 3
        assert events[0].delay == 1.0
        assert events[1].delay == 2.0
        assert isinstance(events[0].error, ServerError)

    def test_failing_on_retry_does_not_mask_operation_error(self):
        error = ServerError("upstream down")
        op = FlakyOperation(failures=99, error=error)
        on_retry = MagicMock(side_effect=RuntimeError("metrics sink offline"))

        with pytest.raises(ServerError) as exc_info:
            retry_with_backoff(op, RetryConfig(on_retry=on_retry), sleep=MagicMock())

        assert exc_info.value is error
        assert op.calls == 3
        assert on_retry.call_count == 2

    def test_failing_on_retry_still_retries(self):
        op = FlakyOperation(failures=1)
        on_retry = MagicMock(side_effect=RuntimeError("metrics sink offline"))
        assert retry_with_backoff(op, RetryConfig(on_retry=on_retry), sleep=MagicMock()) == "ok"
        assert op.calls == 2

    def test_respect_retry_after(self):
        response = requests.Response()
        response.status_code = 503
        response.headers["Retry-After"] = "3"
        error = requests.HTTPError("Service Unavailable", response=response)
        op = FlakyOperation(failures=1, error=error)
        sleep = MagicMock()

        retry_with_backoff(op, RetryConfig(respect_retry_after=True), sleep=sleep)
        sleep.assert_called_once_with(3.0)

    def test_retry_after_ignored_by_default(self):
        response = requests.Response()
        response.status_code = 503
        response.headers["Retry-After"] = "3"
        error = requests.HTTPError("Service Unavailable", response=response)
        op = FlakyOperation(failures=1, error=error)
        sleep = MagicMock()

        with patch("retry.random.uniform", return_value=0.0):
            retry_with_backoff(op, sleep=sleep)
        sleep.assert_called_once_with(1.0)


class TestRetryAfterHeader:
    """Tests for get_retry_after_seconds."""

    def _error(self, value):
        error = Exception("rate limited")
        error.response = MagicMock(headers={"Retry-After": value})
        return error

    def test_seconds(self):
        assert get_retry_after_seconds(self._error("30")) == 30.0

    def test_http_date_in_past(self):
        assert get_retry_after_seconds(self._error("Wed, 21 Oct 2015 07:28:00 GMT")) == 0.0

    def test_garbage(self):
        assert get_retry_after_seconds(self._error("soon")) is None

    def test_no_response(self):
        assert get_retry_after_seconds(Exception("x")) is None


class TestAsyncRetry:
    """Tests for the async retry executor."""

    def test_async_success_after_retry(self):
        sleeps = []
        calls = {"n": 0}

        async def fake_sleep(delay):
            sleeps.append(delay)

        async def op():
            calls["n"] += 1
            if calls["n"] < 2:
                raise ServerError()
            return "enrolled"

        result = asyncio.run(async_retry_with_backoff(op, RetryConfig(), sleep=fake_sleep))
        assert result == "enrolled"
        assert calls["n"] == 2
        assert len(sleeps) == 1

    def test_async_non_retryable(self):
        calls = {"n": 0}

        async def fake_sleep(delay):
            raise AssertionError("should not sleep")

        async def op():
            calls["n"] += 1
            raise ServerError("forbidden", status=403)

        with pytest.raises(ServerError):
            asyncio.run(async_retry_with_backoff(op, sleep=fake_sleep))
        assert calls["n"] == 1


class TestRetryWrapper:
    """Tests for create_retry_wrapper."""

    def test_defaults_and_overrides(self):
        wrapper = create_retry_wrapper(max_attempts=2, base_delay=0, max_delay=0, jitter=0)
        op = FlakyOperation(failures=5)
        with pytest.raises(ServerError):
            wrapper(op)
        assert op.calls == 2

        op = FlakyOperation(failures=3)
        assert wrapper(op, max_attempts=4) == "ok"
        assert op.calls == 4
