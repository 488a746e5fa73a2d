"""Tests for the retry policy used around outbound calls."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from orchestrator.services.retry import (
    RetryExhaustedError,
    RetryPolicy,
    is_transient_error,
)


class _StatusError(Exception):
    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"status {status_code}")


# ── Transient classification ────────────────────────────────────────


class TestIsTransientError:
    @pytest.mark.parametrize(
        "exc",
        [
            httpx.ConnectError("refused"),
            httpx.ReadTimeout("slow"),
            TimeoutError(),
            ConnectionError(),
            _StatusError(429),
            _StatusError(500),
            _StatusError(503),
        ],
    )
    def test_transient(self, exc):
        assert is_transient_error(exc) is True

    @pytest.mark.parametrize(
        "exc",
        [ValueError("bad"), KeyError("x"), _StatusError(400), _StatusError(401), _StatusError(404)],
    )
    def test_not_transient(self, exc):
        assert is_transient_error(exc) is False

    def test_reads_status_from_response_attribute(self):
        exc = Exception("wrapped")
        exc.response = MagicMock(status_code=502)
        assert is_transient_error(exc) is True


# ── RetryPolicy.call ────────────────────────────────────────────────


class TestRetryPolicyCall:
    @patch("orchestrator.services.retry.time.sleep")
    def test_returns_first_success(self, mock_sleep):
        fn = MagicMock(return_value="ok")
        assert RetryPolicy(max_attempts=3).call(fn) == "ok"
        assert fn.call_count == 1
        mock_sleep.assert_not_called()

    @patch("orchestrator.services.retry.time.sleep")
    def test_retries_transient_then_succeeds(self, mock_sleep):
        fn = MagicMock(side_effect=[httpx.ConnectError("down"), _StatusError(503), "ok"])
        assert RetryPolicy(max_attempts=3, jitter=0).call(fn) == "ok"
        assert fn.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("orchestrator.services.retry.time.sleep")
    def test_non_transient_error_raised_immediately(self, mock_sleep):
        fn = MagicMock(side_effect=ValueError("bad input"))
        with pytest.raises(ValueError, match="bad input"):
            RetryPolicy(max_attempts=4).call(fn)
        assert fn.call_count == 1
        mock_sleep.assert_not_called()

    @patch("orchestrator.services.retry.time.sleep")
    def test_exhaustion_raises_with_last_error(self, mock_sleep):
        fn = MagicMock(side_effect=TimeoutError("slow"))
        with pytest.raises(RetryExhaustedError) as exc_info:
            RetryPolicy(max_attempts=2, jitter=0).call(fn, operation="think")
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, TimeoutError)
        assert "think" in str(exc_info.value)
        # No sleep after the final attempt
        assert mock_sleep.call_count == 1

    @patch("orchestrator.services.retry.time.sleep")
    def test_exponential_backoff_delays(self, mock_sleep):
        fn = MagicMock(side_effect=[TimeoutError(), TimeoutError(), TimeoutError(), "ok"])
        RetryPolicy(max_attempts=4, base_delay=1.0, jitter=0).call(fn)
        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0, 4.0]

    @patch("orchestrator.services.retry.time.sleep")
    def test_custom_retryable_predicate(self, mock_sleep):
        fn = MagicMock(side_effect=[KeyError("flaky"), "ok"])
        policy = RetryPolicy(max_attempts=2, jitter=0)
        assert policy.call(fn, is_retryable=lambda e: isinstance(e, KeyError)) == "ok"


class TestDelayFor:
    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=3.0, jitter=0)
        assert policy.delay_for(5) == 3.0

    def test_flat_delay_when_not_exponential(self):
        policy = RetryPolicy(base_delay=0.8, exponential=False, jitter=0)
        assert policy.delay_for(1) == policy.delay_for(3) == 0.8

    @patch("orchestrator.services.retry.random.uniform", return_value=0.1)
    def test_jitter_stretches_delay(self, _mock_uniform):
        policy = RetryPolicy(base_delay=1.0, jitter=0.1)
        assert policy.delay_for(1) == pytest.approx(1.1)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_for_model_reads_config(self):
        policy = RetryPolicy.for_model({"retry_attempts": 4, "retry_base_delay": 0.8})
        assert policy.max_attempts == 4
        assert policy.base_delay == 0.8
