"""Retry with exponential backoff for every outbound network call.

Only *transient* failures are retried: timeouts, connection errors,
HTTP 429 and 5xx.  Anything else (bad request, auth, a bug in our own
code) is re-raised immediately on the first attempt.

The sleep and the jitter source are looked up on the ``time`` and
``random`` modules at call time, so tests patch
``orchestrator.services.retry.time.sleep`` to run instantly.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import anthropic
import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429})


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retryable operation failed."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): "
            f"{type(last_error).__name__}: {last_error}"
        )


def is_transient_error(exc: BaseException) -> bool:
    """Return ``True`` if *exc* is worth retrying."""
    if isinstance(exc, (httpx.TransportError, anthropic.APIConnectionError)):
        return True
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True

    status_code = getattr(exc, "status_code", None)
    if status_code is None:
        response = getattr(exc, "response", None)
        status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return status_code in RETRYABLE_STATUS_CODES or status_code >= 500
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between.

    ``max_attempts`` counts the first call.  The n-th wait is
    ``base_delay * 2 ** (n - 1)`` (or a flat ``base_delay`` when
    ``exponential`` is off), capped at ``max_delay`` and stretched by up to
    ``jitter`` (a fraction) to avoid synchronised retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    jitter: float = 0.1
    exponential: bool = True
    max_delay: float = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        delay = self.base_delay * (2 ** (attempt - 1)) if self.exponential else self.base_delay
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += delay * random.uniform(0, self.jitter)
        return delay

    def call(
        self,
        fn: Callable[[], T],
        *,
        operation: str = "operation",
        is_retryable: Callable[[BaseException], bool] = is_transient_error,
    ) -> T:
        """Run *fn* until it succeeds, a non-retryable error occurs, or
        attempts run out (→ ``RetryExhaustedError``).
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                last_error = exc
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s attempt %d/%d failed (%s). Retrying in %.1fs…",
                    operation, attempt, self.max_attempts, type(exc).__name__, delay,
                )
                time.sleep(delay)

        logger.error(
            "%s failed after %d attempt(s): %s", operation, self.max_attempts, last_error,
        )
        raise RetryExhaustedError(operation, self.max_attempts, last_error)

    @classmethod
    def for_model(cls, model_config: dict) -> RetryPolicy:
        """Build the policy from a ``MODEL_CONFIGS`` entry."""
        return cls(
            max_attempts=int(model_config.get("retry_attempts", 3)),
            base_delay=float(model_config.get("retry_base_delay", 1.0)),
        )
