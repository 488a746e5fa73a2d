"""CloudWatch custom metrics for outbound calls and orchestrated requests.

Two metric families share one namespace:

* ``ExternalAPI/*``: count, latency and errors for every outbound call
  (Anthropic completions, Stripe, the intent classifier, tool handlers).
* ``Agent/*``: one set of datapoints per chat request (total latency,
  decision latency, confidence, tools executed, fallbacks, errors),
  forwarded by ``PerformanceMonitor`` when a request completes.

Datapoints are buffered in memory and pushed by a daemon thread every
``flush_interval`` seconds, at most ``MAX_BATCH_SIZE`` per
``put_metric_data`` call.  Unless ``METRICS_ENABLED=true`` the client
only logs at DEBUG level and never creates a boto3 client, which keeps
local runs and the test suite off AWS.

Usage
-----
>>> from orchestrator.services.metrics import metrics
>>> metrics.record_success("stripe", "POST /payment_links", latency_ms=123.4)
>>> metrics.record_failure("anthropic", "think_1", error_type="APITimeoutError")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "AgentOrchestrator"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit


def _env_enabled() -> bool:
    return os.getenv("METRICS_ENABLED", "false").lower() == "true"


class MetricsClient:
    """Buffered CloudWatch publisher.  Safe to call from any thread."""

    def __init__(
        self,
        *,
        enabled: bool | None = None,
        namespace: str = NAMESPACE,
        flush_interval: float = FLUSH_INTERVAL_SECONDS,
    ) -> None:
        self._enabled = _env_enabled() if enabled is None else enabled
        self._namespace = namespace
        self._flush_interval = flush_interval
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def _cloudwatch(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Outbound calls ───────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        now = datetime.now(UTC)
        self._record("ExternalAPI/RequestCount", 1, "Count", now, Service=service, Status="success")
        self._record("ExternalAPI/Latency", latency_ms, "Milliseconds", now,
                     Service=service, Operation=operation)
        logger.debug("Metric: %s %s ok in %.1fms", service, operation, latency_ms)

    def record_failure(
        self, service: str, operation: str, error_type: str, latency_ms: float = 0,
    ) -> None:
        """Count a failed call; latency is only recorded when it was measured."""
        now = datetime.now(UTC)
        self._record("ExternalAPI/RequestCount", 1, "Count", now, Service=service, Status="failure")
        self._record("ExternalAPI/ErrorCount", 1, "Count", now, Service=service, ErrorType=error_type)
        if latency_ms > 0:
            self._record("ExternalAPI/Latency", latency_ms, "Milliseconds", now,
                         Service=service, Operation=operation)
        logger.debug("Metric: %s %s failed (%s) after %.1fms",
                     service, operation, error_type, latency_ms)

    # ── Orchestrated requests ────────────────────────────────────────

    def record_agent_request(
        self,
        *,
        model: str,
        total_ms: float,
        decision_ms: float,
        confidence: int,
        tools_executed: int,
        used_fallback: bool = False,
        error: bool = False,
    ) -> None:
        now = datetime.now(UTC)
        status = "error" if error else "success"
        self._record("Agent/RequestCount", 1, "Count", now, Model=model, Status=status)
        self._record("Agent/Latency", total_ms, "Milliseconds", now, Model=model)
        self._record("Agent/DecisionLatency", decision_ms, "Milliseconds", now, Model=model)
        self._record("Agent/DecisionConfidence", confidence, "None", now, Model=model)
        if tools_executed:
            self._record("Agent/ToolsExecuted", tools_executed, "Count", now, Model=model)
        if used_fallback:
            self._record("Agent/FallbackCount", 1, "Count", now, Model=model)
        logger.debug("Metric: request via %s %s in %.1fms (%d tools)",
                     model, status, total_ms, tools_executed)

    # ── Publishing ───────────────────────────────────────────────────

    def flush(self) -> int:
        """Push buffered datapoints to CloudWatch.  Returns how many were sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Metrics disabled, dropping %d datapoints", len(batch))
            return 0

        sent = 0
        try:
            cloudwatch = self._cloudwatch()
            for start in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[start:start + MAX_BATCH_SIZE]
                cloudwatch.put_metric_data(Namespace=self._namespace, MetricData=chunk)
                sent += len(chunk)
        except Exception:
            logger.exception("Failed to publish %d metrics to CloudWatch", len(batch) - sent)
        else:
            logger.info("Published %d metrics to CloudWatch", sent)
        return sent

    def close(self) -> int:
        """Stop the flush thread and publish whatever is still buffered."""
        self._stop.set()
        return self.flush()

    def _record(
        self, name: str, value: float, unit: str, timestamp: datetime, **dimensions: str,
    ) -> None:
        datum = {
            "MetricName": name,
            "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
            "Timestamp": timestamp,
            "Value": value,
            "Unit": unit,
        }
        with self._lock:
            self._buffer.append(datum)

    def _start_flush_thread(self) -> None:
        def _loop() -> None:
            while not self._stop.wait(self._flush_interval):
                self.flush()

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.close)
        logger.info("Metrics flush thread started (every %ss)", self._flush_interval)


metrics = MetricsClient()
