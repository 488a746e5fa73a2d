"""In-process performance telemetry for orchestrated chat requests.

``PerformanceMonitor`` follows one request from arrival to reply:

    request_id = monitor.start_request(tenant_id="t1", session_id="s1")
    monitor.log_decision(request_id, decision, cache_hit=False)
    monitor.log_model(request_id, requested="claude-sonnet-4-5", used=..., ...)
    monitor.log_tools(request_id, ["create_payment_link"])
    monitor.end_request(request_id)

It keeps the most recent ``max_records`` requests (1 000 by default) and a
rolling average per chat session, answers aggregate queries for the
``/api/stats`` endpoint and the analytics tool, and forwards each completed
request to CloudWatch through ``MetricsClient``.

Telemetry is an observer only: nothing here feeds back into decisions, and
every method tolerates unknown request ids (it logs and returns).
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import Counter, OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from orchestrator.config import TELEMETRY_MAX_RECORDS, TELEMETRY_WINDOW_SECONDS
from orchestrator.models import Decision
from orchestrator.services.metrics import MetricsClient, metrics

logger = logging.getLogger(__name__)

SESSION_MAX_AGE_SECONDS = 24 * 3600
SLOW_REQUEST_MS = 5_000

PERIOD_SECONDS = {"day": 86_400, "week": 7 * 86_400, "month": 30 * 86_400}


@dataclass
class RequestRecord:
    request_id: str
    tenant_id: str
    chatbot_id: str | None
    session_id: str | None
    started_at: float
    decision_ms: float = 0.0
    confidence: int = 0
    needs_tools: bool = False
    suggested_tools: tuple[str, ...] = ()
    reasoning: str = ""
    decision_cache_hit: bool = False
    model_requested: str = ""
    model_used: str = ""
    provider: str = ""
    used_fallback: bool = False
    streaming: bool = False
    tools_executed: list[str] = field(default_factory=list)
    total_ms: float | None = None
    first_token_ms: float | None = None
    error: bool = False
    error_type: str | None = None

    @property
    def completed(self) -> bool:
        return self.total_ms is not None


@dataclass
class SessionStats:
    session_id: str
    request_count: int = 0
    completed_count: int = 0
    avg_response_ms: float = 0.0
    tool_usage_rate: float = 0.0
    streaming_rate: float = 0.0
    error_rate: float = 0.0
    last_activity: float = 0.0

    def _roll(self, current: float, value: float) -> float:
        n = self.completed_count
        return (current * (n - 1) + value) / n

    def record(self, record: RequestRecord) -> None:
        self.completed_count += 1
        self.avg_response_ms = self._roll(self.avg_response_ms, record.total_ms or 0.0)
        self.tool_usage_rate = self._roll(self.tool_usage_rate, 1.0 if record.tools_executed else 0.0)
        self.streaming_rate = self._roll(self.streaming_rate, 1.0 if record.streaming else 0.0)
        self.error_rate = self._roll(self.error_rate, 1.0 if record.error else 0.0)


def _rate(part: int, whole: int) -> float:
    return round(part / whole, 2) if whole else 0.0


class PerformanceMonitor:
    """Bounded store of per-request telemetry with aggregate queries."""

    def __init__(
        self,
        max_records: int = TELEMETRY_MAX_RECORDS,
        *,
        metrics_client: MetricsClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_records = max_records
        self._records: OrderedDict[str, RequestRecord] = OrderedDict()
        self._sessions: dict[str, SessionStats] = {}
        self._lock = threading.Lock()
        self._metrics = metrics_client or metrics
        self._clock = clock

    # ── Request lifecycle ────────────────────────────────────────────

    def start_request(
        self,
        *,
        tenant_id: str,
        chatbot_id: str | None = None,
        session_id: str | None = None,
        request_id: str | None = None,
    ) -> str:
        request_id = request_id or f"req_{uuid.uuid4().hex[:12]}"
        now = self._clock()
        record = RequestRecord(
            request_id=request_id,
            tenant_id=tenant_id,
            chatbot_id=chatbot_id,
            session_id=session_id,
            started_at=now,
        )
        with self._lock:
            self._records[request_id] = record
            while len(self._records) > self._max_records:
                self._records.popitem(last=False)
            if session_id:
                session = self._sessions.setdefault(session_id, SessionStats(session_id))
                session.request_count += 1
                session.last_activity = now
        return request_id

    def _get(self, request_id: str) -> RequestRecord | None:
        record = self._records.get(request_id)
        if record is None:
            logger.debug("Telemetry: unknown request %s (evicted?)", request_id)
        return record

    def log_decision(self, request_id: str, decision: Decision, *, cache_hit: bool = False) -> None:
        with self._lock:
            record = self._get(request_id)
            if record is None:
                return
            record.decision_ms = decision.detection_time_ms
            record.confidence = decision.confidence
            record.needs_tools = decision.needs_tools
            record.suggested_tools = decision.suggested_tools
            record.reasoning = decision.reasoning
            record.decision_cache_hit = cache_hit
        logger.info(
            "[%s] Decision: confidence=%d needs_tools=%s tools=%s (%.1fms%s)",
            request_id, decision.confidence, decision.needs_tools,
            ",".join(decision.suggested_tools) or "-", decision.detection_time_ms,
            ", cached" if cache_hit else "",
        )

    def log_model(
        self,
        request_id: str,
        *,
        requested: str,
        used: str | None,
        provider: str | None,
        used_fallback: bool = False,
        streaming: bool = False,
    ) -> None:
        with self._lock:
            record = self._get(request_id)
            if record is None:
                return
            record.model_requested = requested
            record.model_used = used or requested
            record.provider = provider or ""
            record.used_fallback = used_fallback
            record.streaming = streaming
        logger.info(
            "[%s] Model: requested=%s used=%s provider=%s fallback=%s streaming=%s",
            request_id, requested, used, provider, used_fallback, streaming,
        )

    def log_tools(self, request_id: str, tools: Iterable[str]) -> None:
        with self._lock:
            record = self._get(request_id)
            if record is not None:
                record.tools_executed.extend(tools)

    def log_first_token(self, request_id: str) -> None:
        with self._lock:
            record = self._get(request_id)
            if record is not None and record.first_token_ms is None:
                record.first_token_ms = (self._clock() - record.started_at) * 1000

    def end_request(self, request_id: str, *, error_type: str | None = None) -> RequestRecord | None:
        """Close the request, update its session and forward it to CloudWatch."""
        with self._lock:
            record = self._get(request_id)
            if record is None or record.completed:
                return record
            record.total_ms = (self._clock() - record.started_at) * 1000
            record.error = error_type is not None
            record.error_type = error_type
            session = self._sessions.get(record.session_id) if record.session_id else None
            if session is not None:
                session.record(record)
                session.last_activity = self._clock()

        level = logging.WARNING if record.total_ms >= SLOW_REQUEST_MS or record.error else logging.INFO
        logger.log(
            level,
            "[%s] Request complete in %.0fms (tools=%s, error=%s)",
            request_id, record.total_ms, ",".join(record.tools_executed) or "-",
            record.error_type or False,
        )
        self._metrics.record_agent_request(
            model=record.model_used or record.model_requested or "unknown",
            total_ms=record.total_ms,
            decision_ms=record.decision_ms,
            confidence=record.confidence,
            tools_executed=len(record.tools_executed),
            used_fallback=record.used_fallback,
            error=record.error,
        )
        return record

    # ── Queries ──────────────────────────────────────────────────────

    def get_record(self, request_id: str) -> RequestRecord | None:
        with self._lock:
            return self._records.get(request_id)

    def _recent(self, window_seconds: float, tenant_id: str | None = None) -> list[RequestRecord]:
        cutoff = self._clock() - window_seconds
        with self._lock:
            return [
                r for r in self._records.values()
                if r.completed
                and r.started_at >= cutoff
                and (tenant_id is None or r.tenant_id == tenant_id)
            ]

    def aggregated_stats(self, window_seconds: float = TELEMETRY_WINDOW_SECONDS) -> dict[str, Any]:
        """Totals and rates over completed requests in the last *window_seconds*."""
        recent = self._recent(window_seconds)
        total = len(recent)
        if not total:
            return {
                "total_requests": 0,
                "avg_response_ms": 0,
                "avg_decision_ms": 0,
                "tool_usage_rate": 0.0,
                "streaming_rate": 0.0,
                "fallback_rate": 0.0,
                "error_rate": 0.0,
                "decision_cache_rate": 0.0,
                "top_models": [],
                "top_providers": [],
            }

        models = Counter(r.model_used for r in recent if r.model_used)
        providers = Counter(r.provider for r in recent if r.provider)
        return {
            "total_requests": total,
            "avg_response_ms": round(sum(r.total_ms for r in recent) / total),
            "avg_decision_ms": round(sum(r.decision_ms for r in recent) / total),
            "tool_usage_rate": _rate(sum(1 for r in recent if r.tools_executed), total),
            "streaming_rate": _rate(sum(1 for r in recent if r.streaming), total),
            "fallback_rate": _rate(sum(1 for r in recent if r.used_fallback), total),
            "error_rate": _rate(sum(1 for r in recent if r.error), total),
            "decision_cache_rate": _rate(sum(1 for r in recent if r.decision_cache_hit), total),
            "top_models": [{"model": m, "count": c} for m, c in models.most_common(5)],
            "top_providers": [{"provider": p, "count": c} for p, c in providers.most_common(3)],
        }

    def tenant_summary(self, tenant_id: str, period: str = "week") -> dict[str, Any]:
        """Per-tenant usage summary over ``day`` / ``week`` / ``month``."""
        if period not in PERIOD_SECONDS:
            raise ValueError(f"Unknown period: {period!r}")
        recent = self._recent(PERIOD_SECONDS[period], tenant_id=tenant_id)
        total = len(recent)
        tools = Counter(tool for r in recent for tool in r.tools_executed)
        return {
            "tenant_id": tenant_id,
            "period": period,
            "total_requests": total,
            "conversations": len({r.session_id for r in recent if r.session_id}),
            "chatbots": len({r.chatbot_id for r in recent if r.chatbot_id}),
            "avg_response_ms": round(sum(r.total_ms for r in recent) / total) if total else 0,
            "tool_usage_rate": _rate(sum(1 for r in recent if r.tools_executed), total),
            "error_rate": _rate(sum(1 for r in recent if r.error), total),
            "top_tools": [{"tool": t, "count": c} for t, c in tools.most_common(5)],
        }

    def session_stats(self, session_id: str) -> SessionStats | None:
        with self._lock:
            return self._sessions.get(session_id)

    def cleanup_sessions(self, max_age_seconds: float = SESSION_MAX_AGE_SECONDS) -> int:
        """Forget sessions idle for longer than *max_age_seconds*.  Returns count removed."""
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.debug("Telemetry: dropped %d stale sessions", len(stale))
        return len(stale)

    @property
    def record_count(self) -> int:
        return len(self._records)
