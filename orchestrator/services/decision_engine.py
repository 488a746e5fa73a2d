"""Decides, per message, whether the agent loop is worth running.

Two phases:

  1. **quick_scan**: weighted keyword/pattern families (payments, amounts,
     commercial phrases, contact details, reminder intent).  Pure string
     work plus an optional cheap classifier call for reminders.
  2. **contextual analysis**: only when phase 1 scores at least
     ``deep_analysis`` (20).  Re-weights the score with what the scan cannot
     see: which integrations the tenant has, its plan tier, and whether the
     selected model can call tools at all.  Produces the ordered list of
     suggested tools and a reasoning trace.

The final routing is threshold based: ``needs_tools`` at confidence ≥ 60,
``should_stream`` below 70.  Messages that score under 20 in phase 1 take
the fast path (no tools, streamed reply) without phase 2.

Decisions are cached per (chatbot, plan, tool support, message prefix)
for five minutes.  A cache hit returns the identical ``Decision`` object.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from orchestrator.config import (
    DECISION_CACHE_MAX_ENTRIES,
    DECISION_CACHE_TTL_SECONDS,
    DEEP_ANALYSIS_THRESHOLD,
    NEEDS_TOOLS_THRESHOLD,
    NO_STREAM_THRESHOLD,
)
from orchestrator.keywords import (
    AMOUNT_PATTERNS,
    COMMERCIAL_PHRASES,
    CONTACT_KEYWORDS,
    CONTACT_PATTERNS,
    HIGH_CONFIDENCE_SCHEDULING,
    INTENT_TOOLS,
    PAYMENT_KEYWORDS,
    SCHEDULING_KEYWORDS,
    ReminderIntent,
    detect_reminder_intent,
    find_phrases,
    normalize,
)
from orchestrator.models import Decision, PlanTier
from orchestrator.services.cache import TTLCache

logger = logging.getLogger(__name__)

AMOUNT_KEYWORD = "amount_detected"
CONTACT_PATTERN_KEYWORD = "contact_pattern_detected"
LLM_INTENT_PREFIX = "llm_intent_"

FAST_PATH_REASONING = "No tool indicators detected"

# Phase 1 weights
PAYMENT_WEIGHT = 40
AMOUNT_WEIGHT = 60
COMMERCIAL_WEIGHT = 30
CONTACT_PATTERN_WEIGHT = 50
CONTACT_KEYWORD_WEIGHT = 35
CLASSIFIER_MIN_CONFIDENCE = 0.5

# Phase 2 adjustments
INTENT_BOOST = 25
STRIPE_BOOST = 15
HIGH_SCHEDULING_BOOST = 20
SCHEDULING_BOOST = 10
CONTACT_BOOST = 15
FREE_PLAN_PENALTY = 30
ENTERPRISE_BOOST = 5
NO_TOOL_SUPPORT_PENALTY = 40

_SCHEDULING_FAMILY = tuple(dict.fromkeys(SCHEDULING_KEYWORDS + HIGH_CONFIDENCE_SCHEDULING))


class IntentClassifier(Protocol):
    def classify(self, message: str) -> ReminderIntent | None: ...


@dataclass(frozen=True)
class DecisionThresholds:
    deep_analysis: int = DEEP_ANALYSIS_THRESHOLD
    needs_tools: int = NEEDS_TOOLS_THRESHOLD
    no_stream: int = NO_STREAM_THRESHOLD


@dataclass(frozen=True)
class DecisionContext:
    """What the engine needs to know about the caller besides the message."""

    tenant_id: str
    plan: PlanTier
    chatbot_id: str | None = None
    integrations: frozenset[str] = frozenset()
    model_supports_tools: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "plan", PlanTier.parse(self.plan))
        object.__setattr__(self, "integrations", frozenset(self.integrations))


@dataclass(frozen=True)
class ScanResult:
    """Phase 1 output: the raw 0..100 score and what triggered it."""

    confidence: int
    keywords: tuple[str, ...] = ()
    reminder_intent: ReminderIntent | None = None

    @property
    def detected(self) -> bool:
        return bool(self.keywords)


@dataclass
class _Timing:
    decisions: int = 0
    total_ms: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, elapsed_ms: float) -> None:
        with self.lock:
            self.decisions += 1
            self.total_ms += elapsed_ms

    @property
    def average_ms(self) -> float:
        return self.total_ms / self.decisions if self.decisions else 0.0


def _clamp(value: float) -> int:
    return int(min(max(value, 0), 100))


def cache_key(message: str, context: DecisionContext) -> str:
    prefix = re.sub(r"\s+", "-", message.lower()[:50])
    owner = context.chatbot_id or context.tenant_id
    return f"{owner}-{context.plan.value}-{context.model_supports_tools}-{prefix}"


class DecisionEngine:
    """Scores a message for tool need.  Safe to share across threads."""

    def __init__(
        self,
        cache: TTLCache | None = None,
        classifier: IntentClassifier | None = None,
        thresholds: DecisionThresholds | None = None,
    ) -> None:
        self._cache = cache or TTLCache(DECISION_CACHE_TTL_SECONDS, DECISION_CACHE_MAX_ENTRIES)
        self._classifier = classifier
        self.thresholds = thresholds or DecisionThresholds()
        self._timing = _Timing()

    # ── Public API ───────────────────────────────────────────────────

    def decide(self, message: str, context: DecisionContext) -> Decision:
        return self.evaluate(message, context)[0]

    def evaluate(self, message: str, context: DecisionContext) -> tuple[Decision, bool]:
        """Return ``(decision, cache_hit)``."""
        key = cache_key(message, context)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Decision cache hit: %s", key)
            return cached, True

        t0 = time.perf_counter()
        scan = self.quick_scan(message)

        if not scan.detected or scan.confidence < self.thresholds.deep_analysis:
            decision = Decision(
                needs_tools=False,
                confidence=0,
                suggested_tools=(),
                should_stream=True,
                reasoning=FAST_PATH_REASONING,
                detection_time_ms=(time.perf_counter() - t0) * 1000,
            )
        else:
            confidence, tools, reasoning = self._contextual_analysis(message, scan, context)
            decision = Decision(
                needs_tools=confidence >= self.thresholds.needs_tools,
                confidence=confidence,
                suggested_tools=tools,
                should_stream=confidence < self.thresholds.no_stream,
                reasoning=reasoning,
                detection_time_ms=(time.perf_counter() - t0) * 1000,
            )

        self._timing.add(decision.detection_time_ms)
        self._cache.put(key, decision)
        logger.debug(
            "Decision for %s: confidence=%d needs_tools=%s tools=%s",
            key, decision.confidence, decision.needs_tools, list(decision.suggested_tools),
        )
        return decision, False

    def stats(self) -> dict[str, Any]:
        return {
            "cache_hits": self._cache.hits,
            "cache_misses": self._cache.misses,
            "avg_decision_ms": round(self._timing.average_ms, 2),
            "cache_size": self._cache.entry_count,
        }

    # ── Phase 1 ──────────────────────────────────────────────────────

    def _reminder_intent(self, message: str) -> ReminderIntent:
        if self._classifier is not None:
            try:
                classified = self._classifier.classify(message)
            except Exception:
                logger.warning("Reminder classifier raised, using keywords", exc_info=True)
                classified = None
            if classified is not None:
                return classified
        return detect_reminder_intent(message)

    def quick_scan(self, message: str) -> ScanResult:
        text = normalize(message)
        keywords: list[str] = []
        score = 0.0

        intent = self._reminder_intent(message)
        if intent.source == "llm":
            if intent.is_reminder and intent.confidence > CLASSIFIER_MIN_CONFIDENCE:
                keywords.append(f"{LLM_INTENT_PREFIX}{intent.intent}")
                score += intent.confidence * 100
        elif intent.is_reminder:
            keywords.extend(intent.keywords)
            keywords.append(f"{LLM_INTENT_PREFIX}{intent.intent}")
            score += intent.confidence * 100

        payment_hits = find_phrases(text, PAYMENT_KEYWORDS)
        keywords.extend(payment_hits)
        score += PAYMENT_WEIGHT * len(payment_hits)

        if any(p.search(text) for p in AMOUNT_PATTERNS):
            keywords.append(AMOUNT_KEYWORD)
            score += AMOUNT_WEIGHT

        commercial_hits = find_phrases(text, COMMERCIAL_PHRASES)
        keywords.extend(commercial_hits)
        score += COMMERCIAL_WEIGHT * len(commercial_hits)

        if any(p.search(text) for p in CONTACT_PATTERNS):
            keywords.append(CONTACT_PATTERN_KEYWORD)
            score += CONTACT_PATTERN_WEIGHT

        contact_hits = find_phrases(text, CONTACT_KEYWORDS)
        if contact_hits:
            keywords.extend(contact_hits)
            score += CONTACT_KEYWORD_WEIGHT

        return ScanResult(
            confidence=_clamp(score),
            keywords=tuple(dict.fromkeys(keywords)),
            reminder_intent=intent if intent.is_reminder else None,
        )

    # ── Phase 2 ──────────────────────────────────────────────────────

    def _contextual_analysis(
        self, message: str, scan: ScanResult, context: DecisionContext,
    ) -> tuple[int, tuple[str, ...], str]:
        text = normalize(message)
        confidence = float(scan.confidence)
        tools: list[str] = []
        reasoning: list[str] = []
        keywords = set(scan.keywords)

        intent_tool = next(
            (INTENT_TOOLS.get(k[len(LLM_INTENT_PREFIX):]) for k in scan.keywords
             if k.startswith(LLM_INTENT_PREFIX)),
            None,
        )
        if intent_tool:
            tools.append(intent_tool)
            confidence += INTENT_BOOST
            reasoning.append(f"Reminder intent classified as {scan.reminder_intent.intent}"
                             if scan.reminder_intent else f"Reminder intent suggests {intent_tool}")

        payment_signal = AMOUNT_KEYWORD in keywords or bool(keywords & set(PAYMENT_KEYWORDS))
        if "stripe" in context.integrations and payment_signal:
            tools.append("create_payment_link")
            confidence += STRIPE_BOOST
            reasoning.append("Stripe integration available + payment intent detected")

        scheduling_hits = find_phrases(text, _SCHEDULING_FAMILY)
        if scheduling_hits:
            tools.append("schedule_reminder")
            high = any(h in HIGH_CONFIDENCE_SCHEDULING for h in scheduling_hits)
            confidence += HIGH_SCHEDULING_BOOST if high else SCHEDULING_BOOST
            reasoning.append(
                "High confidence scheduling intent detected" if high
                else "Scheduling intent detected"
            )

        if CONTACT_PATTERN_KEYWORD in keywords or keywords & set(CONTACT_KEYWORDS):
            tools.append("save_contact_info")
            confidence += CONTACT_BOOST
            reasoning.append("Contact information shared")

        if context.plan is PlanTier.FREE:
            confidence -= FREE_PLAN_PENALTY
            reasoning.append("FREE plan - tools limited")
        elif context.plan is PlanTier.ENTERPRISE:
            confidence += ENTERPRISE_BOOST
            reasoning.append("ENTERPRISE plan - full tool access")

        if not context.model_supports_tools:
            confidence -= NO_TOOL_SUPPORT_PENALTY
            reasoning.append("Model does not support tools")

        return _clamp(confidence), tuple(dict.fromkeys(tools)), "; ".join(reasoning)

