"""Cheap LLM classifier for reminder intent.

Keyword matching misses paraphrases ("avísame el viernes de la junta");
a small, deterministic model call catches them.  The classifier is an
optimisation only: any failure (model error, timeout, malformed JSON)
returns ``None`` and the decision engine falls back to keywords.
"""

from __future__ import annotations

import json
import logging
import re
import time

from langchain_core.messages import HumanMessage

from orchestrator.config import CLASSIFIER_MODEL_NAME, CLASSIFIER_TIMEOUT_SECONDS
from orchestrator.keywords import INTENT_TOOLS, ReminderIntent, normalize
from orchestrator.prompts import CLASSIFIER_PROMPT
from orchestrator.services.cache import TTLCache
from orchestrator.services.llm import LLMProvider, ModelEndpoint, build_chat_model
from orchestrator.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

_VALID_INTENTS = {"create", "list", "update", "delete", "none"}
_JSON_OBJECT = re.compile(r"\{.*?\}", re.DOTALL)


def parse_classification(raw: str) -> ReminderIntent | None:
    """Parse ``{"intent": ..., "confidence": ...}`` out of a model reply."""
    match = _JSON_OBJECT.search(raw or "")
    if match is None:
        return None
    try:
        payload = json.loads(match.group(0))
        intent = str(payload["intent"]).strip().lower()
        confidence = float(payload.get("confidence", 0))
    except (ValueError, KeyError, TypeError):
        return None
    if intent not in _VALID_INTENTS:
        return None
    return ReminderIntent(
        intent=intent,
        confidence=min(max(confidence, 0.0), 1.0),
        suggested_tool=INTENT_TOOLS.get(intent),
        keywords=(f"llm_intent_{intent}",),
        source="llm",
    )


class ReminderIntentClassifier:
    """Classifies messages with a small model, caching answers per message."""

    def __init__(self, provider: LLMProvider, cache: TTLCache | None = None) -> None:
        self._provider = provider
        self._cache = cache or TTLCache(ttl_seconds=600, max_entries=2_000)

    def classify(self, message: str) -> ReminderIntent | None:
        key = " ".join(normalize(message).split())[:200]
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        t0 = time.perf_counter()
        completion = self._provider.complete(
            [HumanMessage(content=CLASSIFIER_PROMPT.format(message=message[:500]))],
            operation="classify_reminder_intent",
        )
        elapsed = (time.perf_counter() - t0) * 1000
        if not completion.ok:
            logger.warning(
                "Reminder classifier unavailable (%s), using keywords", completion.error_type,
            )
            return None

        intent = parse_classification(completion.content)
        if intent is None:
            logger.info("Reminder classifier returned unparsable output: %r", completion.content[:100])
            return None

        logger.debug(
            "Reminder classifier: %s (%.2f) in %.0fms", intent.intent, intent.confidence, elapsed,
        )
        self._cache.put(key, intent)
        return intent


def build_intent_classifier() -> ReminderIntentClassifier:
    """One attempt and no fallback model: phase 1 waits at most one timeout."""
    endpoint = ModelEndpoint(
        name=CLASSIFIER_MODEL_NAME,
        llm=build_chat_model(
            CLASSIFIER_MODEL_NAME,
            max_tokens=60,
            temperature=0.0,
            timeout=CLASSIFIER_TIMEOUT_SECONDS,
        ),
        retry=RetryPolicy(max_attempts=1),
        supports_tools=False,
    )
    return ReminderIntentClassifier(LLMProvider([endpoint]))
