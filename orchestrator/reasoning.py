"""Pure helpers behind the ReAct loop: parsing, fallbacks, budgets, synthesis.

Nothing in here talks to a model or a tool.  The executor in
``orchestrator.agent`` wires these into graph nodes; keeping them pure
makes the loop's edge cases (garbage JSON, no tool offered, empty memory)
easy to test in isolation.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator

from orchestrator.keywords import (
    COMPLEX_WORDS,
    COMPLEXITY_TOOL_WORDS,
    FALLBACK_TOOL_KEYWORDS,
    find_phrases,
    normalize,
)
from orchestrator.models import (
    MemoryEntry,
    NextAction,
    PlanTier,
    ResponseAction,
    ToolCallAction,
)
from orchestrator.prompts import ACKNOWLEDGEMENT_MESSAGE, FALLBACK_RESPONSE, NO_RESULT_MESSAGE

logger = logging.getLogger(__name__)


# ── Step decisions ───────────────────────────────────────────────────


class StepDecision(BaseModel):
    """What the model wants to do next, as returned by the THINK prompt."""

    action: NextAction
    tool_name: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)
    response: str | None = None
    confidence: float
    reasoning: str | None = None

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return max(0.1, min(1.0, value))

    @field_validator("args", mode="before")
    @classmethod
    def _none_args(cls, value: Any) -> Any:
        return {} if value is None else value


@dataclass(frozen=True)
class DecisionParseError:
    reason: str
    raw: str


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_step_decision(raw: str) -> StepDecision | DecisionParseError:
    """Parse a model reply into a ``StepDecision``.  Never raises."""
    text = _FENCE.sub("", (raw or "").strip())
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return DecisionParseError("no JSON object in reply", raw)
    try:
        payload = json.loads(text[start:end + 1])
    except ValueError as exc:
        return DecisionParseError(f"invalid JSON: {exc}", raw)
    if not isinstance(payload, dict):
        return DecisionParseError("JSON reply is not an object", raw)
    try:
        return StepDecision.model_validate(payload)
    except ValidationError as exc:
        return DecisionParseError(f"invalid decision: {exc.error_count()} errors", raw)


# ── Deterministic fallback ───────────────────────────────────────────

_NUMBER = r"\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:[.,]\d{1,2})?"
_THOUSANDS = re.compile(r"\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?")
_AMOUNT = re.compile(
    rf"\$\s?({_NUMBER})|({_NUMBER})\s*(?:pesos|dolares|usd|mxn)",
    re.IGNORECASE,
)
_REMINDER_ID = re.compile(r"\b(?:id[:\s]+)?([0-9a-f]{12})\b", re.IGNORECASE)

DEFAULT_FALLBACK_AMOUNT = 500


def extract_amount(message: str) -> Decimal | None:
    match = _AMOUNT.search(normalize(message))
    if match is None:
        return None
    raw = match.group(1) or match.group(2)
    # "1,500" is a thousands separator, "19,99" a decimal comma
    raw = raw.replace(",", "") if _THOUSANDS.fullmatch(raw) else raw.replace(",", ".")
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def fallback_tool_args(tool_name: str, message: str, today: date | None = None) -> dict[str, Any]:
    """Best-guess arguments for *tool_name* when the model supplied none."""
    if tool_name == "schedule_reminder":
        tomorrow = (today or date.today()) + timedelta(days=1)
        return {"title": message[:100], "date": tomorrow.isoformat(), "time": "09:00"}
    if tool_name == "create_payment_link":
        amount = extract_amount(message)
        return {
            "amount": float(amount) if amount is not None else DEFAULT_FALLBACK_AMOUNT,
            "description": "Pago solicitado",
            "currency": "mxn",
        }
    if tool_name == "cancel_reminder":
        match = _REMINDER_ID.search(message)
        return {"id": match.group(1)} if match else {}
    return {}


def fallback_decision(message: str, offered_tools: Collection[str]) -> StepDecision:
    """Keyword-driven decision used when the model's reply cannot be parsed."""
    text = normalize(message)
    for tool_name, family in FALLBACK_TOOL_KEYWORDS:
        if tool_name in offered_tools and find_phrases(text, family):
            return StepDecision(
                action=NextAction.USE_TOOL,
                tool_name=tool_name,
                args=fallback_tool_args(tool_name, message),
                confidence=0.8,
                reasoning=f"Keyword fallback matched {tool_name}",
            )
    return StepDecision(
        action=NextAction.RESPOND,
        response=FALLBACK_RESPONSE,
        confidence=0.6,
        reasoning="Keyword fallback found no tool",
    )


# ── Iteration budget ─────────────────────────────────────────────────

Complexity = Literal["low", "medium", "high"]

BASE_ITERATIONS = 3
PLAN_ITERATION_CEILING = 7
ENTERPRISE_ITERATION_CEILING = 8


def estimate_complexity(message: str) -> Complexity:
    text = normalize(message)
    if find_phrases(text, COMPLEXITY_TOOL_WORDS):
        return "high"
    complex_words = bool(find_phrases(text, COMPLEX_WORDS))
    if complex_words and len(message) > 50:
        return "high"
    if complex_words or len(message) > 100:
        return "medium"
    return "low"


def max_iterations_for(
    message: str,
    plan: PlanTier | str = PlanTier.TRIAL,
    model_ceiling: int | None = None,
) -> int:
    """THINK-cycle budget: 3, +1 for long messages, +1/+2 for complexity, capped."""
    iterations = BASE_ITERATIONS
    if len(message) > 100:
        iterations += 1
    complexity = estimate_complexity(message)
    if complexity == "high":
        iterations += 2
    elif complexity == "medium":
        iterations += 1

    ceiling = (
        ENTERPRISE_ITERATION_CEILING if PlanTier.parse(plan) is PlanTier.ENTERPRISE
        else PLAN_ITERATION_CEILING
    )
    if model_ceiling is not None:
        ceiling = min(ceiling, model_ceiling)
    return max(1, min(iterations, ceiling))


# ── Completion ───────────────────────────────────────────────────────

COMPLETION_MARKERS = (
    "completado", "terminado", "finalizado", "éxito", "listo", "programado",
    "exitosamente", "agendado", "actualizado", "cancelado", "eliminado",
    "guardado", "generado", "created", "generated", "sent", "saved", "successfully",
)


class CompletionPolicy(Protocol):
    def is_complete(self, tool_output: str) -> bool: ...


class LexicalCompletionPolicy:
    """A tool result completes the task when it mentions a completion marker."""

    def __init__(self, markers: Iterable[str] = COMPLETION_MARKERS) -> None:
        self._markers = tuple(dict.fromkeys(normalize(m) for m in markers))

    def is_complete(self, tool_output: str) -> bool:
        return bool(find_phrases(normalize(tool_output), self._markers))


# ── Synthesis ────────────────────────────────────────────────────────


def synthesize_response(memory: Sequence[MemoryEntry]) -> str:
    """Final user-facing text for a run.  Never empty."""
    if not memory:
        return NO_RESULT_MESSAGE

    last = memory[-1].action
    if isinstance(last, ResponseAction) and last.content.strip():
        return last.content

    tool_results = ". ".join(
        m.observation.content for m in memory
        if isinstance(m.action, ToolCallAction) and m.observation.content
    )
    return tool_results or ACKNOWLEDGEMENT_MESSAGE


def explain_reasoning(decision: StepDecision) -> str:
    if decision.action is NextAction.USE_TOOL:
        return f"Detecté que necesitas usar la herramienta {decision.tool_name} para resolver tu solicitud"
    if decision.action is NextAction.RESPOND:
        return "Puedo responder directamente sin necesidad de herramientas adicionales"
    if decision.action is NextAction.RETRY:
        return "El intento anterior no funcionó, voy a probar un enfoque diferente"
    return "Analizando la mejor forma de ayudarte"
