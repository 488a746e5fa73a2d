"""Tests for the LangGraph ReAct executor.

Covers:
  - think → act → observe loop with mocked models and a real registry
  - iteration budget, deadline and low-confidence exits
  - keyword fallback when the step decision is not JSON
  - plan gating and unavailable tools
  - provider failures on the first and later iterations
  - streamed events
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from helpers import make_mock_llm, make_provider

from orchestrator.agent import AgentExecutor
from orchestrator.models import PlanTier, ToolContext, ToolDefinition, ToolResult
from orchestrator.prompts import GENERIC_ERROR_MESSAGE, NO_RESULT_MESSAGE
from orchestrator.tools.registry import ToolRegistry

# ── Helpers ──────────────────────────────────────────────────────────


def _decision(action: str, confidence: float = 0.9, **fields) -> str:
    return json.dumps({"action": action, "confidence": confidence, **fields})


def _use(tool: str, args: dict | None = None, **fields) -> str:
    return _decision("use_tool", tool_name=tool, args=args or {}, **fields)


PAYMENT_SCHEMA = {
    "type": "object",
    "properties": {"amount": {"type": "number"}, "description": {"type": "string"}},
    "required": ["amount", "description"],
}
EMPTY_SCHEMA = {"type": "object", "properties": {}, "required": []}
PAID_PLANS = frozenset({PlanTier.PRO, PlanTier.ENTERPRISE, PlanTier.TRIAL})


@pytest.fixture
def payment_handler():
    return MagicMock(return_value=ToolResult.ok(
        "Link de pago generado exitosamente: https://buy.stripe.com/abc",
        data={"url": "https://buy.stripe.com/abc"},
    ))


@pytest.fixture
def list_handler():
    return MagicMock(return_value=ToolResult.ok("📅 Tienes 1 recordatorio pendiente"))


@pytest.fixture
def registry(mock_metrics, payment_handler, list_handler):
    return ToolRegistry(
        [
            ToolDefinition(
                name="create_payment_link",
                description="Crear un link de pago",
                input_schema=PAYMENT_SCHEMA,
                handler=payment_handler,
                required_plans=PAID_PLANS,
            ),
            ToolDefinition(
                name="list_reminders",
                description="Consultar recordatorios",
                input_schema=EMPTY_SCHEMA,
                handler=list_handler,
                required_plans=PAID_PLANS,
            ),
        ],
        metrics_client=mock_metrics,
    )


def _ctx(plan=PlanTier.PRO) -> ToolContext:
    return ToolContext(tenant_id="t1", plan=plan, chatbot_id="bot1", conversation_id="s1")


def _executor(registry, llm, **kwargs) -> AgentExecutor:
    return AgentExecutor(make_provider(llm), registry, **kwargs)


# ── TestRunLoop ──────────────────────────────────────────────────────


class TestRunLoop:
    """The happy paths through think → act → observe → synthesize."""

    def test_tool_call_completes_task(self, registry, payment_handler):
        llm = make_mock_llm(_use("create_payment_link", {"amount": 500, "description": "Consulta"}))
        result = _executor(registry, llm).run("Genera un link de pago por $500", _ctx())

        assert result.success
        assert result.stop_reason == "complete"
        assert result.tools_used == ["create_payment_link"]
        assert result.iterations == 1
        assert "https://buy.stripe.com/abc" in result.content
        assert not result.fatal
        payment_handler.assert_called_once()
        assert llm.invoke.call_count == 1

    def test_respond_asks_model_for_answer(self, registry):
        llm = make_mock_llm(_decision("respond"), "¡Hola! ¿En qué te ayudo?")
        result = _executor(registry, llm).run("hola", _ctx())

        assert result.success
        assert result.content == "¡Hola! ¿En qué te ayudo?"
        assert result.tools_used == []
        assert llm.invoke.call_count == 2

    def test_missing_tool_name_triggers_tool_selection(self, registry, payment_handler):
        llm = make_mock_llm(
            _decision("use_tool"),
            _use("create_payment_link", {"amount": 100, "description": "x"}),
        )
        result = _executor(registry, llm).run("cóbrale 100 pesos", _ctx())

        assert result.tools_used == ["create_payment_link"]
        assert llm.invoke.call_count == 2

    def test_model_provenance_is_reported(self, registry):
        llm = make_mock_llm(_use("create_payment_link", {"amount": 5, "description": "x"}))
        result = _executor(registry, llm).run("link de pago", _ctx())
        assert result.model == "claude-sonnet-4-5"
        assert result.provider == "anthropic"
        assert not result.used_fallback


# ── TestLoopBounds ───────────────────────────────────────────────────


class TestLoopBounds:
    def test_stops_at_iteration_budget(self, registry, list_handler):
        llm = make_mock_llm(_use("list_reminders"))
        result = _executor(registry, llm).run("hola", _ctx())

        assert result.stop_reason == "max_iterations"
        assert result.iterations == 3
        assert result.tools_used == ["list_reminders"] * 3
        assert result.success
        assert list_handler.call_count == 3
        assert llm.invoke.call_count == 3

    def test_low_confidence_exits_before_acting(self, registry, payment_handler):
        llm = make_mock_llm(_use("create_payment_link", confidence=0.2))
        result = _executor(registry, llm).run("mmm", _ctx())

        assert result.stop_reason == "low_confidence"
        assert result.content == NO_RESULT_MESSAGE
        assert not result.success
        assert not result.fatal
        payment_handler.assert_not_called()

    def test_deadline_stops_loop(self, registry):
        llm = make_mock_llm(_use("list_reminders"))
        result = _executor(registry, llm).run("hola", _ctx(), timeout_seconds=0)

        assert result.stop_reason == "timeout"
        assert result.iterations == 0
        llm.invoke.assert_not_called()


# ── TestFallbacks ────────────────────────────────────────────────────


class TestFallbacks:
    def test_unparsable_decision_uses_keyword_fallback(self, registry, payment_handler):
        llm = make_mock_llm("Claro, voy a generar el link.")
        result = _executor(registry, llm).run("Necesito un link de pago de $250", _ctx())

        assert result.tools_used == ["create_payment_link"]
        args = payment_handler.call_args[0][0]
        assert args["amount"] == 250.0
        assert args["currency"] == "mxn"

    def test_fallback_without_matching_tool_still_answers(self, registry):
        llm = make_mock_llm("no es JSON", "Con gusto te ayudo")
        result = _executor(registry, llm).run("cuéntame un chiste", _ctx())

        assert result.success
        assert result.content == "Con gusto te ayudo"

    def test_plan_gated_tool_answers_with_upgrade(self, registry, payment_handler):
        llm = make_mock_llm(_use("create_payment_link", {"amount": 5, "description": "x"}))
        result = _executor(registry, llm).run("link de pago", _ctx(plan=PlanTier.FREE))

        assert result.success
        assert result.stop_reason == "complete"
        assert "plan superior" in result.content
        assert "FREE" in result.content
        assert result.tools_used == []
        payment_handler.assert_not_called()

    def test_unknown_tool_is_observed_as_failure(self, registry):
        llm = make_mock_llm(
            _use("send_fax"),
            _decision("respond"),
            "No puedo enviar faxes, pero puedo ayudarte con otra cosa.",
        )
        result = _executor(registry, llm).run("manda un fax", _ctx())

        assert result.success
        assert result.iterations == 2
        assert result.content.startswith("No puedo enviar faxes")

    def test_respond_falls_back_to_planned_answer(self, registry):
        llm = make_mock_llm(
            _decision("respond", response="Abrimos de 9 a 18 h."),
            RuntimeError("overloaded"),
        )
        result = _executor(registry, llm).run("¿a qué hora abren?", _ctx())

        assert result.success
        assert result.content == "Abrimos de 9 a 18 h."


# ── TestProviderFailures ─────────────────────────────────────────────


class TestProviderFailures:
    def test_first_iteration_failure_is_fatal(self, registry):
        llm = make_mock_llm(RuntimeError("down"))
        result = _executor(registry, llm).run("link de pago", _ctx())

        assert result.fatal
        assert not result.success
        assert result.stop_reason == "provider_error"
        assert result.error == "RuntimeError"
        assert result.content == GENERIC_ERROR_MESSAGE

    def test_later_failure_synthesizes_from_memory(self, registry):
        llm = make_mock_llm(_use("list_reminders"), RuntimeError("down"))
        result = _executor(registry, llm).run("hola", _ctx())

        assert not result.fatal
        assert result.success
        assert result.stop_reason == "provider_error"
        assert result.iterations == 2
        assert result.content == "📅 Tienes 1 recordatorio pendiente"

    def test_fallback_model_is_used(self, registry):
        primary = make_mock_llm(RuntimeError("down"))
        secondary = make_mock_llm(_use("create_payment_link", {"amount": 5, "description": "x"}))
        executor = AgentExecutor(make_provider(primary, secondary), registry)

        result = executor.run("link de pago", _ctx())

        assert result.success
        assert result.used_fallback

    def test_crash_after_tool_keeps_its_output(self, registry, list_handler):
        policy = MagicMock()
        policy.is_complete.side_effect = RuntimeError("bug")
        llm = make_mock_llm(_use("list_reminders"))

        result = _executor(registry, llm, completion_policy=policy).run("hola", _ctx())

        assert not result.fatal
        assert result.success
        assert result.stop_reason == "error"
        assert result.error == "RuntimeError"
        assert result.tools_used == ["list_reminders"]
        assert result.content == "📅 Tienes 1 recordatorio pendiente"
        list_handler.assert_called_once()

    def test_crash_before_any_memory_is_fatal(self, registry, monkeypatch):
        monkeypatch.setattr(registry, "lookup", MagicMock(side_effect=RuntimeError("bug")))
        llm = make_mock_llm(_use("list_reminders"))

        result = _executor(registry, llm).run("hola", _ctx())

        assert result.fatal
        assert not result.success
        assert result.stop_reason == "error"
        assert result.content == GENERIC_ERROR_MESSAGE
        assert result.tools_used == []


# ── TestStream ───────────────────────────────────────────────────────


class TestStream:
    def test_tool_run_events(self, registry):
        llm = make_mock_llm(_use("create_payment_link", {"amount": 5, "description": "x"}))
        events = list(_executor(registry, llm).stream("link de pago", _ctx()))

        assert [e.type for e in events] == ["thinking", "thinking", "tool-start", "chunk", "done"]
        assert events[1].content == "Voy a usar create_payment_link"
        assert events[2].tool == "create_payment_link"
        assert "https://buy.stripe.com/abc" in events[3].content
        assert events[-1].metadata["tools_used"] == ["create_payment_link"]
        assert events[-1].metadata["success"] is True

    def test_respond_streams_model_chunks(self, registry):
        llm = make_mock_llm(_decision("respond"), stream_chunks=["Hola", ", ¿qué tal?"])
        events = list(_executor(registry, llm).stream("hola", _ctx()))

        chunks = [e.content for e in events if e.type == "chunk"]
        assert chunks == ["Hola", ", ¿qué tal?"]
        assert events[-1].type == "done"
        assert events[-1].metadata["stop_reason"] == "complete"

    def test_streaming_off_sends_one_chunk(self, registry):
        llm = make_mock_llm(
            _decision("respond"), "Hola, ¿qué tal?", stream_chunks=["Hola", ", ¿qué tal?"],
        )
        events = list(_executor(registry, llm).stream("hola", _ctx(), streaming=False))

        chunks = [e.content for e in events if e.type == "chunk"]
        assert chunks == ["Hola, ¿qué tal?"]
        llm.stream.assert_not_called()

    def test_fatal_failure_emits_error_then_done(self, registry):
        llm = make_mock_llm(RuntimeError("down"))
        events = list(_executor(registry, llm).stream("link de pago", _ctx()))

        assert [e.type for e in events] == ["thinking", "error", "done"]
        assert events[1].content == GENERIC_ERROR_MESSAGE
        assert events[-1].metadata["success"] is False

    def test_sse_serialisation(self, registry):
        llm = make_mock_llm(RuntimeError("down"))
        last = list(_executor(registry, llm).stream("x", _ctx()))[-1]
        line = last.to_sse()
        assert line.startswith("data: {")
        assert line.endswith("\n\n")
