"""LangGraph-based ReAct executor.

Architecture:
  One run answers one user message with a bounded think → act → observe
  loop, built as a LangGraph StateGraph with four nodes:

    1. **think**      asks the model for a JSON step decision (use a tool,
                      respond, or retry).  Unparsable replies fall back to a
                      deterministic keyword decision.
    2. **act**        carries the decision out: dispatches a tool through the
                      registry, or has the model write the answer.
    3. **observe**    records the outcome in the run memory and decides
                      whether the task is complete.
    4. **synthesize** the single exit; turns the memory into the reply.

  Routing:
    think → (stopped?)  → synthesize
          → act → (provider failed?) → synthesize
                → observe → (complete or out of budget?) → synthesize
                          → think (loop)

  Budget:
    ``max_iterations`` THINK cycles (3–7, 8 for ENTERPRISE, capped by the
    model's own ceiling) and a wall-clock deadline.  When either runs out
    the loop stops and synthesizes from what it has.

  Failures:
    A provider failure, or an unexpected exception inside a node, ends the
    loop with ``stop_reason`` ``provider_error`` / ``error``.  With nothing
    in memory yet it is the only user-visible error (a short Spanish
    message); otherwise the reply is synthesized from the earlier
    iterations.

Memory is per run; nothing is shared between runs except the compiled
graph, the provider and the registry, all of which are safe to share.
"""

from __future__ import annotations

import logging
import operator
import time
from collections.abc import Iterator, Sequence
from typing import Annotated, Any

from langchain_core.messages import HumanMessage, SystemMessage
from langgraph.config import get_stream_writer
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from orchestrator.config import AGENT_TIMEOUT_SECONDS, LOW_CONFIDENCE_EXIT, RAG_TOP_K, get_model_config
from orchestrator.models import (
    AgentEvent,
    AgentObservation,
    AgentRunResult,
    AgentThought,
    MemoryEntry,
    NextAction,
    ResponseAction,
    RetryAction,
    ToolCallAction,
    ToolContext,
    ToolDefinition,
)
from orchestrator.prompts import (
    FALLBACK_RESPONSE,
    GENERIC_ERROR_MESSAGE,
    NO_TOOL_CHOSEN_MESSAGE,
    build_response_prompt,
    build_thinking_prompt,
    build_tool_execution_prompt,
    generate_tool_guidance,
    get_system_prompt,
    integration_required_message,
    plan_upgrade_message,
    user_facing_error,
)
from orchestrator.reasoning import (
    CompletionPolicy,
    DecisionParseError,
    LexicalCompletionPolicy,
    StepDecision,
    explain_reasoning,
    fallback_decision,
    fallback_tool_args,
    max_iterations_for,
    parse_step_decision,
    synthesize_response,
)
from orchestrator.services.collaborators import (
    ContextRetriever,
    NullRetriever,
    format_knowledge,
    retrieve_knowledge,
)
from orchestrator.services.llm import Completion, LLMProvider, build_provider
from orchestrator.tools.registry import LookupStatus, ToolRegistry

logger = logging.getLogger(__name__)


# ── State schema ─────────────────────────────────────────────────────


class RunState(TypedDict, total=False):
    """The state that flows through the graph for one run.

    ``memory`` uses an additive reducer so ``observe`` appends one entry
    per iteration without rewriting the list.  Everything else is
    overwritten by whichever node returns it.
    """

    # inputs
    message: str
    context: ToolContext
    tools: list[ToolDefinition]
    knowledge: str
    max_iterations: int
    deadline: float
    streaming: bool

    # loop
    iteration: int
    thought: AgentThought | None
    action: Any
    memory: Annotated[list[MemoryEntry], operator.add]
    stop_reason: str | None
    error_type: str | None
    response_streamed: bool

    # provenance of the last model call
    model: str | None
    provider: str | None
    used_fallback: bool

    # output
    result: AgentRunResult


def _provenance(completion: Completion) -> dict:
    return {
        "model": completion.model,
        "provider": completion.provider,
        "used_fallback": completion.used_fallback,
    }


_THOUGHT_LABELS = {
    NextAction.USE_TOOL: "Voy a usar una herramienta",
    NextAction.RESPOND: "Voy a responder",
    NextAction.RETRY: "Voy a intentarlo de otra forma",
}


def _thought_from(decision: StepDecision, source: str) -> AgentThought:
    if decision.action is NextAction.USE_TOOL and decision.tool_name:
        content = decision.response or f"Voy a usar {decision.tool_name}"
    else:
        content = decision.response or _THOUGHT_LABELS[decision.action]
    return AgentThought(
        content=content,
        confidence=decision.confidence,
        reasoning=decision.reasoning or explain_reasoning(decision),
        next_action=decision.action,
        decision=decision,
        source=source,
    )


def _tools_used(memory: Sequence[MemoryEntry]) -> list[str]:
    return [m.action.tool for m in memory if isinstance(m.action, ToolCallAction)]


def _guarded(name: str, node):
    """Turn an exception escaping *node* into an ``error`` stop."""

    def guarded_node(state: RunState) -> dict:
        try:
            return node(state)
        except Exception as exc:
            logger.exception("%s crashed on iteration %d", name.upper(), state.get("iteration", 0))
            return {"stop_reason": "error", "error_type": type(exc).__name__}

    return guarded_node


class AgentExecutor:
    """Runs the ReAct loop for one message at a time.  Safe to share across threads."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        *,
        retriever: ContextRetriever | None = None,
        completion_policy: CompletionPolicy | None = None,
        low_confidence_exit: float = LOW_CONFIDENCE_EXIT,
        timeout_seconds: float = AGENT_TIMEOUT_SECONDS,
        agent_name: str = "Asistente",
    ) -> None:
        self.provider = provider
        self.registry = registry
        self._retriever = retriever or NullRetriever()
        self._completion = completion_policy or LexicalCompletionPolicy()
        self._low_confidence_exit = low_confidence_exit
        self._timeout_seconds = timeout_seconds
        self._agent_name = agent_name
        self._graph = self._build_graph()

    # ── Prompt helpers ───────────────────────────────────────────────

    def _system(self, state: RunState, knowledge: str = "") -> SystemMessage:
        guidance = generate_tool_guidance(t.name for t in state["tools"])
        return SystemMessage(content=get_system_prompt(self._agent_name, guidance, knowledge))

    def _ask_for_decision(self, state: RunState, prompt: str, operation: str):
        """Return ``(StepDecision | None, source, completion)``; None when the model failed."""
        completion = self.provider.complete(
            [self._system(state), HumanMessage(content=prompt)], operation=operation,
        )
        if not completion.ok:
            return None, "model", completion
        parsed = parse_step_decision(completion.content)
        if isinstance(parsed, DecisionParseError):
            logger.info("Step decision unparsable (%s), using keyword fallback", parsed.reason)
            offered = {t.name for t in state["tools"]}
            return fallback_decision(state["message"], offered), "fallback", completion
        return parsed, "model", completion

    # ── Node: think ──────────────────────────────────────────────────

    def _make_think_node(self):
        def think_node(state: RunState) -> dict:
            iteration = state.get("iteration", 0)
            if time.monotonic() >= state["deadline"]:
                logger.warning("Agent deadline reached after %d iterations", iteration)
                return {"stop_reason": "timeout"}

            iteration += 1
            prompt = build_thinking_prompt(
                state["message"], state["tools"], state.get("memory", []), state.get("knowledge", ""),
            )
            decision, source, completion = self._ask_for_decision(
                state, prompt, f"think_{iteration}",
            )
            if decision is None:
                logger.warning(
                    "THINK failed on iteration %d (%s)", iteration, completion.error_type,
                )
                return {
                    "iteration": iteration,
                    "stop_reason": "provider_error",
                    "error_type": completion.error_type,
                    **_provenance(completion),
                }

            thought = _thought_from(decision, source)
            logger.debug(
                "Iteration %d/%d — %s (confidence %.2f, %s)",
                iteration, state["max_iterations"], thought.next_action.value,
                thought.confidence, source,
            )
            update: dict = {"iteration": iteration, "thought": thought, **_provenance(completion)}
            if thought.confidence < self._low_confidence_exit:
                logger.info("Low confidence (%.2f), ending loop", thought.confidence)
                update["stop_reason"] = "low_confidence"
            return update

        return think_node

    # ── Node: act ────────────────────────────────────────────────────

    def _resolve_tool_call(self, state: RunState, decision: StepDecision) -> StepDecision | None:
        """Make sure the decision names a tool, asking the model again if needed."""
        if decision.tool_name:
            return decision
        prompt = build_tool_execution_prompt(state["message"], state["tools"], state.get("memory", []))
        second, _, completion = self._ask_for_decision(state, prompt, "select_tool")
        if second is None:
            raise _ProviderFailure(completion)
        return second if second.tool_name else None

    def _call_tool(self, state: RunState, decision: StepDecision):
        context = state["context"]
        name = decision.tool_name
        found = self.registry.lookup(name, context.plan, context.active_integrations)

        if found.status is LookupStatus.PLAN_REQUIRED:
            logger.info("Model asked for %s on plan %s, answering with upgrade", name, context.plan.value)
            return ResponseAction(plan_upgrade_message(name, context.plan))
        if found.status is LookupStatus.INTEGRATION_REQUIRED:
            return ResponseAction(integration_required_message(name, found.missing_integrations))
        if not found.available or name not in {t.name for t in state["tools"]}:
            logger.warning("Model asked for unavailable tool %r (%s)", name, found.status.value)
            return ToolCallAction(
                tool=name, input=decision.args,
                content=f"Error: Herramienta {name} no disponible", success=False,
            )

        args = decision.args or fallback_tool_args(name, state["message"])
        get_stream_writer()(AgentEvent.tool_start(name))
        result = self.registry.dispatch(name, args, context)
        content = result.message if result.success else f"❌ {result.message}"
        return ToolCallAction(
            tool=name, input=args, content=content, success=result.success, data=result.data,
        )

    def _respond(self, state: RunState, thought: AgentThought):
        knowledge = state.get("knowledge", "")
        messages = [
            self._system(state, knowledge),
            HumanMessage(content=build_response_prompt(state["message"], state.get("memory", []))),
        ]
        if not state.get("streaming"):
            completion = self.provider.complete(messages, operation="respond")
            streamed = False
        else:
            writer = get_stream_writer()
            completion = None
            for item in self.provider.stream(messages, operation="respond"):
                if isinstance(item, Completion):
                    completion = item
                else:
                    writer(AgentEvent.chunk(item))
            streamed = bool(completion and completion.content)

        if completion.ok or completion.content:
            return ResponseAction(completion.content), completion, streamed

        # The THINK reply may already carry a usable answer
        planned = thought.decision.response if thought.decision else None
        if planned and planned != FALLBACK_RESPONSE:
            return ResponseAction(planned), completion, False
        raise _ProviderFailure(completion)

    def _make_act_node(self):
        def act_node(state: RunState) -> dict:
            thought = state["thought"]
            decision: StepDecision = thought.decision
            try:
                if thought.next_action is NextAction.USE_TOOL:
                    resolved = self._resolve_tool_call(state, decision)
                    if resolved is None:
                        return {"action": ResponseAction(NO_TOOL_CHOSEN_MESSAGE)}
                    return {"action": self._call_tool(state, resolved)}

                if thought.next_action is NextAction.RESPOND:
                    action, completion, streamed = self._respond(state, thought)
                    return {"action": action, "response_streamed": streamed, **_provenance(completion)}

                return {"action": RetryAction(thought.reasoning)}

            except _ProviderFailure as failure:
                logger.warning(
                    "ACT failed on iteration %d (%s)", state["iteration"], failure.completion.error_type,
                )
                return {
                    "action": None,
                    "stop_reason": "provider_error",
                    "error_type": failure.completion.error_type,
                    **_provenance(failure.completion),
                }

        return act_node

    # ── Node: observe ────────────────────────────────────────────────

    def _make_observe_node(self):
        def observe_node(state: RunState) -> dict:
            action = state["action"]
            update: dict = {}
            if isinstance(action, ResponseAction):
                observation = AgentObservation(success=True, content=action.content, is_complete=True)
            elif isinstance(action, ToolCallAction):
                complete = False
                if action.success:
                    try:
                        complete = self._completion.is_complete(action.content)
                    except Exception as exc:
                        # Keep the tool output; the run ends here
                        logger.exception("Completion check failed after %s", action.tool)
                        update.update(stop_reason="error", error_type=type(exc).__name__)
                observation = AgentObservation(
                    success=action.success, content=action.content, is_complete=complete,
                )
            else:
                observation = AgentObservation(success=False, content=action.reason, is_complete=False)

            update["memory"] = [
                MemoryEntry(
                    thought=state["thought"],
                    action=action,
                    observation=observation,
                    iteration=state["iteration"],
                )
            ]
            if update.get("stop_reason"):
                return update
            if observation.is_complete:
                update["stop_reason"] = "complete"
            elif state["iteration"] >= state["max_iterations"]:
                logger.info("Iteration budget (%d) exhausted", state["max_iterations"])
                update["stop_reason"] = "max_iterations"
            return update

        return observe_node

    # ── Node: synthesize ─────────────────────────────────────────────

    def _make_synthesize_node(self):
        def synthesize_node(state: RunState) -> dict:
            memory = state.get("memory", [])
            stop_reason = state.get("stop_reason") or "max_iterations"
            error_type = state.get("error_type")

            fatal = stop_reason in ("provider_error", "error") and not memory
            if fatal:
                content, success = user_facing_error(error_type), False
            elif stop_reason == "complete":
                content, success = synthesize_response(memory), True
            else:
                content = synthesize_response(memory)
                success = any(m.observation.success for m in memory)

            result = AgentRunResult(
                content=content,
                tools_used=_tools_used(memory),
                iterations=state.get("iteration", 0),
                success=success,
                error=error_type,
                model=state.get("model") or self.provider.model,
                provider=state.get("provider") or self.provider.primary.provider,
                used_fallback=state.get("used_fallback", False),
                stop_reason=stop_reason,
                fatal=fatal,
            )
            logger.info(
                "Agent run finished: %s after %d iterations (tools=%s, success=%s)",
                stop_reason, result.iterations, ",".join(result.tools_used) or "-", success,
            )
            return {"result": result}

        return synthesize_node

    # ── Conditional edges ────────────────────────────────────────────

    @staticmethod
    def _after_think(state: RunState) -> str:
        return "synthesize" if state.get("stop_reason") else "act"

    @staticmethod
    def _after_act(state: RunState) -> str:
        return "synthesize" if state.get("stop_reason") else "observe"

    @staticmethod
    def _after_observe(state: RunState) -> str:
        return "synthesize" if state.get("stop_reason") else "think"

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(RunState)
        graph.add_node("think", _guarded("think", self._make_think_node()))
        graph.add_node("act", _guarded("act", self._make_act_node()))
        graph.add_node("observe", _guarded("observe", self._make_observe_node()))
        graph.add_node("synthesize", self._make_synthesize_node())

        graph.set_entry_point("think")
        graph.add_conditional_edges(
            "think", self._after_think, {"act": "act", "synthesize": "synthesize"},
        )
        graph.add_conditional_edges(
            "act", self._after_act, {"observe": "observe", "synthesize": "synthesize"},
        )
        graph.add_conditional_edges(
            "observe", self._after_observe, {"think": "think", "synthesize": "synthesize"},
        )
        graph.add_edge("synthesize", END)
        return graph.compile()

    # ── Entry points ─────────────────────────────────────────────────

    def _initial_state(
        self,
        message: str,
        context: ToolContext,
        tools: Sequence[ToolDefinition] | None,
        timeout_seconds: float | None,
        streaming: bool,
    ) -> RunState:
        if tools is None:
            tools = self.registry.list_available(
                context.plan, context.active_integrations, self.provider.supports_tools,
            )
        model_ceiling = get_model_config(self.provider.model)["max_iterations"]
        knowledge = format_knowledge(
            retrieve_knowledge(self._retriever, message, context.tenant_id, RAG_TOP_K)
        )
        timeout = self._timeout_seconds if timeout_seconds is None else timeout_seconds
        return {
            "message": message,
            "context": context,
            "tools": list(tools),
            "knowledge": knowledge,
            "max_iterations": max_iterations_for(message, context.plan, model_ceiling),
            "deadline": time.monotonic() + timeout,
            "streaming": streaming,
            "iteration": 0,
            "memory": [],
            "stop_reason": None,
            "error_type": None,
            "response_streamed": False,
            "used_fallback": False,
        }

    @staticmethod
    def _config(state: RunState) -> dict:
        # think + act + observe per iteration, plus synthesize
        return {"recursion_limit": state["max_iterations"] * 3 + 5}

    def _failed_run(self, exc: Exception, iterations: int = 0) -> AgentRunResult:
        return AgentRunResult(
            content=GENERIC_ERROR_MESSAGE,
            tools_used=[],
            iterations=iterations,
            success=False,
            error=type(exc).__name__,
            model=self.provider.model,
            provider=self.provider.primary.provider,
            stop_reason="error",
            fatal=True,
        )

    def run(
        self,
        message: str,
        context: ToolContext,
        tools: Sequence[ToolDefinition] | None = None,
        timeout_seconds: float | None = None,
    ) -> AgentRunResult:
        """Answer *message* for *context*.  Never raises."""
        state = self._initial_state(message, context, tools, timeout_seconds, streaming=False)
        logger.debug(
            "Starting agent loop for %r (max %d iterations, %d tools)",
            message[:50], state["max_iterations"], len(state["tools"]),
        )
        try:
            final = self._graph.invoke(state, config=self._config(state))
        except Exception as exc:
            logger.exception("Agent run crashed")
            return self._failed_run(exc)
        return final["result"]

    def stream(
        self,
        message: str,
        context: ToolContext,
        tools: Sequence[ToolDefinition] | None = None,
        timeout_seconds: float | None = None,
        *,
        streaming: bool = True,
    ) -> Iterator[AgentEvent]:
        """Like ``run`` but yields ``AgentEvent``s as the loop progresses.

        With ``streaming`` off the final answer arrives as a single
        ``chunk``.  The last event is always ``done`` (or ``error``
        followed by ``done``).
        """
        state = self._initial_state(message, context, tools, timeout_seconds, streaming=streaming)
        yield AgentEvent.thinking()

        result: AgentRunResult | None = None
        streamed = False
        try:
            for mode, chunk in self._graph.stream(
                state, config=self._config(state), stream_mode=["updates", "custom"],
            ):
                if mode == "custom":
                    yield chunk
                    continue
                for node, update in chunk.items():
                    if node == "think" and update and update.get("thought"):
                        yield AgentEvent.thinking(update["thought"].content)
                    elif node == "act" and update and update.get("response_streamed"):
                        streamed = True
                    elif node == "synthesize":
                        result = update["result"]
        except Exception as exc:
            logger.exception("Agent stream crashed")
            result = self._failed_run(exc)

        if result.fatal:
            yield AgentEvent.error(result.content, detail=result.error)
        elif not streamed:
            yield AgentEvent.chunk(result.content)
        yield AgentEvent.done(_result_metadata(result))


def _result_metadata(result: AgentRunResult) -> dict:
    return {
        "tools_used": result.tools_used,
        "iterations": result.iterations,
        "success": result.success,
        "model": result.model,
        "provider": result.provider,
        "used_fallback": result.used_fallback,
        "stop_reason": result.stop_reason,
    }


class _ProviderFailure(Exception):
    """Internal signal: a model call inside ACT failed after retries and fallback."""

    def __init__(self, completion: Completion) -> None:
        super().__init__(completion.error or "provider failure")
        self.completion = completion


# ── Builder ──────────────────────────────────────────────────────────


def create_agent_executor(
    registry: ToolRegistry,
    *,
    retriever: ContextRetriever | None = None,
    provider: LLMProvider | None = None,
) -> AgentExecutor:
    """Build an executor over the configured primary/fallback models."""
    provider = provider or build_provider()
    executor = AgentExecutor(provider, registry, retriever=retriever)
    logger.debug(
        "Agent executor ready — model: %s, tools: %d", provider.model, len(registry),
    )
    return executor
