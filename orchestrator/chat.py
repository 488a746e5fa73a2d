"""Top-level chat wiring: decision engine → fast reply or agent loop.

Every inbound message is scored by the ``DecisionEngine`` first.  When it
does not need tools, a cheap conversational model answers directly (the
fast path).  Otherwise the ``AgentExecutor`` runs the ReAct loop against
the tenant's tool set.  ``PerformanceMonitor`` follows each request
end to end without influencing either path.

Conversation history is kept per session in memory so follow-up messages
("¿y mañana?") reach the conversational model with context.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict, deque
from collections.abc import Iterator
from dataclasses import dataclass, field

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from orchestrator.agent import AgentExecutor, create_agent_executor
from orchestrator.config import DEFAULT_TENANT_PLAN, FAST_MODEL_NAME, RAG_TOP_K
from orchestrator.models import AgentEvent, PlanTier, ToolContext
from orchestrator.prompts import get_system_prompt, user_facing_error
from orchestrator.services.collaborators import (
    ContextRetriever,
    InMemoryTenantDirectory,
    NullRetriever,
    TenantDirectory,
    format_knowledge,
    retrieve_knowledge,
)
from orchestrator.services.decision_engine import DecisionContext, DecisionEngine
from orchestrator.services.intent_classifier import build_intent_classifier
from orchestrator.services.llm import Completion, LLMProvider, build_provider
from orchestrator.services.telemetry import PerformanceMonitor
from orchestrator.tools.catalog import build_registry

logger = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 12
MAX_SESSIONS = 10_000


@dataclass(frozen=True)
class ChatTurn:
    message: str
    session_id: str
    tenant_id: str
    chatbot_id: str | None = None
    user_id: str | None = None
    plan: PlanTier | str | None = None  # overrides the tenant directory
    request_id: str | None = None


@dataclass
class ChatReply:
    content: str
    session_id: str
    request_id: str
    success: bool = True
    tools_used: list[str] = field(default_factory=list)
    iterations: int = 0
    needs_tools: bool = False
    confidence: int = 0
    model: str | None = None


class ConversationHistory:
    """Bounded per-session message history (oldest sessions evicted first)."""

    def __init__(self, max_messages: int = MAX_HISTORY_MESSAGES, max_sessions: int = MAX_SESSIONS):
        self._max_messages = max_messages
        self._max_sessions = max_sessions
        self._sessions: OrderedDict[str, deque[BaseMessage]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, session_id: str) -> list[BaseMessage]:
        with self._lock:
            return list(self._sessions.get(session_id, ()))

    def append(self, session_id: str, user_text: str, reply_text: str) -> None:
        with self._lock:
            history = self._sessions.pop(session_id, None) or deque(maxlen=self._max_messages)
            history.append(HumanMessage(content=user_text))
            history.append(AIMessage(content=reply_text))
            self._sessions[session_id] = history
            while len(self._sessions) > self._max_sessions:
                self._sessions.popitem(last=False)


class ChatOrchestrator:
    """Handles one chat turn at a time; safe to share across request threads."""

    def __init__(
        self,
        engine: DecisionEngine,
        executor: AgentExecutor,
        conversational: LLMProvider,
        monitor: PerformanceMonitor,
        *,
        tenants: TenantDirectory | None = None,
        retriever: ContextRetriever | None = None,
        history: ConversationHistory | None = None,
    ) -> None:
        self.engine = engine
        self.executor = executor
        self.conversational = conversational
        self.monitor = monitor
        self.tenants = tenants or InMemoryTenantDirectory()
        self._retriever = retriever or NullRetriever()
        self.history = history or ConversationHistory()

    # ── Shared setup ─────────────────────────────────────────────────

    def _prepare(self, turn: ChatTurn) -> tuple[str, ToolContext]:
        request_id = self.monitor.start_request(
            tenant_id=turn.tenant_id,
            chatbot_id=turn.chatbot_id,
            session_id=turn.session_id,
            request_id=turn.request_id,
        )
        plan = PlanTier.parse(turn.plan) if turn.plan else self.tenants.get_plan(turn.tenant_id)
        context = ToolContext(
            tenant_id=turn.tenant_id,
            plan=plan,
            user_id=turn.user_id,
            chatbot_id=turn.chatbot_id,
            conversation_id=turn.session_id,
            message=turn.message,
            integrations=self.tenants.get_active_integrations(turn.tenant_id),
        )
        return request_id, context

    def _decide(self, request_id: str, turn: ChatTurn, context: ToolContext):
        decision, cache_hit = self.engine.evaluate(
            turn.message,
            DecisionContext(
                tenant_id=context.tenant_id,
                plan=context.plan,
                chatbot_id=context.chatbot_id,
                integrations=context.active_integrations,
                model_supports_tools=self.executor.provider.supports_tools,
            ),
        )
        self.monitor.log_decision(request_id, decision, cache_hit=cache_hit)
        return decision

    def _conversational_messages(self, turn: ChatTurn) -> list[BaseMessage]:
        knowledge = format_knowledge(
            retrieve_knowledge(self._retriever, turn.message, turn.tenant_id, RAG_TOP_K)
        )
        return [
            SystemMessage(content=get_system_prompt(knowledge=knowledge)),
            *self.history.get(turn.session_id),
            HumanMessage(content=turn.message),
        ]

    def _log_model(self, request_id: str, completion: Completion, *, streaming: bool) -> None:
        self.monitor.log_model(
            request_id,
            requested=self.conversational.model,
            used=completion.model,
            provider=completion.provider,
            used_fallback=completion.used_fallback,
            streaming=streaming,
        )

    # ── Entry points ─────────────────────────────────────────────────

    def handle(self, turn: ChatTurn) -> ChatReply:
        request_id, context = self._prepare(turn)
        error_type: str | None = None
        try:
            decision = self._decide(request_id, turn, context)

            if decision.needs_tools:
                result = self.executor.run(turn.message, context)
                self.monitor.log_tools(request_id, result.tools_used)
                self.monitor.log_model(
                    request_id,
                    requested=self.executor.provider.model,
                    used=result.model,
                    provider=result.provider,
                    used_fallback=result.used_fallback,
                )
                if not result.success:
                    error_type = result.error or result.stop_reason
                reply = ChatReply(
                    content=result.content,
                    session_id=turn.session_id,
                    request_id=request_id,
                    success=result.success,
                    tools_used=result.tools_used,
                    iterations=result.iterations,
                    needs_tools=True,
                    confidence=decision.confidence,
                    model=result.model,
                )
            else:
                completion = self.conversational.complete(
                    self._conversational_messages(turn), operation="chat",
                )
                self._log_model(request_id, completion, streaming=False)
                if not completion.ok:
                    error_type = completion.error_type
                reply = ChatReply(
                    content=completion.content if completion.ok else user_facing_error(error_type),
                    session_id=turn.session_id,
                    request_id=request_id,
                    success=completion.ok,
                    confidence=decision.confidence,
                    model=completion.model,
                )
        except Exception as exc:
            error_type = type(exc).__name__
            raise
        finally:
            self.monitor.end_request(request_id, error_type=error_type)

        if reply.success:
            self.history.append(turn.session_id, turn.message, reply.content)
        return reply

    def stream(self, turn: ChatTurn) -> Iterator[AgentEvent]:
        """Yield ``AgentEvent``s for *turn*; the last one is always ``done``."""
        request_id, context = self._prepare(turn)
        error_type: str | None = None
        parts: list[str] = []
        try:
            decision = self._decide(request_id, turn, context)

            if decision.needs_tools:
                for event in self.executor.stream(
                    turn.message, context, streaming=decision.should_stream,
                ):
                    if event.type == "chunk":
                        self.monitor.log_first_token(request_id)
                        parts.append(event.content or "")
                    elif event.type == "error":
                        error_type = event.detail or "AgentError"
                    elif event.type == "done":
                        meta = event.metadata or {}
                        self.monitor.log_tools(request_id, meta.get("tools_used", []))
                        self.monitor.log_model(
                            request_id,
                            requested=self.executor.provider.model,
                            used=meta.get("model"),
                            provider=meta.get("provider"),
                            used_fallback=bool(meta.get("used_fallback")),
                            streaming=decision.should_stream,
                        )
                        event.metadata = {**meta, "request_id": request_id}
                    yield event
                return

            yield AgentEvent.thinking()
            completion: Completion | None = None
            for item in self.conversational.stream(
                self._conversational_messages(turn), operation="chat_stream",
            ):
                if isinstance(item, Completion):
                    completion = item
                    continue
                self.monitor.log_first_token(request_id)
                parts.append(item)
                yield AgentEvent.chunk(item)

            self._log_model(request_id, completion, streaming=True)
            if not completion.ok and not completion.content:
                error_type = completion.error_type
                yield AgentEvent.error(user_facing_error(error_type), detail=error_type)
            yield AgentEvent.done({
                "request_id": request_id,
                "tools_used": [],
                "iterations": 0,
                "success": error_type is None,
                "model": completion.model,
            })
        except Exception as exc:
            error_type = type(exc).__name__
            raise
        finally:
            self.monitor.end_request(request_id, error_type=error_type)
            if error_type is None and parts:
                self.history.append(turn.session_id, turn.message, "".join(parts))


# ── Builder ──────────────────────────────────────────────────────────


def create_chat_orchestrator(
    *,
    tenants: TenantDirectory | None = None,
    retriever: ContextRetriever | None = None,
    monitor: PerformanceMonitor | None = None,
) -> ChatOrchestrator:
    """Build the orchestrator with every collaborator wired from config."""
    monitor = monitor or PerformanceMonitor()
    registry = build_registry(monitor=monitor)
    engine = DecisionEngine(classifier=build_intent_classifier())
    executor = create_agent_executor(registry, retriever=retriever)
    conversational = build_provider(FAST_MODEL_NAME, fallback_model_name=None)
    logger.debug(
        "Chat orchestrator ready — agent: %s, conversational: %s, default plan: %s",
        executor.provider.model, FAST_MODEL_NAME, DEFAULT_TENANT_PLAN,
    )
    return ChatOrchestrator(
        engine, executor, conversational, monitor, tenants=tenants, retriever=retriever,
    )
