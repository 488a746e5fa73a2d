"""Core value types shared by the registry, decision engine and executor.

Everything here is a plain, mostly immutable value.  Expected conditions
(tool not found, tool failed, model returned garbage) travel through these
types rather than as exceptions, so callers can branch on them without
``try`` blocks at every seam.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel


class PlanTier(str, Enum):
    """Subscription tier of a tenant.  Gates which tools are offered."""

    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"
    TRIAL = "TRIAL"

    @classmethod
    def parse(cls, value: str | PlanTier) -> PlanTier:
        """Normalise user/config input (``"pro"``, ``PlanTier.PRO``) to a member."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


# ── Tools ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolResult:
    """Outcome of a single tool invocation.  Never raised past the registry."""

    success: bool
    message: str
    data: dict[str, Any] | None = None

    @classmethod
    def ok(cls, message: str, data: dict[str, Any] | None = None) -> ToolResult:
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, data: dict[str, Any] | None = None) -> ToolResult:
        return cls(success=False, message=message, data=data)


@dataclass(frozen=True)
class ToolContext:
    """Who is calling a tool, and with which entitlements.

    ``integrations`` maps an integration key (``"stripe"``) to its
    tenant-specific settings (API keys, account ids).  It is wrapped in a
    read-only proxy so handlers cannot mutate shared tenant state.
    """

    tenant_id: str
    plan: PlanTier
    user_id: str | None = None
    chatbot_id: str | None = None
    conversation_id: str | None = None
    message: str = ""
    integrations: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "plan", PlanTier.parse(self.plan))
        object.__setattr__(self, "integrations", MappingProxyType(dict(self.integrations)))

    @property
    def active_integrations(self) -> frozenset[str]:
        return frozenset(self.integrations)


ToolHandler = Callable[[dict[str, Any], ToolContext], ToolResult]


@dataclass(frozen=True)
class ToolDefinition:
    """One entry of the tool catalog.

    Validated on construction: a malformed entry is a programmer error and
    must fail at process start, not on the first user request.
    """

    name: str
    description: str
    input_schema: Mapping[str, Any]
    handler: ToolHandler
    required_plans: frozenset[PlanTier]
    required_integrations: frozenset[str] = frozenset()
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Tool name must be a non-empty string")
        if not callable(self.handler):
            raise ValueError(f"Tool {self.name!r} has no callable handler")
        if self.input_schema.get("type") != "object":
            raise ValueError(f"Tool {self.name!r}: input_schema type must be 'object'")

        properties = self.input_schema.get("properties", {})
        if not isinstance(properties, Mapping):
            raise ValueError(f"Tool {self.name!r}: input_schema properties must be a mapping")
        missing = [f for f in self.input_schema.get("required", []) if f not in properties]
        if missing:
            raise ValueError(
                f"Tool {self.name!r}: required fields {missing} are not declared in properties"
            )

        object.__setattr__(
            self, "required_plans", frozenset(PlanTier.parse(p) for p in self.required_plans),
        )
        object.__setattr__(self, "required_integrations", frozenset(self.required_integrations))

    @property
    def required_fields(self) -> list[str]:
        return list(self.input_schema.get("required", []))


# ── Decision engine ──────────────────────────────────────────────────


@dataclass(frozen=True)
class Decision:
    """Whether a message needs tools, and how confident we are (0..100)."""

    needs_tools: bool
    confidence: int
    suggested_tools: tuple[str, ...]
    should_stream: bool
    reasoning: str
    detection_time_ms: float = 0.0


# ── Agent executor ───────────────────────────────────────────────────


class NextAction(str, Enum):
    USE_TOOL = "use_tool"
    RESPOND = "respond"
    RETRY = "retry"


@dataclass(frozen=True)
class AgentThought:
    content: str
    confidence: float
    reasoning: str
    next_action: NextAction
    decision: Any = None  # the StepDecision this thought was derived from
    source: Literal["model", "fallback"] = "model"


@dataclass(frozen=True)
class ToolCallAction:
    tool: str
    input: dict[str, Any]
    content: str
    success: bool
    data: dict[str, Any] | None = None
    kind: Literal["tool_call"] = field(default="tool_call", init=False)


@dataclass(frozen=True)
class ResponseAction:
    content: str
    kind: Literal["response"] = field(default="response", init=False)


@dataclass(frozen=True)
class RetryAction:
    reason: str
    kind: Literal["retry"] = field(default="retry", init=False)


AgentAction = ToolCallAction | ResponseAction | RetryAction


@dataclass(frozen=True)
class AgentObservation:
    success: bool
    content: str
    is_complete: bool


@dataclass(frozen=True)
class MemoryEntry:
    thought: AgentThought
    action: AgentAction
    observation: AgentObservation
    iteration: int
    timestamp: float = field(default_factory=time.time)


StopReason = Literal[
    "complete", "low_confidence", "max_iterations", "timeout", "provider_error", "error",
]


@dataclass
class AgentRunResult:
    content: str
    tools_used: list[str]
    iterations: int
    success: bool
    error: str | None = None
    model: str | None = None
    provider: str | None = None
    used_fallback: bool = False
    stop_reason: StopReason = "complete"
    # True when the run failed before producing anything and content is an error message
    fatal: bool = False


class AgentEvent(BaseModel):
    """Wire event emitted while an agent run streams.

    Serialised as one JSON object per SSE ``data:`` line.
    """

    type: Literal["thinking", "tool-start", "chunk", "done", "error"]
    content: str | None = None
    tool: str | None = None
    detail: str | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def thinking(cls, content: str | None = None) -> AgentEvent:
        return cls(type="thinking", content=content)

    @classmethod
    def tool_start(cls, tool: str) -> AgentEvent:
        return cls(type="tool-start", tool=tool)

    @classmethod
    def chunk(cls, content: str) -> AgentEvent:
        return cls(type="chunk", content=content)

    @classmethod
    def done(cls, metadata: dict[str, Any] | None = None) -> AgentEvent:
        return cls(type="done", metadata=metadata or {})

    @classmethod
    def error(cls, content: str, detail: str | None = None) -> AgentEvent:
        return cls(type="error", content=content, detail=detail)

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"
