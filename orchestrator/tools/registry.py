"""Plan-gated catalog of the side-effecting tools an agent may call.

The catalog is built once at process start from ``ToolDefinition``
entries and never mutated afterwards; switching a tool off is a config
flip (``DISABLED_TOOLS``), applied when the registry is constructed.

Three operations:

* ``list_available`` — the tools a tenant may be *offered*, given its plan,
  its active integrations and whether the chosen model supports tool use.
* ``lookup`` — a typed answer to "can this tenant call tool X?", with an
  explicit status instead of an exception for the not-found case.
* ``dispatch`` — run a tool.  Never raises: every failure (unknown tool,
  missing entitlement, missing input, handler fault) comes back as a
  ``ToolResult`` with ``success=False``.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from orchestrator.models import PlanTier, ToolContext, ToolDefinition, ToolResult
from orchestrator.prompts import (
    integration_required_message,
    plan_upgrade_message,
    tool_failure_message,
)
from orchestrator.services.metrics import MetricsClient, metrics

logger = logging.getLogger(__name__)


class LookupStatus(str, Enum):
    AVAILABLE = "available"
    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    PLAN_REQUIRED = "plan_required"
    INTEGRATION_REQUIRED = "integration_required"


@dataclass(frozen=True)
class ToolLookup:
    status: LookupStatus
    definition: ToolDefinition | None = None
    missing_integrations: frozenset[str] = frozenset()

    @property
    def available(self) -> bool:
        return self.status is LookupStatus.AVAILABLE


class ToolRegistry:
    """Immutable name → ``ToolDefinition`` table with entitlement checks."""

    def __init__(
        self,
        definitions: Iterable[ToolDefinition],
        *,
        disabled: Iterable[str] = (),
        metrics_client: MetricsClient | None = None,
    ) -> None:
        disabled = set(disabled)
        tools: dict[str, ToolDefinition] = {}
        for definition in definitions:
            if definition.name in tools:
                raise ValueError(f"Duplicate tool name in registry: {definition.name!r}")
            if definition.name in disabled:
                definition = dataclasses.replace(definition, enabled=False)
            tools[definition.name] = definition

        unknown = disabled - tools.keys()
        if unknown:
            logger.warning("DISABLED_TOOLS names unknown tools: %s", ", ".join(sorted(unknown)))

        self._tools = tools
        self._metrics = metrics_client or metrics
        logger.debug(
            "Tool registry ready — %d tools (%d disabled)",
            len(tools), sum(not t.enabled for t in tools.values()),
        )

    # ── Introspection ────────────────────────────────────────────────

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    # ── Entitlements ─────────────────────────────────────────────────

    def list_available(
        self,
        plan: PlanTier | str,
        active_integrations: Iterable[str] = (),
        model_supports_tools: bool = True,
    ) -> list[ToolDefinition]:
        """Tools this tenant may be offered, in registration order."""
        if not model_supports_tools:
            return []
        plan = PlanTier.parse(plan)
        integrations = frozenset(active_integrations)
        return [
            t for t in self._tools.values()
            if t.enabled
            and plan in t.required_plans
            and t.required_integrations <= integrations
        ]

    def lookup(
        self,
        name: str,
        plan: PlanTier | str,
        active_integrations: Iterable[str] = (),
    ) -> ToolLookup:
        definition = self._tools.get(name)
        if definition is None:
            return ToolLookup(LookupStatus.NOT_FOUND)
        if not definition.enabled:
            return ToolLookup(LookupStatus.DISABLED, definition)
        if PlanTier.parse(plan) not in definition.required_plans:
            return ToolLookup(LookupStatus.PLAN_REQUIRED, definition)
        missing = definition.required_integrations - frozenset(active_integrations)
        if missing:
            return ToolLookup(LookupStatus.INTEGRATION_REQUIRED, definition, frozenset(missing))
        return ToolLookup(LookupStatus.AVAILABLE, definition)

    # ── Execution ────────────────────────────────────────────────────

    def dispatch(
        self,
        name: str,
        tool_input: dict[str, Any] | None,
        context: ToolContext,
    ) -> ToolResult:
        """Run tool *name* for *context*.  Never raises."""
        found = self.lookup(name, context.plan, context.active_integrations)

        if found.status is LookupStatus.NOT_FOUND:
            logger.warning("Dispatch of unknown tool %r (tenant %s)", name, context.tenant_id)
            return ToolResult.fail(f"Herramienta no encontrada: {name}")
        if found.status is LookupStatus.DISABLED:
            return ToolResult.fail(f"Herramienta deshabilitada: {name}")
        if found.status is LookupStatus.PLAN_REQUIRED:
            logger.info("Tool %s refused for plan %s", name, context.plan.value)
            return ToolResult.fail(
                plan_upgrade_message(name, context.plan), data={"reason": "plan_required"},
            )
        if found.status is LookupStatus.INTEGRATION_REQUIRED:
            return ToolResult.fail(
                integration_required_message(name, found.missing_integrations),
                data={"reason": "integration_required"},
            )

        definition = found.definition
        tool_input = dict(tool_input or {})
        missing = [f for f in definition.required_fields if tool_input.get(f) in (None, "")]
        if missing:
            return ToolResult.fail(
                f"Faltan datos para {name}: {', '.join(missing)}",
                data={"reason": "missing_input", "fields": missing},
            )

        t0 = time.perf_counter()
        try:
            result = definition.handler(tool_input, context)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_failure(
                "tool", name, error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.exception("Tool %s raised for tenant %s", name, context.tenant_id)
            return ToolResult.fail(tool_failure_message(name), data={"reason": "handler_error"})

        elapsed = (time.perf_counter() - t0) * 1000
        if not isinstance(result, ToolResult):
            logger.error("Tool %s returned %s instead of ToolResult", name, type(result).__name__)
            self._metrics.record_failure("tool", name, error_type="BadResult", latency_ms=elapsed)
            return ToolResult.fail(f"Error al ejecutar {name}: respuesta inválida")

        if result.success:
            self._metrics.record_success("tool", name, latency_ms=elapsed)
        else:
            self._metrics.record_failure("tool", name, error_type="ToolFailed", latency_ms=elapsed)
        logger.debug("Tool %s → success=%s (%.0fms)", name, result.success, elapsed)
        return result

    # ── Prompt support ───────────────────────────────────────────────

    @staticmethod
    def describe(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
        """Name/description/schema dicts, the shape LLM tool APIs expect."""
        return [
            {"name": t.name, "description": t.description, "input_schema": dict(t.input_schema)}
            for t in tools
        ]
