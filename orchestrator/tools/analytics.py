"""Analytics tool: usage summary for the calling tenant."""

from __future__ import annotations

import logging
from typing import Any

from orchestrator.models import PlanTier, ToolContext, ToolDefinition, ToolResult
from orchestrator.services.telemetry import PERIOD_SECONDS, PerformanceMonitor

logger = logging.getLogger(__name__)

_PERIOD_LABELS = {"day": "las últimas 24 horas", "week": "la última semana", "month": "el último mes"}

STATS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "period": {
            "type": "string",
            "enum": list(PERIOD_SECONDS),
            "description": "Período de análisis (default: 'week')",
        },
    },
    "required": [],
}


def _format_summary(summary: dict[str, Any]) -> str:
    label = _PERIOD_LABELS[summary["period"]]
    if not summary["total_requests"]:
        return f"📊 No hay actividad registrada en {label}."

    lines = [
        f"📊 Estadísticas de {label}:",
        f"• Mensajes atendidos: {summary['total_requests']}",
        f"• Conversaciones: {summary['conversations']}",
        f"• Tiempo de respuesta promedio: {summary['avg_response_ms']} ms",
        f"• Uso de herramientas: {summary['tool_usage_rate']:.0%}",
        f"• Tasa de error: {summary['error_rate']:.0%}",
    ]
    if summary["top_tools"]:
        top = ", ".join(f"{t['tool']} ({t['count']})" for t in summary["top_tools"])
        lines.append(f"• Herramientas más usadas: {top}")
    return "\n".join(lines)


def make_get_chatbot_stats(monitor: PerformanceMonitor):
    def get_chatbot_stats(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        period = str(tool_input.get("period") or "week").lower()
        if period not in PERIOD_SECONDS:
            return ToolResult.fail(
                f"Período no válido: {period}. Usa {', '.join(PERIOD_SECONDS)}."
            )
        summary = monitor.tenant_summary(context.tenant_id, period)
        logger.debug("Stats for tenant %s (%s): %s", context.tenant_id, period, summary)
        return ToolResult.ok(_format_summary(summary), data=summary)

    return get_chatbot_stats


def analytics_tools(monitor: PerformanceMonitor) -> list[ToolDefinition]:
    return [
        ToolDefinition(
            name="get_chatbot_stats",
            description=(
                "Obtener estadísticas de uso del chatbot (mensajes, conversaciones, "
                "tiempos de respuesta y herramientas usadas)"
            ),
            input_schema=STATS_SCHEMA,
            handler=make_get_chatbot_stats(monitor),
            required_plans=frozenset({PlanTier.PRO, PlanTier.ENTERPRISE, PlanTier.TRIAL}),
        ),
    ]
