"""Prompt templates and user-facing copy for the orchestrator.

Tenants' chatbots talk to Spanish-speaking end users, so every prompt and
every message that can reach a user is in Spanish.  Log lines and code
stay in English.

Three families live here:

* **Conversational** — system prompt for tool-free replies (fast path)
  and for the final ``respond`` step of the agent loop.
* **ReAct** — the THINK prompt (asks for a JSON step decision), the tool
  execution prompt (asks only for tool + args) and the response prompt.
* **Copy** — plan-upgrade and integration messages, and the short error
  messages shown when a run fails before producing anything useful.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

from orchestrator.models import MemoryEntry, PlanTier, ToolCallAction, ToolDefinition

# ── Conversational ───────────────────────────────────────────────────

SYSTEM_PROMPT_TEMPLATE = """Eres {agent_name}, el asistente virtual de este negocio.

## Fecha y hora actual
- Hoy es {current_day_of_week}, {current_date}.
- Hora actual (UTC): {current_time}.

## Estilo
- Responde en el idioma del usuario (por defecto, español), de forma cálida y concisa.
- No más de 2-3 párrafos cortos salvo que pidan detalle.
- Usa listas con viñetas para opciones.

## Reglas
- **NUNCA** inventes datos, precios, fechas ni enlaces. Usa solo la información
  del contexto o de las herramientas.
- **NUNCA** inventes emails o teléfonos que el usuario no haya proporcionado.
- Si no sabes algo, dilo y sugiere contactar directamente al negocio.
{tools_section}{knowledge_section}"""

_TOOLS_SECTION = "\n## Herramientas disponibles\n{guidance}\n"
_KNOWLEDGE_SECTION = (
    "\n## Información del negocio\n"
    "Usa estos fragmentos como referencia principal:\n\n---\n{knowledge}\n---\n"
)


def get_system_prompt(
    agent_name: str = "Asistente",
    tool_guidance: str = "",
    knowledge: str = "",
) -> str:
    """Build the conversational system prompt with the current date injected."""
    now = datetime.now(UTC)
    return SYSTEM_PROMPT_TEMPLATE.format(
        agent_name=agent_name,
        current_date=now.strftime("%Y-%m-%d"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
        tools_section=_TOOLS_SECTION.format(guidance=tool_guidance) if tool_guidance else "",
        knowledge_section=_KNOWLEDGE_SECTION.format(knowledge=knowledge) if knowledge else "",
    )


# ── Tool guidance per family ─────────────────────────────────────────

_REMINDER_TOOLS = (
    "schedule_reminder", "list_reminders", "update_reminder", "cancel_reminder", "delete_reminder",
)


def generate_tool_guidance(tool_names: Iterable[str]) -> str:
    """Short usage notes for each tool family the model can call."""
    names = set(tool_names)
    lines: list[str] = []

    if "create_payment_link" in names:
        lines.append(
            "- PAGOS: cuando el usuario pida pagar o un link de pago, usa "
            "`create_payment_link` de inmediato con amount, description y currency."
        )

    if names.intersection(_REMINDER_TOOLS):
        today = datetime.now(UTC).strftime("%Y-%m-%d")
        lines.append(f"- RECORDATORIOS (hoy es {today}, formato de fecha YYYY-MM-DD, hora HH:MM):")
        if "schedule_reminder" in names:
            lines.append("  - CREAR: `schedule_reminder` para 'agenda', 'recuérdame', 'avísame'.")
        if "list_reminders" in names:
            lines.append("  - CONSULTAR: `list_reminders` para '¿qué recordatorios tengo?', 'mis citas'.")
        if "update_reminder" in names:
            lines.append("  - ACTUALIZAR: primero `list_reminders`, copia el ID y usa `update_reminder`.")
        if "cancel_reminder" in names:
            lines.append("  - CANCELAR: primero `list_reminders`, copia el ID y usa `cancel_reminder`.")
        if "delete_reminder" in names:
            lines.append("  - ELIMINAR: `delete_reminder` borra el recordatorio de forma permanente.")

    if "save_contact_info" in names:
        lines.append(
            "- CONTACTO: cuando el usuario comparta su nombre, email o teléfono, "
            "guárdalo con `save_contact_info`. No pidas datos que ya dio."
        )

    if "get_chatbot_stats" in names:
        lines.append(
            "- ESTADÍSTICAS: `get_chatbot_stats` con period 'day', 'week' o 'month'."
        )

    return "\n".join(lines)


# ── ReAct prompts ────────────────────────────────────────────────────

_DECISION_FORMAT = """Responde EXACTAMENTE con un objeto JSON, sin texto adicional:
{
  "action": "use_tool" | "respond" | "retry",
  "tool_name": "nombre_exacto" (solo si action es use_tool),
  "args": {...} (solo si action es use_tool),
  "response": "tu respuesta" (solo si action es respond),
  "confidence": 0.1-1.0,
  "reasoning": "explicación breve"
}"""

_THINKING_RULES = """REGLAS:
- Si el usuario pide algo que una herramienta disponible resuelve, usa "use_tool".
- Si es una pregunta simple que no requiere herramientas, usa "respond".
- Si la iteración anterior falló, usa "retry" o prueba un enfoque diferente.
- Si una herramienta ya completó la tarea, usa "respond" para confirmarlo al usuario.
- Confidence alto (>0.8) para acciones claras, bajo (<0.5) si no estás seguro."""


def _format_tools(tools: Sequence[ToolDefinition]) -> str:
    if not tools:
        return "ninguna"
    return "\n".join(f"- {t.name}: {t.description}" for t in tools)


def format_memory(memory: Sequence[MemoryEntry], max_chars: int = 200) -> str:
    """Render the per-run memory as a numbered trace for the model."""
    lines = []
    for entry in memory:
        action = entry.action
        label = f"{action.kind} {action.tool}" if isinstance(action, ToolCallAction) else action.kind
        mark = "OK" if entry.observation.success else "FALLÓ"
        lines.append(
            f"{entry.iteration}. Pensé: {entry.thought.reasoning}\n"
            f"   Acción: {label}\n"
            f"   Resultado ({mark}): {entry.observation.content[:max_chars]}"
        )
    return "\n".join(lines)


def build_thinking_prompt(
    message: str,
    tools: Sequence[ToolDefinition],
    memory: Sequence[MemoryEntry] = (),
    knowledge: str = "",
) -> str:
    """THINK step: ask the model for a JSON step decision."""
    parts = [
        f'CONTEXTO:\nUsuario: "{message}"',
        f"Herramientas disponibles:\n{_format_tools(tools)}",
    ]
    if knowledge:
        parts.append(f"Información relevante del negocio:\n{knowledge}")
    if memory:
        parts.append(f"HISTORIAL PREVIO:\n{format_memory(memory)}")
    parts.append(f"DECISIÓN REQUERIDA:\nAnaliza la situación y decide qué hacer. {_DECISION_FORMAT}")
    parts.append(_THINKING_RULES)
    return "\n\n".join(parts)


def build_tool_execution_prompt(
    message: str,
    tools: Sequence[ToolDefinition],
    memory: Sequence[MemoryEntry] = (),
) -> str:
    """ACT step when THINK chose ``use_tool`` but named no tool."""
    parts = [
        f'El usuario solicitó: "{message}"',
        f"Herramientas disponibles:\n{_format_tools(tools)}",
    ]
    if memory:
        parts.append(f"Contexto previo: {memory[-1].thought.reasoning}")
    parts.append(
        "EJECUTAR HERRAMIENTA:\nDecide qué herramienta usar y con qué argumentos. "
        "Responde EXACTAMENTE en formato JSON:\n"
        '{"action": "use_tool", "tool_name": "nombre_exacto", "args": {...}, "confidence": 0.1-1.0}'
    )
    parts.append(
        "REGLAS IMPORTANTES:\n"
        '- Para recordatorios: "schedule_reminder" con title, date (YYYY-MM-DD), time (HH:MM)\n'
        '- Para ver recordatorios: "list_reminders" sin argumentos\n'
        '- Para pagos: "create_payment_link" con amount, description, currency\n'
        "- SIEMPRE usa nombres exactos de herramientas\n"
        "- Si no estás seguro, confidence < 0.5"
    )
    return "\n\n".join(parts)


def build_response_prompt(message: str, memory: Sequence[MemoryEntry] = ()) -> str:
    """``respond`` step: write the final answer from what the loop observed."""
    prompt = (
        "Basándote en esta conversación, genera una respuesta útil y directa:\n\n"
        f'Usuario: "{message}"\n'
    )
    observations = [m.observation.content for m in memory if m.observation.content]
    if observations:
        prompt += f"\nResultados previos: {'. '.join(observations)}\n"
    prompt += "\nResponde de forma natural. NO preguntes si quiere hacer algo más."
    return prompt


# ── Reminder intent classifier ───────────────────────────────────────

CLASSIFIER_PROMPT = """Clasifica la intención del mensaje respecto a RECORDATORIOS o CITAS.

Intenciones posibles:
- create: quiere programar un recordatorio o cita nueva
- list: quiere ver sus recordatorios o citas
- update: quiere cambiar fecha, hora o título de uno existente
- delete: quiere cancelar o borrar uno existente
- none: el mensaje no trata de recordatorios

Responde SOLO con JSON: {{"intent": "create|list|update|delete|none", "confidence": 0.0-1.0}}

Mensaje: "{message}"
"""


# ── User-facing copy ─────────────────────────────────────────────────

GENERIC_ERROR_MESSAGE = "Hubo un error al procesar tu mensaje, intenta de nuevo."
NO_RESULT_MESSAGE = "No pude procesar tu solicitud en este momento."
ACKNOWLEDGEMENT_MESSAGE = "He procesado tu solicitud."
FALLBACK_RESPONSE = "Entiendo tu consulta. Déjame procesarla..."
NO_TOOL_CHOSEN_MESSAGE = "No pude determinar qué herramienta usar."

_ERROR_MESSAGES = {
    "RateLimitError": "Estamos procesando muchas consultas. Intenta de nuevo en unos segundos.",
    "APITimeoutError": "La respuesta está tardando más de lo normal. Intenta de nuevo en un momento.",
    "TimeoutError": "La respuesta está tardando más de lo normal. Intenta de nuevo en un momento.",
    "NotFoundError": "El modelo de IA no está disponible en este momento. Contacta con soporte.",
}


def user_facing_error(error_type: str | None) -> str:
    """Short Spanish message for a failure class.  Never includes internals."""
    return _ERROR_MESSAGES.get(error_type or "", GENERIC_ERROR_MESSAGE)


_TOOL_LABELS = {
    "create_payment_link": "generar links de pago",
    "schedule_reminder": "programar recordatorios",
    "list_reminders": "consultar recordatorios",
    "update_reminder": "actualizar recordatorios",
    "cancel_reminder": "cancelar recordatorios",
    "delete_reminder": "eliminar recordatorios",
    "save_contact_info": "guardar datos de contacto",
    "get_chatbot_stats": "consultar estadísticas",
}


def tool_label(tool_name: str) -> str:
    return _TOOL_LABELS.get(tool_name, f"usar {tool_name}")


def plan_upgrade_message(tool_name: str, plan: PlanTier | str) -> str:
    plan_name = PlanTier.parse(plan).value
    return (
        f"Para {tool_label(tool_name)} necesitas un plan superior. "
        f"Tu plan actual ({plan_name}) no incluye esta función; "
        "puedes mejorarlo desde tu panel en la sección de Planes."
    )


def integration_required_message(tool_name: str, integrations: Iterable[str]) -> str:
    names = ", ".join(sorted(i.capitalize() for i in integrations))
    return (
        f"Para {tool_label(tool_name)} primero necesitas conectar {names}. "
        "Hazlo desde tu panel en la sección de Integraciones."
    )


def tool_failure_message(tool_name: str) -> str:
    return f"No pude {tool_label(tool_name)} en este momento, intenta de nuevo más tarde."
