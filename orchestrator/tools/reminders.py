"""Reminder tools: schedule, list, update, cancel (soft) and delete (hard).

The tools talk to a ``ReminderStore``.  The production store belongs to
the platform's persistence layer; ``InMemoryReminderStore`` is the bundled
implementation used by the CLI, local development and the tests.

``schedule_reminder`` is idempotent: scheduling the same title at the same
time for the same chatbot returns the existing reminder instead of a
duplicate, so a retried tool call is harmless.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal, Protocol
from zoneinfo import ZoneInfo

from orchestrator.config import DEFAULT_TIMEZONE
from orchestrator.models import PlanTier, ToolContext, ToolDefinition, ToolResult
from orchestrator.tools.validation import parse_date, parse_time, validate_email

logger = logging.getLogger(__name__)

MAX_LISTED = 10
REMINDER_PLANS = frozenset({PlanTier.PRO, PlanTier.ENTERPRISE, PlanTier.TRIAL})

ReminderStatus = Literal["pending", "cancelled", "sent"]


@dataclass(frozen=True)
class Reminder:
    id: str
    chatbot_id: str
    title: str
    run_at: datetime
    email: str | None = None
    status: ReminderStatus = "pending"
    created_at: datetime = field(default_factory=lambda: datetime.now(ZoneInfo("UTC")))


class ReminderStore(Protocol):
    """Persistence seam for reminders, scoped per chatbot."""

    def create(
        self, chatbot_id: str, title: str, run_at: datetime, email: str | None,
    ) -> tuple[Reminder, bool]:
        """Return ``(reminder, created)``; ``created`` is False for a duplicate."""
        ...

    def list_pending(self, chatbot_id: str, after: datetime, limit: int) -> list[Reminder]: ...

    def get(self, chatbot_id: str, reminder_id: str) -> Reminder | None: ...

    def save(self, reminder: Reminder) -> Reminder: ...

    def delete(self, chatbot_id: str, reminder_id: str) -> bool: ...


class InMemoryReminderStore:
    """Thread-safe dict-backed ``ReminderStore``."""

    def __init__(self) -> None:
        self._reminders: dict[str, Reminder] = {}
        self._lock = threading.Lock()

    def create(self, chatbot_id, title, run_at, email):
        dedupe = (chatbot_id, title.strip().lower(), run_at)
        with self._lock:
            for existing in self._reminders.values():
                same = (existing.chatbot_id, existing.title.strip().lower(), existing.run_at)
                if same == dedupe and existing.status == "pending":
                    return existing, False
            reminder = Reminder(
                id=uuid.uuid4().hex[:12],
                chatbot_id=chatbot_id,
                title=title.strip(),
                run_at=run_at,
                email=email,
            )
            self._reminders[reminder.id] = reminder
            return reminder, True

    def list_pending(self, chatbot_id, after, limit):
        with self._lock:
            pending = [
                r for r in self._reminders.values()
                if r.chatbot_id == chatbot_id and r.status == "pending" and r.run_at >= after
            ]
        return sorted(pending, key=lambda r: r.run_at)[:limit]

    def get(self, chatbot_id, reminder_id):
        with self._lock:
            reminder = self._reminders.get(reminder_id)
        if reminder is None or reminder.chatbot_id != chatbot_id:
            return None
        return reminder

    def save(self, reminder):
        with self._lock:
            self._reminders[reminder.id] = reminder
        return reminder

    def delete(self, chatbot_id, reminder_id):
        with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is None or reminder.chatbot_id != chatbot_id:
                return False
            del self._reminders[reminder_id]
            return True


# ── Schemas ─────────────────────────────────────────────────────────

_ID_PROPERTY = {"type": "string", "description": "ID del recordatorio (obtenido con list_reminders)"}

SCHEDULE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "Título del recordatorio o cita"},
        "date": {"type": "string", "description": "Fecha en formato YYYY-MM-DD (ej: 2026-08-23)"},
        "time": {"type": "string", "description": "Hora en formato HH:MM (24 horas)"},
        "email": {
            "type": "string",
            "description": "Email para la notificación (OPCIONAL, solo si el usuario lo dio; NUNCA inventar)",
        },
    },
    "required": ["title", "date", "time"],
}

LIST_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}, "required": []}

UPDATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": _ID_PROPERTY,
        "title": {"type": "string", "description": "Nuevo título (opcional)"},
        "date": {"type": "string", "description": "Nueva fecha YYYY-MM-DD (opcional)"},
        "time": {"type": "string", "description": "Nueva hora HH:MM (opcional)"},
        "email": {"type": "string", "description": "Nuevo email para la notificación (opcional)"},
    },
    "required": ["id"],
}

ID_ONLY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"id": _ID_PROPERTY},
    "required": ["id"],
}


def _describe(reminder: Reminder) -> str:
    when = f"{reminder.run_at:%Y-%m-%d} a las {reminder.run_at:%H:%M}"
    to = f" · {reminder.email}" if reminder.email else ""
    return f'"{reminder.title}" el {when}{to}'


def _as_dict(reminder: Reminder) -> dict[str, Any]:
    return {
        "id": reminder.id,
        "title": reminder.title,
        "run_at": reminder.run_at.isoformat(),
        "email": reminder.email,
        "status": reminder.status,
    }


# ── Handlers ────────────────────────────────────────────────────────


class ReminderTools:
    """Binds the reminder handlers to a store and a clock."""

    def __init__(
        self,
        store: ReminderStore,
        *,
        timezone: str = DEFAULT_TIMEZONE,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._tz = ZoneInfo(timezone)
        self._now = now or (lambda: datetime.now(self._tz))

    def _run_at(self, date_value: str, time_value: str) -> datetime | str:
        """Combine date + time in the tenant's zone, or return an error message."""
        day = parse_date(date_value)
        if day is None:
            return f"Fecha inválida: {date_value!r}. Usa el formato YYYY-MM-DD."
        at = parse_time(time_value)
        if at is None:
            return f"Hora inválida: {time_value!r}. Usa el formato HH:MM (24 horas)."
        run_at = datetime.combine(day, at, tzinfo=self._tz)
        if run_at <= self._now():
            return f"La fecha debe ser en el futuro. Fecha proporcionada: {run_at:%Y-%m-%d %H:%M}"
        return run_at

    @staticmethod
    def _chatbot(context: ToolContext) -> str:
        return context.chatbot_id or context.tenant_id

    def schedule(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        email = (tool_input.get("email") or "").strip() or None
        if email and (error := validate_email(email)):
            return ToolResult.fail(error)

        run_at = self._run_at(tool_input["date"], tool_input["time"])
        if isinstance(run_at, str):
            return ToolResult.fail(run_at)

        reminder, created = self._store.create(
            self._chatbot(context), str(tool_input["title"])[:200], run_at, email,
        )
        if not created:
            return ToolResult.ok(
                f"Ese recordatorio ya estaba programado: {_describe(reminder)} (ID: {reminder.id})",
                data={"reminder": _as_dict(reminder), "duplicate": True},
            )
        logger.info("Reminder %s scheduled for chatbot %s", reminder.id, reminder.chatbot_id)
        return ToolResult.ok(
            f"✅ Recordatorio programado: {_describe(reminder)} (ID: {reminder.id})",
            data={"reminder": _as_dict(reminder), "duplicate": False},
        )

    def list_upcoming(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        reminders = self._store.list_pending(self._chatbot(context), self._now(), MAX_LISTED)
        if not reminders:
            return ToolResult.ok(
                "📅 No tienes recordatorios programados para el futuro.",
                data={"reminders": []},
            )
        lines = [f"📅 Tienes {len(reminders)} recordatorio(s) programado(s):", ""]
        for i, reminder in enumerate(reminders, start=1):
            lines.append(f"{i}. {_describe(reminder)} (ID: {reminder.id})")
        return ToolResult.ok("\n".join(lines), data={"reminders": [_as_dict(r) for r in reminders]})

    def _pending(self, context: ToolContext, reminder_id: str) -> Reminder | None:
        reminder = self._store.get(self._chatbot(context), str(reminder_id))
        if reminder is None or reminder.status != "pending":
            return None
        return reminder

    def update(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        reminder = self._pending(context, tool_input["id"])
        if reminder is None:
            return ToolResult.fail(
                f"No se encontró el recordatorio con ID: {tool_input['id']} o ya fue procesado."
            )

        changes: dict[str, Any] = {}
        if tool_input.get("title"):
            changes["title"] = str(tool_input["title"]).strip()[:200]
        if tool_input.get("email"):
            if error := validate_email(tool_input["email"]):
                return ToolResult.fail(error)
            changes["email"] = tool_input["email"].strip()
        if tool_input.get("date") or tool_input.get("time"):
            run_at = self._run_at(
                tool_input.get("date") or f"{reminder.run_at:%Y-%m-%d}",
                tool_input.get("time") or f"{reminder.run_at:%H:%M}",
            )
            if isinstance(run_at, str):
                return ToolResult.fail(run_at)
            changes["run_at"] = run_at
        if not changes:
            return ToolResult.fail("No se indicó ningún cambio para el recordatorio.")

        updated = self._store.save(replace(reminder, **changes))
        return ToolResult.ok(
            f"✅ Recordatorio actualizado: {_describe(updated)}",
            data={"reminder": _as_dict(updated)},
        )

    def cancel(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        reminder = self._pending(context, tool_input["id"])
        if reminder is None:
            return ToolResult.fail(
                f"No se encontró el recordatorio con ID: {tool_input['id']} o ya fue procesado."
            )
        cancelled = self._store.save(replace(reminder, status="cancelled"))
        return ToolResult.ok(
            f"✅ Recordatorio cancelado: {_describe(cancelled)}",
            data={"reminder": _as_dict(cancelled)},
        )

    def delete(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        reminder = self._store.get(self._chatbot(context), str(tool_input["id"]))
        if reminder is None or not self._store.delete(reminder.chatbot_id, reminder.id):
            return ToolResult.fail(f"No se encontró el recordatorio con ID: {tool_input['id']}.")
        return ToolResult.ok(
            f"🗑️ Recordatorio eliminado permanentemente: {_describe(reminder)}",
            data={"reminder": _as_dict(reminder)},
        )

    def definitions(self) -> list[ToolDefinition]:
        def _tool(name: str, description: str, schema: dict, handler) -> ToolDefinition:
            return ToolDefinition(
                name=name,
                description=description,
                input_schema=schema,
                handler=handler,
                required_plans=REMINDER_PLANS,
            )

        return [
            _tool("schedule_reminder", "Crear un nuevo recordatorio o cita en el calendario",
                  SCHEDULE_SCHEMA, self.schedule),
            _tool("list_reminders", "Consultar los recordatorios pendientes del usuario",
                  LIST_SCHEMA, self.list_upcoming),
            _tool("update_reminder", "Modificar un recordatorio existente (fecha, hora, título, email)",
                  UPDATE_SCHEMA, self.update),
            _tool("cancel_reminder", "Cancelar un recordatorio (se conserva como 'cancelled')",
                  ID_ONLY_SCHEMA, self.cancel),
            _tool("delete_reminder", "Eliminar permanentemente un recordatorio",
                  ID_ONLY_SCHEMA, self.delete),
        ]


def reminder_tools(store: ReminderStore, **kwargs: Any) -> list[ToolDefinition]:
    return ReminderTools(store, **kwargs).definitions()
