"""Lead capture: ``save_contact_info`` upserts a contact per chatbot.

A contact is matched by email when one is given, otherwise by name
(case-insensitive).  Fields the user did not repeat are kept from the
existing record, so sharing a phone number later in the conversation
enriches the lead instead of wiping it.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, replace
from typing import Any, Protocol

from orchestrator.models import PlanTier, ToolContext, ToolDefinition, ToolResult
from orchestrator.tools.validation import validate_email

logger = logging.getLogger(__name__)

CONTACT_FIELDS = ("name", "email", "phone", "company", "position", "website", "notes")


@dataclass(frozen=True)
class Contact:
    id: str
    chatbot_id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    website: str | None = None
    notes: str | None = None
    conversation_id: str | None = None


class ContactStore(Protocol):
    def find(self, chatbot_id: str, *, email: str | None, name: str | None) -> Contact | None: ...

    def save(self, contact: Contact) -> Contact: ...


class InMemoryContactStore:
    """Thread-safe dict-backed ``ContactStore``."""

    def __init__(self) -> None:
        self._contacts: dict[str, Contact] = {}
        self._lock = threading.Lock()

    def find(self, chatbot_id, *, email, name):
        with self._lock:
            candidates = [c for c in self._contacts.values() if c.chatbot_id == chatbot_id]
        if email:
            return next((c for c in candidates if (c.email or "").lower() == email.lower()), None)
        if name:
            return next((c for c in candidates if (c.name or "").lower() == name.lower()), None)
        return None

    def save(self, contact):
        with self._lock:
            self._contacts[contact.id] = contact
        return contact

    def all(self) -> list[Contact]:
        with self._lock:
            return list(self._contacts.values())


CONTACT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "Nombre completo de la persona"},
        "email": {"type": "string", "description": "Dirección de correo electrónico"},
        "phone": {"type": "string", "description": "Número de teléfono"},
        "company": {"type": "string", "description": "Nombre de la empresa u organización"},
        "position": {"type": "string", "description": "Cargo o posición en la empresa"},
        "website": {"type": "string", "description": "Sitio web de la persona o empresa"},
        "notes": {"type": "string", "description": "Notas adicionales sobre el contacto"},
    },
    # At least one of name/email is enforced by the handler
    "required": [],
}


def make_save_contact_info(store: ContactStore):
    def save_contact_info(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        values = {
            f: str(tool_input[f]).strip()
            for f in CONTACT_FIELDS
            if tool_input.get(f) and str(tool_input[f]).strip()
        }
        name, email = values.get("name"), values.get("email")
        if not name and not email:
            return ToolResult.fail("Se requiere al menos un nombre o email para guardar el contacto.")
        if email and validate_email(email):
            return ToolResult.fail("El formato del email no es válido.")

        chatbot_id = context.chatbot_id or context.tenant_id
        existing = store.find(chatbot_id, email=email, name=None if email else name)

        if existing is not None:
            contact = store.save(replace(existing, **values))
            logger.info("Contact %s updated for chatbot %s", contact.id, chatbot_id)
            return ToolResult.ok(
                f"✅ Información de contacto actualizada: {contact.name or contact.email}",
                data={"contact": asdict(contact), "created": False},
            )

        contact = store.save(Contact(
            id=uuid.uuid4().hex[:12],
            chatbot_id=chatbot_id,
            conversation_id=context.conversation_id,
            **values,
        ))
        logger.info("Contact %s created for chatbot %s", contact.id, chatbot_id)
        thanks = f"Gracias {contact.name}" if contact.name else "Gracias"
        return ToolResult.ok(
            f"✅ Nuevo contacto guardado: {contact.name or contact.email}. "
            f"{thanks} por compartir tus datos; estaremos en contacto pronto.",
            data={"contact": asdict(contact), "created": True},
        )

    return save_contact_info


def contact_tools(store: ContactStore) -> list[ToolDefinition]:
    return [
        ToolDefinition(
            name="save_contact_info",
            description=(
                "Guardar información de contacto de leads/prospectos que proporcionen "
                "sus datos durante la conversación"
            ),
            input_schema=CONTACT_SCHEMA,
            handler=make_save_contact_info(store),
            required_plans=frozenset({
                PlanTier.STARTER, PlanTier.PRO, PlanTier.ENTERPRISE, PlanTier.TRIAL,
            }),
        ),
    ]
