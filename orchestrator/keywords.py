"""Keyword families used to spot tool intent without calling a model.

The families are intentionally small and Spanish-first (the chatbots
serve LATAM tenants) with a handful of English equivalents.  Matching is
done on a normalised form of the message: lower-cased, accents stripped,
and bounded by non-word characters so ``"soy"`` does not fire on
``"soyuz"``.  A trailing plural (``s``/``es``) is tolerated.

These tables are shared by the decision engine (phase 1 scoring) and the
executor's deterministic fallback when the model's step decision cannot be
parsed.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

ReminderIntentType = Literal["create", "list", "update", "delete", "none"]


def normalize(text: str) -> str:
    """Lower-case *text* and strip diacritics (``"Recuérdame"`` → ``"recuerdame"``)."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _normalized_family(words: Iterable[str]) -> tuple[str, ...]:
    # dict.fromkeys keeps order and drops accent-only duplicates
    return tuple(dict.fromkeys(normalize(w) for w in words))


def contains_phrase(normalized_text: str, phrase: str) -> bool:
    """Whole-word containment check on already-normalised text (plurals allowed)."""
    pattern = rf"(?<!\w){re.escape(phrase)}(?:s|es)?(?!\w)"
    return re.search(pattern, normalized_text) is not None


def find_phrases(normalized_text: str, phrases: Iterable[str]) -> list[str]:
    return [p for p in phrases if contains_phrase(normalized_text, p)]


# ── Payments ─────────────────────────────────────────────────────────

PAYMENT_KEYWORDS = _normalized_family([
    "link de pago", "payment link", "generar pago", "crear cobro",
    "stripe", "factura", "invoice", "checkout",
])

AMOUNT_PATTERNS = (
    re.compile(r"\$\s?\d+"),
    re.compile(r"\d+\s*(pesos|dolares|usd|mxn)", re.IGNORECASE),
    re.compile(r"\d+\s*\$$"),
)

COMMERCIAL_PHRASES = _normalized_family([
    "quiero contratar", "necesito pagar", "como puedo pagar",
    "proceder con el pago", "generar link", "crear link",
])

# ── Contact capture ──────────────────────────────────────────────────

CONTACT_PATTERNS = (
    re.compile(r"mi nombre es\s+\w+", re.IGNORECASE),
    re.compile(r"\bsoy\s+[\w\s]+\s+(de|en)\s+\w+", re.IGNORECASE),
    re.compile(r"mi (email|correo) es\s+[\w.+-]+@[\w.-]+", re.IGNORECASE),
    re.compile(r"trabajo en\s+\w+", re.IGNORECASE),
    re.compile(r"\bempresa\s+\w+", re.IGNORECASE),
    re.compile(r"mi telefono es\s+[\d\s()+-]{7,}", re.IGNORECASE),
)

CONTACT_KEYWORDS = _normalized_family([
    "mi nombre", "me llamo", "soy", "trabajo en", "empresa",
    "mi email", "mi correo", "mi teléfono", "contactarme",
])

# ── Reminders ────────────────────────────────────────────────────────

REMINDER_CREATE_KEYWORDS = _normalized_family([
    "agenda", "envíame recordatorio", "envíame un recordatorio",
    "mándame recordatorio", "ponme recordatorio", "recuérdame", "recordame",
    "avísame", "notifícame", "programa recordatorio", "crea recordatorio",
])

REMINDER_LIST_KEYWORDS = _normalized_family([
    "qué recordatorios tengo", "mis recordatorios", "mis citas",
    "recordatorios pendientes", "lista de recordatorios", "ver recordatorios",
    "consultar recordatorios", "mostrar recordatorios", "tengo recordatorios",
    "recordatorios programados", "cuántos recordatorios", "qué recordatorios",
    "listar recordatorios", "todos los recordatorios", "próximos recordatorios",
    "agenda actual", "cuáles son mis", "ver agenda", "mi agenda", "mostrar agenda",
    "agenda programada",
])

REMINDER_UPDATE_KEYWORDS = _normalized_family([
    "actualizar recordatorio", "cambiar recordatorio", "modificar recordatorio",
    "editar recordatorio", "cambiar fecha", "cambiar hora", "mover recordatorio",
])

REMINDER_CANCEL_KEYWORDS = _normalized_family([
    "cancelar recordatorio", "eliminar recordatorio", "borrar recordatorio",
    "quitar recordatorio", "delete recordatorio", "elimina el", "borra el",
])

REMINDER_CONTEXT_KEYWORDS = _normalized_family([
    "recordatorio", "cita", "calendario", "agenda", "avisar",
])

# Broader scheduling vocabulary checked during contextual analysis
SCHEDULING_KEYWORDS = _normalized_family([
    "agendar", "agendar cita", "calendario", "schedule", "recordatorio",
    "cita para", "reunión", "programar", "programé", "recordar",
])
HIGH_CONFIDENCE_SCHEDULING = REMINDER_CREATE_KEYWORDS

_REMINDER_FAMILY_SCORES: tuple[tuple[ReminderIntentType, tuple[str, ...], int], ...] = (
    ("create", REMINDER_CREATE_KEYWORDS, 60),
    ("list", REMINDER_LIST_KEYWORDS, 70),
    ("update", REMINDER_UPDATE_KEYWORDS, 55),
    ("delete", REMINDER_CANCEL_KEYWORDS, 60),
)

# More specific families win when several match ("elimina el recordatorio de mi agenda")
_REMINDER_PRECEDENCE: tuple[ReminderIntentType, ...] = ("delete", "update", "list", "create")

REMINDER_KEYWORD_THRESHOLD = 50

INTENT_TOOLS: dict[str, str] = {
    "create": "schedule_reminder",
    "list": "list_reminders",
    "update": "update_reminder",
    "delete": "cancel_reminder",
}


@dataclass(frozen=True)
class ReminderIntent:
    """Answer to "is this message about reminders, and which kind?".

    ``confidence`` is 0..1 regardless of whether it came from the
    classifier model or from keyword matching.
    """

    intent: ReminderIntentType
    confidence: float
    suggested_tool: str | None = None
    keywords: tuple[str, ...] = ()
    source: Literal["llm", "keywords"] = "keywords"

    @property
    def is_reminder(self) -> bool:
        return self.intent != "none"


def detect_reminder_intent(message: str) -> ReminderIntent:
    """Score *message* against the reminder keyword families.

    Each matched create phrase adds 60, list 70, update 55, cancel 60 and
    each scheduling context word 10.  The result counts as a reminder
    intent when the total reaches 50; the confidence is the total capped at
    100, scaled to 0..1.
    """
    text = normalize(message)
    score = 0
    matched: list[str] = []
    families_hit: set[str] = set()

    for intent, family, weight in _REMINDER_FAMILY_SCORES:
        hits = find_phrases(text, family)
        if hits:
            families_hit.add(intent)
            matched.extend(hits)
            score += weight * len(hits)

    context_hits = find_phrases(text, REMINDER_CONTEXT_KEYWORDS)
    matched.extend(context_hits)
    score += 10 * len(context_hits)

    if score < REMINDER_KEYWORD_THRESHOLD or not families_hit:
        return ReminderIntent(
            intent="none",
            confidence=min(score, 100) / 100,
            keywords=tuple(dict.fromkeys(matched)),
        )

    intent = next(i for i in _REMINDER_PRECEDENCE if i in families_hit)
    return ReminderIntent(
        intent=intent,
        confidence=min(score, 100) / 100,
        suggested_tool=INTENT_TOOLS[intent],
        keywords=tuple(dict.fromkeys(matched)),
    )


# ── Executor fallback table ──────────────────────────────────────────

# Checked in order; the list family must precede schedule so "ver mis
# recordatorios" is not read as a request to create one.
FALLBACK_TOOL_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("list_reminders", _normalized_family([
        "ver recordatorios", "mis recordatorios", "mostrar agenda", "mi agenda",
        "mis citas", "qué recordatorios",
    ])),
    ("cancel_reminder", REMINDER_CANCEL_KEYWORDS),
    ("schedule_reminder", _normalized_family([
        "recordatorio", "recordarme", "recuérdame", "agendar", "agenda",
    ])),
    ("create_payment_link", _normalized_family([
        "pago", "cobrar", "link de pago", "stripe", "factura",
    ])),
    ("save_contact_info", _normalized_family([
        "me llamo", "mi nombre es", "mi email", "mi correo", "mi teléfono",
    ])),
)

COMPLEX_WORDS = _normalized_family([
    "crear", "generar", "analizar", "comparar", "explicar", "calcular",
    "buscar", "encontrar", "lista", "pasos", "proceso", "cómo", "por qué",
])

COMPLEXITY_TOOL_WORDS = _normalized_family([
    "pago", "recordatorio", "agenda", "email", "contacto", "cobrar",
])
