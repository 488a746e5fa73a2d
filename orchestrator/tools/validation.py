"""Input checks shared by the tool handlers.

Each validator returns a Spanish error message the model can relay to the
user, or ``None`` when the value is acceptable.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time

# RFC 5322-ish pattern; covers the vast majority of real-world emails
# without requiring an external dependency.
EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def validate_email(email: str | None) -> str | None:
    """Return an error message if *email* looks invalid, else ``None``."""
    if not email or not email.strip():
        return "No se proporcionó un email. Pide al usuario su correo electrónico."
    email = email.strip()
    if not EMAIL_RE.match(email):
        return (
            f'"{email}" no parece un email válido. '
            "Pide al usuario que lo revise y lo proporcione de nuevo."
        )
    return None


def parse_date(value: str) -> date | None:
    """Parse ``YYYY-MM-DD``; ``None`` if malformed."""
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None


def parse_time(value: str) -> time | None:
    """Parse ``HH:MM`` (24h); ``None`` if malformed."""
    try:
        return datetime.strptime(str(value).strip(), "%H:%M").time()
    except ValueError:
        return None
