"""Centralized configuration for the agent orchestration engine.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/agent-orchestrator/<VARIABLE_NAME>``.

Everything that tunes behaviour (decision thresholds, cache TTLs, per-model
retry budgets) lives here so it can be overridden per deployment without a
code change.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))

_SSM_PREFIX = "/agent-orchestrator"


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415  lazy, keeps boto3 out of module import

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"{_SSM_PREFIX}/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store {_SSM_PREFIX}/{name} (AWS)."
    )


def _optional_env(name: str, default: str = "") -> str:
    """Like ``_require_env`` but returns *default* instead of raising."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    return default


def _env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
FALLBACK_MODEL_NAME: str = os.getenv("FALLBACK_MODEL_NAME", "claude-haiku-4-5")

# Cheap models for intent classification and tool-free conversational replies
CLASSIFIER_MODEL_NAME: str = os.getenv("CLASSIFIER_MODEL_NAME", "claude-haiku-4-5")
FAST_MODEL_NAME: str = os.getenv("FAST_MODEL_NAME", "claude-haiku-4-5")

# Per-model tuning.  ``retry_attempts`` counts total tries (first call included).
MODEL_CONFIGS: dict[str, dict[str, Any]] = {
    "claude-opus-4-6": {
        "temperature": 0.2,
        "supports_tools": True,
        "max_iterations": 6,
        "retry_attempts": 2,
        "retry_base_delay": 1.5,
    },
    "claude-sonnet-4-5": {
        "temperature": 0.3,
        "supports_tools": True,
        "max_iterations": 6,
        "retry_attempts": 3,
        "retry_base_delay": 1.0,
    },
    "claude-haiku-4-5": {
        "temperature": 0.2,
        "supports_tools": True,
        "max_iterations": 5,
        "retry_attempts": 4,
        "retry_base_delay": 0.8,
    },
    # Legacy completion model kept for tenants still pinned to it
    "claude-2.1": {
        "temperature": 0.7,
        "supports_tools": False,
        "max_iterations": 4,
        "retry_attempts": 2,
        "retry_base_delay": 1.0,
    },
}

DEFAULT_MODEL_CONFIG: dict[str, Any] = {
    "temperature": 0.3,
    "supports_tools": True,
    "max_iterations": 5,
    "retry_attempts": 3,
    "retry_base_delay": 1.0,
}


def get_model_config(model: str) -> dict[str, Any]:
    """Return the tuning block for *model*, falling back to the defaults."""
    return {**DEFAULT_MODEL_CONFIG, **MODEL_CONFIGS.get(model, {})}


# ── Decision engine ─────────────────────────────────────────────────
DEEP_ANALYSIS_THRESHOLD: int = int(os.getenv("DEEP_ANALYSIS_THRESHOLD", "20"))
NEEDS_TOOLS_THRESHOLD: int = int(os.getenv("NEEDS_TOOLS_THRESHOLD", "60"))
NO_STREAM_THRESHOLD: int = int(os.getenv("NO_STREAM_THRESHOLD", "70"))
DECISION_CACHE_TTL_SECONDS: float = float(os.getenv("DECISION_CACHE_TTL_SECONDS", "300"))
DECISION_CACHE_MAX_ENTRIES: int = int(os.getenv("DECISION_CACHE_MAX_ENTRIES", "5000"))
CLASSIFIER_TIMEOUT_SECONDS: float = float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", "5"))

# ── Agent executor ──────────────────────────────────────────────────
LOW_CONFIDENCE_EXIT: float = float(os.getenv("LOW_CONFIDENCE_EXIT", "0.3"))
AGENT_TIMEOUT_SECONDS: float = float(os.getenv("AGENT_TIMEOUT_SECONDS", "45"))
RAG_TOP_K: int = int(os.getenv("RAG_TOP_K", "3"))

# ── Tenancy ─────────────────────────────────────────────────────────
DEFAULT_TENANT_PLAN: str = os.getenv("DEFAULT_TENANT_PLAN", "TRIAL").upper()
DEFAULT_TENANT_INTEGRATIONS: list[str] = _env_list("DEFAULT_TENANT_INTEGRATIONS")
DISABLED_TOOLS: frozenset[str] = frozenset(_env_list("DISABLED_TOOLS"))
DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "America/Mexico_City")

# ── Stripe ──────────────────────────────────────────────────────────
# Optional: tenants normally bring their own key through the integration record
STRIPE_API_KEY: str = _optional_env("STRIPE_API_KEY")
STRIPE_BASE_URL: str = "https://api.stripe.com/v1"

# ── Telemetry ───────────────────────────────────────────────────────
TELEMETRY_WINDOW_SECONDS: int = int(os.getenv("TELEMETRY_WINDOW_SECONDS", "3600"))
TELEMETRY_MAX_RECORDS: int = int(os.getenv("TELEMETRY_MAX_RECORDS", "1000"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
