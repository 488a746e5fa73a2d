"""Seams to the rest of the platform: knowledge retrieval and tenant records.

The orchestrator only needs two questions answered about the outside
world, "what does this tenant's knowledge base say about X?" and "which
plan and integrations does this tenant have?".  Both are Protocols so the
real vector store and tenant database can be plugged in; the bundled
implementations serve the CLI, local development and the tests.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from orchestrator.config import DEFAULT_TENANT_INTEGRATIONS, DEFAULT_TENANT_PLAN
from orchestrator.models import PlanTier

logger = logging.getLogger(__name__)


# ── Knowledge retrieval ──────────────────────────────────────────────


@dataclass(frozen=True)
class RetrievedChunk:
    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class ContextRetriever(Protocol):
    def retrieve_context(self, query: str, tenant_id: str, top_k: int) -> list[RetrievedChunk]: ...


class NullRetriever:
    """Retriever for tenants without a knowledge base."""

    def retrieve_context(self, query: str, tenant_id: str, top_k: int) -> list[RetrievedChunk]:
        return []


def retrieve_knowledge(
    retriever: ContextRetriever, query: str, tenant_id: str, top_k: int,
) -> list[RetrievedChunk]:
    """Best-effort retrieval: any failure is logged and treated as no context."""
    try:
        chunks = retriever.retrieve_context(query, tenant_id, top_k)
    except Exception:
        logger.warning("Context retrieval failed for tenant %s", tenant_id, exc_info=True)
        return []
    return sorted(chunks, key=lambda c: c.score, reverse=True)[:top_k]


def format_knowledge(chunks: Iterable[RetrievedChunk]) -> str:
    return "\n\n".join(c.content.strip() for c in chunks if c.content.strip())


# ── Tenants ──────────────────────────────────────────────────────────


class TenantDirectory(Protocol):
    def get_plan(self, tenant_id: str) -> PlanTier: ...

    def get_active_integrations(self, tenant_id: str) -> Mapping[str, Mapping[str, Any]]:
        """Integration key → tenant settings, for integrations that are switched on."""
        ...


@dataclass(frozen=True)
class TenantProfile:
    plan: PlanTier
    integrations: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)


class InMemoryTenantDirectory:
    """Dict-backed ``TenantDirectory``.  Unknown tenants get the configured defaults."""

    def __init__(
        self,
        tenants: Mapping[str, TenantProfile] | None = None,
        *,
        default_plan: PlanTier | str = DEFAULT_TENANT_PLAN,
        default_integrations: Iterable[str] = DEFAULT_TENANT_INTEGRATIONS,
    ) -> None:
        self._tenants = dict(tenants or {})
        self._default = TenantProfile(
            plan=PlanTier.parse(default_plan),
            integrations={key: {} for key in default_integrations},
        )
        self._lock = threading.Lock()

    def register(
        self,
        tenant_id: str,
        plan: PlanTier | str,
        integrations: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> TenantProfile:
        profile = TenantProfile(PlanTier.parse(plan), dict(integrations or {}))
        with self._lock:
            self._tenants[tenant_id] = profile
        return profile

    def _profile(self, tenant_id: str) -> TenantProfile:
        with self._lock:
            return self._tenants.get(tenant_id, self._default)

    def get_plan(self, tenant_id: str) -> PlanTier:
        return self._profile(tenant_id).plan

    def get_active_integrations(self, tenant_id: str) -> Mapping[str, Mapping[str, Any]]:
        return dict(self._profile(tenant_id).integrations)
