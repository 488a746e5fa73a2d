"""Tests for the knowledge retrieval and tenant directory seams."""

from __future__ import annotations

from unittest.mock import MagicMock

from orchestrator.models import PlanTier
from orchestrator.services.collaborators import (
    InMemoryTenantDirectory,
    NullRetriever,
    RetrievedChunk,
    TenantProfile,
    format_knowledge,
    retrieve_knowledge,
)


class TestRetrieveKnowledge:
    def test_sorted_by_score_and_capped(self):
        retriever = MagicMock()
        retriever.retrieve_context.return_value = [
            RetrievedChunk("bajo", 0.2),
            RetrievedChunk("alto", 0.9),
            RetrievedChunk("medio", 0.5),
        ]

        chunks = retrieve_knowledge(retriever, "horario", "t1", 2)

        assert [c.content for c in chunks] == ["alto", "medio"]
        retriever.retrieve_context.assert_called_once_with("horario", "t1", 2)

    def test_failure_means_no_context(self):
        retriever = MagicMock()
        retriever.retrieve_context.side_effect = ConnectionError("vector store down")
        assert retrieve_knowledge(retriever, "q", "t1", 3) == []

    def test_null_retriever(self):
        assert retrieve_knowledge(NullRetriever(), "q", "t1", 3) == []

    def test_format_skips_blank_chunks(self):
        text = format_knowledge([RetrievedChunk(" Abrimos a las 9 ", 1.0), RetrievedChunk("  ", 0.5)])
        assert text == "Abrimos a las 9"


class TestInMemoryTenantDirectory:
    def test_unknown_tenant_gets_defaults(self):
        directory = InMemoryTenantDirectory(default_plan="pro", default_integrations=["stripe"])
        assert directory.get_plan("nobody") is PlanTier.PRO
        assert directory.get_active_integrations("nobody") == {"stripe": {}}

    def test_registered_tenant(self):
        directory = InMemoryTenantDirectory(default_plan="TRIAL", default_integrations=())
        directory.register("acme", "enterprise", {"stripe": {"api_key": "sk_live"}})

        assert directory.get_plan("acme") is PlanTier.ENTERPRISE
        assert directory.get_active_integrations("acme")["stripe"]["api_key"] == "sk_live"

    def test_initial_profiles(self):
        directory = InMemoryTenantDirectory(
            {"t1": TenantProfile(PlanTier.FREE)}, default_integrations=(),
        )
        assert directory.get_plan("t1") is PlanTier.FREE
        assert directory.get_active_integrations("t1") == {}
