"""Tests for the tool-need decision engine."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from orchestrator.keywords import ReminderIntent
from orchestrator.models import PlanTier
from orchestrator.services.decision_engine import (
    AMOUNT_KEYWORD,
    FAST_PATH_REASONING,
    DecisionContext,
    DecisionEngine,
    DecisionThresholds,
    cache_key,
)


def _ctx(plan=PlanTier.PRO, integrations=(), supports_tools=True, chatbot_id="bot1"):
    return DecisionContext(
        tenant_id="t1",
        plan=plan,
        chatbot_id=chatbot_id,
        integrations=frozenset(integrations),
        model_supports_tools=supports_tools,
    )


@pytest.fixture
def engine():
    return DecisionEngine()


class TestQuickScan:
    def test_small_talk_scores_zero(self, engine):
        scan = engine.quick_scan("¿Cómo estás?")
        assert scan.confidence == 0
        assert not scan.detected

    def test_payment_with_amount(self, engine):
        scan = engine.quick_scan("Genera un link de pago por $500")
        assert scan.confidence == 100
        assert "link de pago" in scan.keywords
        assert AMOUNT_KEYWORD in scan.keywords

    def test_keyword_matching_is_whole_word(self, engine):
        assert not engine.quick_scan("Hablemos del Soyuz").detected

    def test_reminder_keywords(self, engine):
        scan = engine.quick_scan("Recuérdame mañana llamar a Juan")
        assert scan.reminder_intent is not None
        assert scan.reminder_intent.intent == "create"
        assert "llm_intent_create" in scan.keywords

    def test_classifier_result_is_used(self):
        classifier = MagicMock()
        classifier.classify.return_value = ReminderIntent(
            intent="create", confidence=0.9, source="llm", keywords=("llm_intent_create",),
        )
        engine = DecisionEngine(classifier=classifier)

        scan = engine.quick_scan("el viernes tengo la junta, que no se me olvide")

        assert scan.confidence == 90
        assert scan.keywords == ("llm_intent_create",)

    def test_low_confidence_classifier_result_ignored(self):
        classifier = MagicMock()
        classifier.classify.return_value = ReminderIntent(
            intent="create", confidence=0.4, source="llm",
        )
        scan = DecisionEngine(classifier=classifier).quick_scan("hola")
        assert scan.confidence == 0

    def test_classifier_failure_falls_back_to_keywords(self):
        classifier = MagicMock()
        classifier.classify.side_effect = RuntimeError("boom")
        scan = DecisionEngine(classifier=classifier).quick_scan("Recuérdame pagar la renta")
        assert scan.reminder_intent.source == "keywords"
        assert scan.detected


FAMILY_KEYWORDS = [
    "link de pago", "stripe",                          # payment
    "necesito pagar", "crear link",                    # commercial
    "me llamo Ana", "mi correo es ana@example.com",    # contact
    "recuérdame", "mis recordatorios", "cancelar recordatorio", "cambiar hora",  # reminders
]
BASE_MESSAGES = [
    "hola",
    "tengo una duda sobre mi cuenta",
    "la factura",
    "avísame el viernes",
    "soy Luis de Acme",
]


class TestConfidenceMonotonicity:
    @pytest.mark.parametrize("keyword", FAMILY_KEYWORDS)
    def test_each_keyword_scores_on_its_own(self, engine, keyword):
        assert engine.quick_scan(keyword).confidence > 0

    @pytest.mark.parametrize("base", BASE_MESSAGES)
    @pytest.mark.parametrize("keyword", FAMILY_KEYWORDS)
    def test_adding_a_keyword_never_lowers_confidence(self, engine, base, keyword):
        before = engine.quick_scan(base).confidence
        after = engine.quick_scan(f"{base} {keyword}").confidence
        assert after >= before
        assert 0 <= after <= 100

    def test_repeated_payment_keyword_counts_once(self, engine):
        assert engine.quick_scan("la factura").confidence == 40
        assert engine.quick_scan("la factura, otra factura").confidence == 40

    def test_second_amount_counts_once(self, engine):
        assert engine.quick_scan("te debo $500").confidence == 60
        assert engine.quick_scan("te debo $500 y $300").confidence == 60


class TestEvaluate:
    def test_payment_request_with_stripe_needs_tools(self, engine):
        decision = engine.decide("Genera un link de pago por $500", _ctx(integrations={"stripe"}))

        assert decision.needs_tools
        assert decision.confidence == 100
        assert decision.suggested_tools == ("create_payment_link",)
        assert not decision.should_stream
        assert "Stripe" in decision.reasoning

    def test_small_talk_takes_fast_path(self, engine):
        decision = engine.decide("¿Cómo estás?", _ctx())

        assert not decision.needs_tools
        assert decision.confidence == 0
        assert decision.suggested_tools == ()
        assert decision.should_stream
        assert decision.reasoning == FAST_PATH_REASONING

    def test_reminder_suggests_schedule(self, engine):
        decision = engine.decide("Recuérdame mañana llamar a Juan", _ctx())
        assert decision.needs_tools
        assert decision.suggested_tools == ("schedule_reminder",)

    def test_contact_details(self, engine):
        decision = engine.decide("Mi nombre es Ana y mi correo es ana@example.com", _ctx())
        assert decision.needs_tools
        assert "save_contact_info" in decision.suggested_tools

    def test_confidence_is_monotonic_in_plan(self, engine):
        message = "necesito pagar"
        free = engine.decide(message, _ctx(plan=PlanTier.FREE)).confidence
        pro = engine.decide(message, _ctx(plan=PlanTier.PRO)).confidence
        enterprise = engine.decide(message, _ctx(plan=PlanTier.ENTERPRISE)).confidence

        assert free <= pro <= enterprise
        assert (free, pro, enterprise) == (0, 30, 35)

    def test_model_without_tools_is_penalised(self, engine):
        message = "Genera un link de pago por $500"
        with_tools = engine.decide(message, _ctx(integrations={"stripe"})).confidence
        without = engine.decide(
            message, _ctx(integrations={"stripe"}, supports_tools=False),
        ).confidence
        assert without == with_tools - 40

    def test_confidence_is_bounded(self, engine):
        message = "Mi nombre es Ana, trabajo en ACME, genera un link de pago por $500 y recuérdame"
        decision = engine.decide(message, _ctx(plan=PlanTier.ENTERPRISE, integrations={"stripe"}))
        assert 0 <= decision.confidence <= 100

    def test_custom_thresholds(self):
        engine = DecisionEngine(thresholds=DecisionThresholds(deep_analysis=20, needs_tools=20))
        assert engine.decide("necesito pagar", _ctx()).needs_tools


class TestCaching:
    def test_cache_hit_returns_identical_decision(self, engine):
        ctx = _ctx(integrations={"stripe"})
        first, hit1 = engine.evaluate("Genera un link de pago por $500", ctx)
        second, hit2 = engine.evaluate("Genera un link de pago por $500", ctx)

        assert (hit1, hit2) == (False, True)
        assert second is first
        assert engine.stats()["cache_hits"] == 1
        assert engine.stats()["cache_size"] == 1

    def test_cache_is_scoped_by_plan_and_chatbot(self, engine):
        engine.decide("necesito pagar", _ctx(plan=PlanTier.PRO))
        _, hit_plan = engine.evaluate("necesito pagar", _ctx(plan=PlanTier.FREE))
        _, hit_bot = engine.evaluate("necesito pagar", _ctx(chatbot_id="bot2"))
        assert not hit_plan
        assert not hit_bot

    def test_cache_key_uses_message_prefix(self):
        ctx = _ctx()
        long_a = "a" * 50 + " tail one"
        long_b = "a" * 50 + " tail two"
        assert cache_key(long_a, ctx) == cache_key(long_b, ctx)
        assert cache_key("Hola  Mundo", ctx) == "bot1-PRO-True-hola-mundo"

    def test_stats_track_average_decision_time(self, engine):
        engine.decide("hola", _ctx())
        stats = engine.stats()
        assert stats["cache_misses"] == 1
        assert stats["avg_decision_ms"] >= 0
