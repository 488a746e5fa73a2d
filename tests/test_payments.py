"""Tests for the create_payment_link tool."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from orchestrator.models import PlanTier, ToolContext
from orchestrator.services.retry import RetryExhaustedError
from orchestrator.services.stripe_client import PaymentLink, StripeAPIError
from orchestrator.tools.payments import make_create_payment_link, payment_tools


def _ctx(integrations=None):
    return ToolContext(
        tenant_id="t1",
        plan=PlanTier.PRO,
        chatbot_id="bot1",
        conversation_id="conv1",
        integrations=integrations if integrations is not None else {"stripe": {"api_key": "sk_t"}},
    )


@pytest.fixture
def stripe():
    client = MagicMock()
    client.create_payment_link.return_value = PaymentLink(
        id="plink_1",
        url="https://buy.stripe.com/abc",
        price_id="price_1",
        amount=Decimal("500"),
        currency="mxn",
    )
    return client


@pytest.fixture
def factory(stripe):
    return MagicMock(return_value=stripe)


class TestCreatePaymentLink:
    def test_creates_link_with_tenant_key(self, factory, stripe):
        handler = make_create_payment_link(factory)
        result = handler({"amount": 500, "description": "Consulta"}, _ctx())

        assert result.success
        assert "https://buy.stripe.com/abc" in result.message
        assert "$500.00 MXN" in result.message
        assert result.data["payment_link_id"] == "plink_1"
        factory.assert_called_once_with("sk_t")

        args, kwargs = stripe.create_payment_link.call_args
        assert args == (Decimal("500"), "mxn", "Consulta")
        assert kwargs["idempotency_seed"] == "t1:bot1:conv1"

    def test_currency_is_normalised(self, factory, stripe):
        handler = make_create_payment_link(factory)
        result = handler({"amount": "20.5", "description": "x", "currency": "USD"}, _ctx())
        assert result.success
        assert stripe.create_payment_link.call_args[0][1] == "usd"

    @pytest.mark.parametrize("amount", [0, -5, "abc", "NaN", 1_000_000])
    def test_invalid_amounts_rejected(self, factory, amount):
        handler = make_create_payment_link(factory)
        result = handler({"amount": amount, "description": "x"}, _ctx())
        assert not result.success
        factory.assert_not_called()

    def test_unsupported_currency(self, factory):
        handler = make_create_payment_link(factory)
        result = handler({"amount": 10, "description": "x", "currency": "eur"}, _ctx())
        assert not result.success
        assert "eur" in result.message

    def test_missing_key(self, factory, monkeypatch):
        monkeypatch.setattr("orchestrator.tools.payments.STRIPE_API_KEY", "")
        handler = make_create_payment_link(factory)
        result = handler({"amount": 10, "description": "x"}, _ctx(integrations={"stripe": {}}))
        assert not result.success
        assert "Integraciones" in result.message

    def test_stripe_rejection_is_a_failed_result(self, factory, stripe):
        stripe.create_payment_link.side_effect = StripeAPIError("Client error 400: bad", 400)
        result = make_create_payment_link(factory)({"amount": 10, "description": "x"}, _ctx())
        assert not result.success
        assert "bad" in result.message

    def test_retry_exhaustion_is_a_failed_result(self, factory, stripe):
        stripe.create_payment_link.side_effect = RetryExhaustedError("Stripe", 3, TimeoutError())
        result = make_create_payment_link(factory)({"amount": 10, "description": "x"}, _ctx())
        assert not result.success
        assert "no respondió" in result.message


def test_payment_tool_requires_stripe_and_paid_plan(factory):
    (tool,) = payment_tools(factory)
    assert tool.name == "create_payment_link"
    assert tool.required_integrations == {"stripe"}
    assert PlanTier.FREE not in tool.required_plans
    assert PlanTier.STARTER not in tool.required_plans
