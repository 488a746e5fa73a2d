"""Payment tools: Stripe Payment Links on behalf of a tenant."""

from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any

from orchestrator.config import STRIPE_API_KEY
from orchestrator.models import PlanTier, ToolContext, ToolDefinition, ToolResult
from orchestrator.services.retry import RetryExhaustedError
from orchestrator.services.stripe_client import (
    SUPPORTED_CURRENCIES,
    StripeAPIError,
    StripeClient,
    get_stripe_client,
)

logger = logging.getLogger(__name__)

MAX_AMOUNT = Decimal("999999.99")

PAYMENT_LINK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "amount": {
            "type": "number",
            "description": "Cantidad a cobrar en números (ej: 500, 1000)",
        },
        "description": {
            "type": "string",
            "description": "Descripción del pago o servicio",
        },
        "currency": {
            "type": "string",
            "enum": sorted(SUPPORTED_CURRENCIES),
            "description": "Moneda del pago (default: 'mxn' para pesos mexicanos)",
        },
    },
    "required": ["amount", "description"],
}


def _stripe_key(context: ToolContext) -> str:
    settings = context.integrations.get("stripe") or {}
    return settings.get("api_key") or STRIPE_API_KEY


def make_create_payment_link(
    client_factory: Callable[[str], StripeClient] = get_stripe_client,
):
    """Build the ``create_payment_link`` handler around a Stripe client factory."""

    def create_payment_link(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        try:
            amount = Decimal(str(tool_input["amount"]))
        except (InvalidOperation, ValueError):
            return ToolResult.fail(f"El monto no es válido: {tool_input['amount']!r}")
        if not amount.is_finite() or amount <= 0 or amount > MAX_AMOUNT:
            return ToolResult.fail("El monto debe ser mayor a 0 y menor a 1,000,000.")

        currency = str(tool_input.get("currency") or "mxn").lower()
        if currency not in SUPPORTED_CURRENCIES:
            return ToolResult.fail(
                f"Moneda no soportada: {currency}. Usa {', '.join(sorted(SUPPORTED_CURRENCIES))}."
            )
        description = str(tool_input["description"]).strip()

        api_key = _stripe_key(context)
        if not api_key:
            return ToolResult.fail(
                "La integración de Stripe no tiene una clave configurada. "
                "Revísala en la sección de Integraciones."
            )

        seed = f"{context.tenant_id}:{context.chatbot_id}:{context.conversation_id}"
        try:
            link = client_factory(api_key).create_payment_link(
                amount, currency, description, idempotency_seed=seed,
            )
        except StripeAPIError as exc:
            logger.warning("Stripe rejected payment link for tenant %s: %s", context.tenant_id, exc)
            return ToolResult.fail(f"Stripe rechazó la solicitud: {exc}")
        except RetryExhaustedError:
            return ToolResult.fail("Stripe no respondió. Intenta de nuevo en unos minutos.")

        return ToolResult.ok(
            f"Link de pago generado exitosamente por ${amount:,.2f} {currency.upper()}: {link.url}",
            data={
                "url": link.url,
                "payment_link_id": link.id,
                "amount": str(amount),
                "currency": currency,
                "description": description,
            },
        )

    return create_payment_link


def payment_tools(
    client_factory: Callable[[str], StripeClient] = get_stripe_client,
) -> list[ToolDefinition]:
    return [
        ToolDefinition(
            name="create_payment_link",
            description="Crear un link de pago de Stripe para cobrar al cliente",
            input_schema=PAYMENT_LINK_SCHEMA,
            handler=make_create_payment_link(client_factory),
            required_plans=frozenset({PlanTier.PRO, PlanTier.ENTERPRISE, PlanTier.TRIAL}),
            required_integrations=frozenset({"stripe"}),
        ),
    ]
