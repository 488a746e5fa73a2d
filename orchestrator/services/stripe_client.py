"""HTTP client for the Stripe API, used to create Payment Links.

Stripe API docs: https://docs.stripe.com/api/payment_links
Requests are form-encoded and authenticated with the tenant's secret key
as a Bearer token.

Every POST carries a deterministic ``Idempotency-Key`` derived from the
caller's seed, so a retried request (ours, or the agent calling the tool a
second time for the same conversation) returns the original object instead
of creating a duplicate price or link.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from orchestrator.config import STRIPE_BASE_URL
from orchestrator.services.metrics import MetricsClient, metrics
from orchestrator.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15.0
DEFAULT_RETRY = RetryPolicy(max_attempts=3, base_delay=1.0)
SUPPORTED_CURRENCIES = frozenset({"mxn", "usd"})


class StripeAPIError(Exception):
    """Raised when a Stripe API call fails (after retries for 5xx / 429)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class PaymentLink:
    id: str
    url: str
    price_id: str
    amount: Decimal
    currency: str


def to_minor_units(amount: Decimal | float | str) -> int:
    """Convert a major-unit amount (``500.5``) to Stripe's integer cents."""
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int(value * 100)


def idempotency_key(*parts: Any) -> str:
    """Stable key for the same logical request."""
    raw = "|".join(str(p) for p in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class StripeClient:
    """Thin wrapper around the Stripe REST API with automatic retries."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        *,
        retry: RetryPolicy | None = None,
        metrics_client: MetricsClient | None = None,
    ):
        if not api_key:
            raise ValueError("A Stripe secret key is required")
        self._client = httpx.Client(
            base_url=base_url or STRIPE_BASE_URL,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._retry = retry or DEFAULT_RETRY
        self._metrics = metrics_client or metrics

    # ── Internal helpers ─────────────────────────────────────────────

    def _send(self, method: str, path: str, data: dict[str, Any] | None, headers: dict) -> dict:
        response = self._client.request(method, path, data=data, headers=headers)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            error = body.get("error") if isinstance(body, dict) else None
            detail = error.get("message") if isinstance(error, dict) else (error or response.text)
            kind = "Server" if response.status_code >= 500 else "Client"
            raise StripeAPIError(
                f"{kind} error {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        return response.json()

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, Any] | None = None,
        idempotency: str | None = None,
    ) -> dict[str, Any]:
        """Execute a request through the retry policy (5xx/429/transport only)."""
        headers = {"Idempotency-Key": idempotency} if idempotency else {}
        operation = f"{method} {path}"
        t0 = time.perf_counter()
        try:
            result = self._retry.call(
                lambda: self._send(method, path, data, headers),
                operation=f"Stripe {operation}",
            )
        except Exception as exc:
            self._metrics.record_failure(
                "stripe", operation, error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        self._metrics.record_success(
            "stripe", operation, latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return result

    # ── Public API ───────────────────────────────────────────────────

    def create_price(
        self, amount: Decimal | float, currency: str, product_name: str, *, idempotency: str,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/prices",
            data={
                "unit_amount": to_minor_units(amount),
                "currency": currency,
                "product_data[name]": product_name[:250],
            },
            idempotency=f"price-{idempotency}",
        )

    def create_payment_link(
        self,
        amount: Decimal | float,
        currency: str,
        description: str,
        *,
        idempotency_seed: str,
    ) -> PaymentLink:
        """Create a one-item Payment Link for *amount* in *currency*.

        Two calls: a Price (with an inline product) and the Payment Link
        that sells one unit of it.  Both are idempotent on
        *idempotency_seed* + the payment parameters.
        """
        currency = currency.lower()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported currency: {currency}")
        key = idempotency_key(idempotency_seed, to_minor_units(amount), currency, description)

        price = self.create_price(amount, currency, description, idempotency=key)
        link = self._request(
            "POST",
            "/payment_links",
            data={
                "line_items[0][price]": price["id"],
                "line_items[0][quantity]": 1,
                "metadata[source]": "agent-orchestrator",
            },
            idempotency=f"link-{key}",
        )
        logger.info("Stripe payment link %s created (%s %s)", link.get("id"), amount, currency)
        return PaymentLink(
            id=link["id"],
            url=link["url"],
            price_id=price["id"],
            amount=Decimal(str(amount)),
            currency=currency,
        )

    def close(self) -> None:
        self._client.close()


# ── Per-key client pool (thread-safe) ───────────────────────────────
_clients: dict[str, StripeClient] = {}
_clients_lock = threading.Lock()


def get_stripe_client(api_key: str) -> StripeClient:
    """Return a shared StripeClient for *api_key*.

    Uses double-checked locking so that the lock is only acquired the first
    time a tenant's key is seen.
    """
    client = _clients.get(api_key)
    if client is None:
        with _clients_lock:
            client = _clients.get(api_key)
            if client is None:
                client = StripeClient(api_key)
                _clients[api_key] = client
    return client
