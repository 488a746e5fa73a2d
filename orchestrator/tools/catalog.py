"""Assembles the full tool catalog and the registry built on it."""

from __future__ import annotations

from collections.abc import Callable, Iterable

from orchestrator.config import DEFAULT_TIMEZONE, DISABLED_TOOLS
from orchestrator.models import ToolDefinition
from orchestrator.services.metrics import MetricsClient
from orchestrator.services.stripe_client import StripeClient, get_stripe_client
from orchestrator.services.telemetry import PerformanceMonitor
from orchestrator.tools.analytics import analytics_tools
from orchestrator.tools.contacts import ContactStore, InMemoryContactStore, contact_tools
from orchestrator.tools.payments import payment_tools
from orchestrator.tools.registry import ToolRegistry
from orchestrator.tools.reminders import InMemoryReminderStore, ReminderStore, reminder_tools


def build_tool_catalog(
    *,
    reminder_store: ReminderStore,
    contact_store: ContactStore,
    monitor: PerformanceMonitor,
    stripe_client_factory: Callable[[str], StripeClient] = get_stripe_client,
    timezone: str = DEFAULT_TIMEZONE,
) -> list[ToolDefinition]:
    """Every tool the platform offers, in the order they are presented to models."""
    return [
        *payment_tools(stripe_client_factory),
        *reminder_tools(reminder_store, timezone=timezone),
        *contact_tools(contact_store),
        *analytics_tools(monitor),
    ]


def build_registry(
    *,
    monitor: PerformanceMonitor,
    reminder_store: ReminderStore | None = None,
    contact_store: ContactStore | None = None,
    stripe_client_factory: Callable[[str], StripeClient] = get_stripe_client,
    disabled: Iterable[str] = DISABLED_TOOLS,
    metrics_client: MetricsClient | None = None,
) -> ToolRegistry:
    """Registry over the full catalog, with in-memory stores unless others are given."""
    catalog = build_tool_catalog(
        reminder_store=reminder_store or InMemoryReminderStore(),
        contact_store=contact_store or InMemoryContactStore(),
        monitor=monitor,
        stripe_client_factory=stripe_client_factory,
    )
    return ToolRegistry(catalog, disabled=disabled, metrics_client=metrics_client)
