"""Chat-model access with retries and a fallback model.

``LLMProvider`` wraps an ordered list of ``ModelEndpoint``s (primary first,
then fallbacks).  Each call is retried on transient errors through the
endpoint's ``RetryPolicy``; if the endpoint still fails the next one is
tried.  The caller always gets a ``Completion`` back, never an exception,
so the ReAct loop can decide for itself whether a failure is fatal.

Models are LangChain chat models (``ChatAnthropic`` in production,
``MagicMock`` objects whose ``.invoke`` returns an ``AIMessage`` in
tests).  The SDK's own retry loop is switched off (``max_retries=0``) so
that ``RetryPolicy`` is the single place that decides about backoff.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import BaseMessage

from orchestrator.config import (
    ANTHROPIC_API_KEY,
    FALLBACK_MODEL_NAME,
    MODEL_NAME,
    get_model_config,
)
from orchestrator.services.metrics import MetricsClient, metrics
from orchestrator.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 60.0


@dataclass
class ModelEndpoint:
    """One concrete model the provider can fall back to."""

    name: str
    llm: Any
    retry: RetryPolicy
    provider: str = "anthropic"
    supports_tools: bool = True


@dataclass(frozen=True)
class Completion:
    """Result of a single provider call; ``ok`` tells success from failure."""

    ok: bool
    content: str = ""
    model: str | None = None
    provider: str | None = None
    used_fallback: bool = False
    error: str | None = None
    error_type: str | None = None


def message_text(message: Any) -> str:
    """Flatten a chat-model response into plain text.

    Anthropic responses may carry a list of content blocks instead of a
    string; only the ``text`` blocks are kept.
    """
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content)


class LLMProvider:
    """Ordered set of model endpoints behind one ``complete`` call."""

    def __init__(
        self,
        endpoints: Sequence[ModelEndpoint],
        *,
        metrics_client: MetricsClient | None = None,
    ) -> None:
        if not endpoints:
            raise ValueError("LLMProvider needs at least one model endpoint")
        self._endpoints = list(endpoints)
        self._metrics = metrics_client or metrics

    @property
    def primary(self) -> ModelEndpoint:
        return self._endpoints[0]

    @property
    def model(self) -> str:
        return self.primary.name

    @property
    def supports_tools(self) -> bool:
        return self.primary.supports_tools

    def complete(self, messages: list[BaseMessage], *, operation: str = "complete") -> Completion:
        """Return the first successful completion across the endpoints."""
        last_error: BaseException | None = None

        for index, endpoint in enumerate(self._endpoints):
            t0 = time.perf_counter()
            try:
                response = endpoint.retry.call(
                    lambda ep=endpoint: ep.llm.invoke(messages),
                    operation=f"{endpoint.name} {operation}",
                )
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                self._metrics.record_failure(
                    endpoint.provider, operation,
                    error_type=type(exc).__name__, latency_ms=elapsed,
                )
                logger.warning(
                    "Model %s failed on %s (%s)%s",
                    endpoint.name, operation, type(exc).__name__,
                    ", trying fallback" if index + 1 < len(self._endpoints) else "",
                )
                last_error = exc
                continue

            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_success(endpoint.provider, operation, latency_ms=elapsed)
            logger.debug("%s via %s responded in %.0fms", operation, endpoint.name, elapsed)
            return Completion(
                ok=True,
                content=message_text(response),
                model=endpoint.name,
                provider=endpoint.provider,
                used_fallback=index > 0,
            )

        return Completion(
            ok=False,
            model=self.primary.name,
            provider=self.primary.provider,
            used_fallback=len(self._endpoints) > 1,
            error=str(last_error),
            error_type=type(last_error).__name__,
        )

    def stream(
        self, messages: list[BaseMessage], *, operation: str = "stream",
    ) -> Iterator[str | Completion]:
        """Yield text chunks, then a final ``Completion``.

        Opening the stream (up to the first chunk) is retried and falls
        back like ``complete``.  Once text has been emitted a failure
        cannot be retried without duplicating output, so the final
        ``Completion`` reports it with the partial content.
        """
        last_error: BaseException | None = None

        for index, endpoint in enumerate(self._endpoints):
            t0 = time.perf_counter()

            def _open(ep: ModelEndpoint = endpoint):
                iterator = iter(ep.llm.stream(messages))
                return next(iterator, None), iterator

            try:
                first, iterator = endpoint.retry.call(
                    _open, operation=f"{endpoint.name} {operation}",
                )
            except Exception as exc:
                self._metrics.record_failure(
                    endpoint.provider, operation, error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                logger.warning("Model %s could not open stream (%s)", endpoint.name, exc)
                last_error = exc
                continue

            parts: list[str] = []
            try:
                chunk = first
                while chunk is not None:
                    text = message_text(chunk)
                    if text:
                        parts.append(text)
                        yield text
                    chunk = next(iterator, None)
            except Exception as exc:
                self._metrics.record_failure(
                    endpoint.provider, operation, error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                logger.warning("Stream from %s broke after %d chunks: %s",
                               endpoint.name, len(parts), exc)
                yield Completion(
                    ok=False, content="".join(parts), model=endpoint.name,
                    provider=endpoint.provider, used_fallback=index > 0,
                    error=str(exc), error_type=type(exc).__name__,
                )
                return

            self._metrics.record_success(
                endpoint.provider, operation, latency_ms=(time.perf_counter() - t0) * 1000,
            )
            yield Completion(
                ok=True, content="".join(parts), model=endpoint.name,
                provider=endpoint.provider, used_fallback=index > 0,
            )
            return

        yield Completion(
            ok=False,
            model=self.primary.name,
            provider=self.primary.provider,
            error=str(last_error),
            error_type=type(last_error).__name__,
        )


# ── Builders ────────────────────────────────────────────────────────


def build_chat_model(
    model_name: str,
    *,
    max_tokens: int = 1024,
    temperature: float | None = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> ChatAnthropic:
    """Build a ``ChatAnthropic`` client tuned from ``MODEL_CONFIGS``."""
    model_config = get_model_config(model_name)
    return ChatAnthropic(
        model=model_name,
        api_key=ANTHROPIC_API_KEY,
        temperature=model_config["temperature"] if temperature is None else temperature,
        max_tokens=max_tokens,
        max_retries=0,
        timeout=timeout,
    )


def build_endpoint(model_name: str, **model_kwargs: Any) -> ModelEndpoint:
    model_config = get_model_config(model_name)
    return ModelEndpoint(
        name=model_name,
        llm=build_chat_model(model_name, **model_kwargs),
        retry=RetryPolicy.for_model(model_config),
        supports_tools=bool(model_config["supports_tools"]),
    )


def build_provider(
    model_name: str = MODEL_NAME,
    fallback_model_name: str | None = FALLBACK_MODEL_NAME,
    **model_kwargs: Any,
) -> LLMProvider:
    """Primary model plus (optionally) one fallback model."""
    endpoints = [build_endpoint(model_name, **model_kwargs)]
    if fallback_model_name and fallback_model_name != model_name:
        endpoints.append(build_endpoint(fallback_model_name, **model_kwargs))
    logger.debug(
        "LLM provider built — primary: %s, fallback: %s",
        model_name, fallback_model_name if len(endpoints) > 1 else "none",
    )
    return LLMProvider(endpoints)
