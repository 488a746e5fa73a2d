"""Builders shared by several test modules."""

from __future__ import annotations

from unittest.mock import MagicMock

from langchain_core.messages import AIMessage, AIMessageChunk

from orchestrator.services.llm import LLMProvider, ModelEndpoint
from orchestrator.services.retry import RetryPolicy


def make_mock_llm(*responses, stream_chunks: list[str] | None = None) -> MagicMock:
    """Mock chat model whose ``.invoke`` returns each response in turn.

    String responses are wrapped in ``AIMessage``; exceptions are raised.
    """
    llm = MagicMock()
    side_effect = [AIMessage(content=r) if isinstance(r, str) else r for r in responses]
    if len(side_effect) == 1 and not isinstance(side_effect[0], BaseException):
        llm.invoke.return_value = side_effect[0]
    else:
        llm.invoke.side_effect = side_effect
    if stream_chunks is not None:
        llm.stream.side_effect = lambda *_a, **_k: iter(
            [AIMessageChunk(content=c) for c in stream_chunks]
        )
    return llm


def make_provider(*llms, name: str = "claude-sonnet-4-5", attempts: int = 1,
                  supports_tools: bool = True, metrics_client=None) -> LLMProvider:
    """LLMProvider over mock models: the first is primary, the rest fallbacks."""
    endpoints = [
        ModelEndpoint(
            name=name if i == 0 else f"{name}-fallback-{i}",
            llm=llm,
            retry=RetryPolicy(max_attempts=attempts, base_delay=0, jitter=0),
            supports_tools=supports_tools,
        )
        for i, llm in enumerate(llms)
    ]
    return LLMProvider(endpoints, metrics_client=metrics_client or MagicMock())
