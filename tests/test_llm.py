"""Tests for the retrying, falling-back LLM provider."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest
from helpers import make_mock_llm, make_provider
from langchain_core.messages import AIMessage, HumanMessage

from orchestrator.services.llm import (
    Completion,
    LLMProvider,
    build_chat_model,
    build_provider,
    message_text,
)

_MESSAGES = [HumanMessage(content="hola")]


class TestMessageText:
    def test_plain_string(self):
        assert message_text(AIMessage(content="hola")) == "hola"

    def test_content_blocks_keep_only_text(self):
        msg = AIMessage(content=[
            {"type": "text", "text": "Hola "},
            {"type": "tool_use", "id": "t1", "name": "x", "input": {}},
            {"type": "text", "text": "mundo"},
        ])
        assert message_text(msg) == "Hola mundo"


class TestComplete:
    def test_primary_success(self):
        metrics = MagicMock()
        provider = make_provider(make_mock_llm("respuesta"), metrics_client=metrics)
        result = provider.complete(_MESSAGES, operation="think")

        assert result.ok is True
        assert result.content == "respuesta"
        assert result.model == "claude-sonnet-4-5"
        assert result.used_fallback is False
        metrics.record_success.assert_called_once()
        assert metrics.record_success.call_args.args[:2] == ("anthropic", "think")

    @patch("orchestrator.services.retry.time.sleep")
    def test_transient_error_retried_on_same_model(self, _sleep):
        llm = make_mock_llm(httpx.ConnectError("down"), "ok")
        provider = make_provider(llm, attempts=2)
        result = provider.complete(_MESSAGES)
        assert result.ok is True
        assert llm.invoke.call_count == 2

    def test_falls_back_to_second_model(self):
        primary = MagicMock()
        primary.invoke.side_effect = RuntimeError("model unavailable")
        fallback = make_mock_llm("desde fallback")
        provider = make_provider(primary, fallback)

        result = provider.complete(_MESSAGES)

        assert result.ok is True
        assert result.content == "desde fallback"
        assert result.used_fallback is True
        assert result.model.endswith("fallback-1")

    def test_all_models_fail_returns_failed_completion(self):
        metrics = MagicMock()
        primary = MagicMock()
        primary.invoke.side_effect = TimeoutError("slow")
        fallback = MagicMock()
        fallback.invoke.side_effect = TimeoutError("slow")
        provider = make_provider(primary, fallback, metrics_client=metrics)

        result = provider.complete(_MESSAGES, operation="think")

        assert isinstance(result, Completion)
        assert result.ok is False
        assert result.error_type == "RetryExhaustedError"
        assert metrics.record_failure.call_count == 2

    def test_never_raises(self):
        llm = MagicMock()
        llm.invoke.side_effect = ValueError("unexpected")
        result = make_provider(llm).complete(_MESSAGES)
        assert result.ok is False
        assert result.error_type == "ValueError"

    def test_rejects_empty_endpoint_list(self):
        with pytest.raises(ValueError):
            LLMProvider([])


class TestStream:
    def test_yields_chunks_then_completion(self):
        llm = make_mock_llm("unused", stream_chunks=["Hola", " ", "mundo"])
        items = list(make_provider(llm).stream(_MESSAGES))

        assert items[:-1] == ["Hola", " ", "mundo"]
        final = items[-1]
        assert isinstance(final, Completion)
        assert final.ok is True
        assert final.content == "Hola mundo"

    def test_open_failure_falls_back(self):
        primary = MagicMock()
        primary.stream.side_effect = RuntimeError("no stream")
        fallback = make_mock_llm("unused", stream_chunks=["ok"])
        items = list(make_provider(primary, fallback).stream(_MESSAGES))
        assert items[0] == "ok"
        assert items[-1].used_fallback is True

    def test_mid_stream_failure_reports_partial_content(self):
        def _broken(*_a, **_k):
            yield AIMessage(content="parcial")
            raise httpx.ReadError("reset")

        llm = MagicMock()
        llm.stream.side_effect = _broken
        items = list(make_provider(llm).stream(_MESSAGES))

        assert items[0] == "parcial"
        final = items[-1]
        assert final.ok is False
        assert final.content == "parcial"


class TestBuilders:
    @patch("orchestrator.services.llm.ChatAnthropic")
    def test_build_chat_model_disables_sdk_retries(self, mock_cls):
        build_chat_model("claude-haiku-4-5", max_tokens=256)
        kwargs = mock_cls.call_args.kwargs
        assert kwargs["model"] == "claude-haiku-4-5"
        assert kwargs["max_retries"] == 0
        assert kwargs["max_tokens"] == 256

    @patch("orchestrator.services.llm.ChatAnthropic")
    def test_build_provider_adds_fallback(self, _mock_cls):
        provider = build_provider("claude-sonnet-4-5", "claude-haiku-4-5")
        assert provider.model == "claude-sonnet-4-5"
        assert len(provider._endpoints) == 2

    @patch("orchestrator.services.llm.ChatAnthropic")
    def test_build_provider_skips_identical_fallback(self, _mock_cls):
        provider = build_provider("claude-haiku-4-5", "claude-haiku-4-5")
        assert len(provider._endpoints) == 1

    @patch("orchestrator.services.llm.ChatAnthropic")
    def test_legacy_model_has_no_tool_support(self, _mock_cls):
        provider = build_provider("claude-2.1", None)
        assert provider.supports_tools is False
