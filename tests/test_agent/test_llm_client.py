"""Tests for the LLM client abstraction layer.

Tests cover:
- OllamaLLMClient with a mocked Ollama async client (text and vision model)
- PaidLLMClient with mocked Anthropic and OpenAI SDKs
- FallbackLLMClient composite behavior (primary → fallback)
- Format conversion helpers for images
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from spendbot.agent.llm_client import (
    ChatMessage,
    FallbackLLMClient,
    LLMResponse,
    OllamaLLMClient,
    PaidLLMClient,
    _estimate_cost_usd,
    _message_to_anthropic,
    _message_to_openai,
    _messages_to_ollama,
)

DATA_URL = "data:image/png;base64,aGVsbG8="

# ── ChatMessage / LLMResponse model tests ─────────────────────────────────────


def test_chat_message_creation() -> None:
    msg = ChatMessage(role="user", content="hello")
    assert msg.role == "user"
    assert msg.images == []


def test_llm_response_defaults() -> None:
    resp = LLMResponse()
    assert resp.content == ""
    assert resp.input_tokens is None
    assert resp.provider == ""
    assert not resp.is_fallback


def test_llm_response_fallback_flag() -> None:
    assert LLMResponse(provider="openai (fallback)").is_fallback


# ── Format conversion helpers ─────────────────────────────────────────────────


def test_messages_to_ollama() -> None:
    messages = [
        ChatMessage(role="system", content="You are helpful."),
        ChatMessage(role="user", content="Read this", images=[DATA_URL]),
    ]
    result = _messages_to_ollama(messages)
    assert result[0] == {"role": "system", "content": "You are helpful."}
    assert result[1] == {"role": "user", "content": "Read this", "images": ["aGVsbG8="]}


def test_message_to_openai_with_image() -> None:
    result = _message_to_openai(ChatMessage(role="user", content="Read", images=[DATA_URL]))
    assert result["content"][0] == {"type": "text", "text": "Read"}
    assert result["content"][1] == {"type": "image_url", "image_url": {"url": DATA_URL}}


def test_message_to_openai_plain() -> None:
    assert _message_to_openai(ChatMessage(role="user", content="hi")) == {
        "role": "user",
        "content": "hi",
    }


def test_message_to_anthropic_with_image() -> None:
    result = _message_to_anthropic(ChatMessage(role="user", content="Read", images=[DATA_URL]))
    image, text = result["content"]
    assert image["source"] == {"type": "base64", "media_type": "image/png", "data": "aGVsbG8="}
    assert text == {"type": "text", "text": "Read"}


# ── Cost estimation ───────────────────────────────────────────────────────────


def test_estimate_cost_ollama_is_zero() -> None:
    assert _estimate_cost_usd("ollama", "qwen2.5", 100, 50) == Decimal("0")


def test_estimate_cost_groq_llama() -> None:
    cost = _estimate_cost_usd("openai", "llama-3.1-8b-instant", 1000, 500)
    assert cost is not None
    assert cost > 0


def test_estimate_cost_unknown_model() -> None:
    assert _estimate_cost_usd("other", "unknown-model", 1000, 500) is None


# ── OllamaLLMClient tests ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_ollama_client_basic_response() -> None:
    mock_response = {
        "message": {"content": '{"item": "Coffee", "price": 10}'},
        "prompt_eval_count": 50,
        "eval_count": 20,
    }

    with patch("ollama.AsyncClient") as mock_ollama_cls:
        instance = AsyncMock()
        instance.chat = AsyncMock(return_value=mock_response)
        mock_ollama_cls.return_value = instance

        client = OllamaLLMClient(base_url="http://test:11434", model="text-model")
        result = await client.chat([ChatMessage(role="user", content="coffee 10")])

    assert result.content == '{"item": "Coffee", "price": 10}'
    assert result.input_tokens == 50
    assert result.output_tokens == 20
    assert result.provider == "ollama"
    assert result.model == "text-model"
    assert result.latency_ms is not None
    assert instance.chat.call_args.kwargs["options"] == {"temperature": 0.0, "num_predict": 300}


@pytest.mark.asyncio
async def test_ollama_client_uses_vision_model_for_images() -> None:
    with patch("ollama.AsyncClient") as mock_ollama_cls:
        instance = AsyncMock()
        instance.chat = AsyncMock(return_value={"message": {"content": "TOTAL 12.00"}})
        mock_ollama_cls.return_value = instance

        client = OllamaLLMClient(
            base_url="http://test:11434", model="text-model", vision_model="vision-model",
        )
        result = await client.chat(
            [ChatMessage(role="user", content="read", images=[DATA_URL])],
            temperature=0.1,
            max_tokens=500,
        )

    assert result.model == "vision-model"
    assert instance.chat.call_args.kwargs["model"] == "vision-model"


# ── PaidLLMClient tests ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_paid_client_anthropic_basic() -> None:
    mock_block = MagicMock()
    mock_block.type = "text"
    mock_block.text = '{"item": "Coffee", "price": 10}'

    mock_response = MagicMock()
    mock_response.content = [mock_block]
    mock_response.usage.input_tokens = 80
    mock_response.usage.output_tokens = 15

    with patch("anthropic.AsyncAnthropic") as mock_anthropic_cls:
        mock_client = AsyncMock()
        mock_client.messages.create = AsyncMock(return_value=mock_response)
        mock_anthropic_cls.return_value = mock_client

        client = PaidLLMClient(provider="anthropic", model="claude-3-5-haiku-latest")
        messages = [
            ChatMessage(role="system", content="Return JSON."),
            ChatMessage(role="user", content="coffee 10"),
        ]
        result = await client.chat(messages)

    kwargs = mock_client.messages.create.call_args.kwargs
    assert kwargs["system"] == "Return JSON."
    assert kwargs["messages"] == [{"role": "user", "content": "coffee 10"}]
    assert result.content == '{"item": "Coffee", "price": 10}'
    assert result.provider == "anthropic"


@pytest.mark.asyncio
async def test_paid_client_openai_basic() -> None:
    mock_choice = MagicMock()
    mock_choice.message.content = '{"error": "invalid"}'

    mock_response = MagicMock()
    mock_response.choices = [mock_choice]
    mock_response.usage.prompt_tokens = 60
    mock_response.usage.completion_tokens = 10

    with patch("openai.AsyncOpenAI") as mock_openai_cls:
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(return_value=mock_response)
        mock_openai_cls.return_value = mock_client

        client = PaidLLMClient(provider="openai", model="llama-3.1-8b-instant")
        result = await client.chat([ChatMessage(role="user", content="hello")])

    assert result.content == '{"error": "invalid"}'
    assert result.input_tokens == 60
    assert result.output_tokens == 10
    assert result.provider == "openai"


@pytest.mark.asyncio
async def test_paid_client_openai_vision_model() -> None:
    mock_choice = MagicMock()
    mock_choice.message.content = "{}"
    mock_response = MagicMock()
    mock_response.choices = [mock_choice]

    with patch("openai.AsyncOpenAI") as mock_openai_cls:
        mock_client = AsyncMock()
        mock_client.chat.completions.create = AsyncMock(return_value=mock_response)
        mock_openai_cls.return_value = mock_client

        client = PaidLLMClient(provider="openai", model="text", vision_model="vision")
        result = await client.chat([ChatMessage(role="user", content="x", images=[DATA_URL])])

    assert result.model == "vision"
    assert mock_client.chat.completions.create.call_args.kwargs["model"] == "vision"


@pytest.mark.asyncio
async def test_paid_client_unknown_provider_raises() -> None:
    client = PaidLLMClient(provider="unknown", model="test")
    with pytest.raises(ValueError, match="Unknown LLM provider"):
        await client.chat([ChatMessage(role="user", content="hi")])


# ── FallbackLLMClient tests ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fallback_uses_primary_on_success() -> None:
    primary = AsyncMock()
    primary.chat = AsyncMock(
        return_value=LLMResponse(content="primary ok", provider="ollama", model="test")
    )
    fallback = AsyncMock()
    fallback.chat = AsyncMock()

    client = FallbackLLMClient(primary=primary, fallback=fallback)
    result = await client.chat([ChatMessage(role="user", content="hello")])

    assert result.content == "primary ok"
    fallback.chat.assert_not_called()


@pytest.mark.asyncio
async def test_fallback_uses_fallback_on_primary_failure() -> None:
    primary = AsyncMock()
    primary.chat = AsyncMock(side_effect=ConnectionError("Ollama down"))
    fallback = AsyncMock()
    fallback.chat = AsyncMock(
        return_value=LLMResponse(content="fallback ok", provider="openai", model="llama")
    )

    client = FallbackLLMClient(primary=primary, fallback=fallback)
    result = await client.chat(
        [ChatMessage(role="user", content="hello")], temperature=0.1, max_tokens=200,
    )

    assert result.content == "fallback ok"
    assert result.provider == "openai (fallback)"
    assert result.is_fallback
    assert fallback.chat.call_args.kwargs == {"temperature": 0.1, "max_tokens": 200}


@pytest.mark.asyncio
async def test_fallback_raises_when_both_fail() -> None:
    primary = AsyncMock()
    primary.chat = AsyncMock(side_effect=ConnectionError("Ollama down"))
    fallback = AsyncMock()
    fallback.chat = AsyncMock(side_effect=RuntimeError("API error"))

    client = FallbackLLMClient(primary=primary, fallback=fallback)
    with pytest.raises(RuntimeError, match="API error"):
        await client.chat([ChatMessage(role="user", content="hello")])
