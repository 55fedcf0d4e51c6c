"""LLM client with Ollama primary and paid API fallback.

Defines a protocol-based interface with three concrete implementations:

- :class:`OllamaLLMClient` - wraps the Ollama async client (primary, local)
- :class:`PaidLLMClient` - wraps an OpenAI-compatible API (Groq by default)
  or Anthropic (fallback)
- :class:`FallbackLLMClient` - composite: tries Ollama first, falls back to
  the paid API

Messages may carry images (``data:`` URLs) for receipt extraction; each
client converts them to its provider's format and switches to the
configured vision model.  Every call is logged to the ``llm_calls`` table by
the handler layer.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from spendbot.config import settings

logger = logging.getLogger(__name__)


# ── Data models ───────────────────────────────────────────────────────────────


class LLMResponse(BaseModel):
    """Structured response from an LLM call."""

    content: str = ""
    input_tokens: int | None = None
    output_tokens: int | None = None
    latency_ms: int | None = None
    provider: str = ""
    model: str = ""

    @property
    def is_fallback(self) -> bool:
        return self.provider.endswith("(fallback)")


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    role: str  # "system", "user", "assistant"
    content: str = ""
    images: list[str] = Field(
        default_factory=list,
        description="Images attached to the message, as data: URLs.",
    )


def _split_data_url(data_url: str) -> tuple[str, str]:
    """Split ``data:<mime>;base64,<payload>`` into ``(mime, payload)``."""
    header, _, payload = data_url.partition(",")
    mime = header.removeprefix("data:").split(";", 1)[0] or "image/jpeg"
    return mime, payload


def _has_images(messages: list[ChatMessage]) -> bool:
    return any(msg.images for msg in messages)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


# ── Protocol ──────────────────────────────────────────────────────────────────


@runtime_checkable
class LLMClient(Protocol):
    """Abstract interface for LLM communication."""

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.0,
        max_tokens: int = 300,
    ) -> LLMResponse:
        """Send a chat completion request to the LLM.

        Args:
            messages: Conversation as a list of chat messages.  Messages with
                ``images`` are routed to a vision-capable model.
            temperature: Sampling temperature.
            max_tokens: Completion length cap.

        Returns:
            Structured LLM response.
        """
        ...


# ── Ollama implementation ─────────────────────────────────────────────────────


class OllamaLLMClient:
    """LLM client wrapping the Ollama async API.

    Uses ``settings.ollama_model`` for text and ``settings.ollama_vision_model``
    for messages with images.
    """

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        vision_model: str | None = None,
    ) -> None:
        self._base_url = base_url or settings.ollama_base_url
        self._model = model or settings.ollama_model
        self._vision_model = vision_model or settings.ollama_vision_model

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.0,
        max_tokens: int = 300,
    ) -> LLMResponse:
        """Send a chat request to the Ollama server."""
        import ollama

        client = ollama.AsyncClient(host=self._base_url)
        model = self._vision_model if _has_images(messages) else self._model

        started = time.monotonic()
        response = await client.chat(
            model=model,
            messages=_messages_to_ollama(messages),
            options={"temperature": temperature, "num_predict": max_tokens},
        )
        reply = response.get("message") or {}
        return LLMResponse(
            content=reply.get("content") or "",
            input_tokens=response.get("prompt_eval_count"),
            output_tokens=response.get("eval_count"),
            latency_ms=_elapsed_ms(started),
            provider="ollama",
            model=model,
        )


# ── Paid API implementation ──────────────────────────────────────────────────


class PaidLLMClient:
    """LLM client wrapping an OpenAI-compatible API or Anthropic.

    Provider is selected via ``settings.fallback_llm_provider``.  The OpenAI
    SDK is pointed at ``settings.openai_base_url`` so Groq and other
    compatible providers work unchanged.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        vision_model: str | None = None,
    ) -> None:
        self._provider = provider or settings.fallback_llm_provider
        self._model = model or settings.fallback_llm_model
        self._vision_model = vision_model or settings.fallback_vision_model

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.0,
        max_tokens: int = 300,
    ) -> LLMResponse:
        """Send a chat request to the paid API."""
        model = self._vision_model if _has_images(messages) else self._model
        if self._provider == "anthropic":
            return await self._chat_anthropic(messages, model, temperature, max_tokens)
        elif self._provider == "openai":
            return await self._chat_openai(messages, model, temperature, max_tokens)
        else:
            raise ValueError(f"Unknown LLM provider: {self._provider}")

    async def _chat_anthropic(
        self,
        messages: list[ChatMessage],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        import anthropic

        client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)

        # Anthropic takes the system prompt as a separate argument.
        system_prompt = "\n\n".join(m.content for m in messages if m.role == "system")
        request: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [_message_to_anthropic(m) for m in messages if m.role != "system"],
        }
        if system_prompt:
            request["system"] = system_prompt

        started = time.monotonic()
        response = await client.messages.create(**request)
        usage = response.usage
        return LLMResponse(
            content="".join(b.text for b in response.content if b.type == "text"),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            latency_ms=_elapsed_ms(started),
            provider="anthropic",
            model=model,
        )

    async def _chat_openai(
        self,
        messages: list[ChatMessage],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        import openai

        client = openai.AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url or None,
        )

        started = time.monotonic()
        response = await client.chat.completions.create(
            model=model,
            messages=[_message_to_openai(m) for m in messages],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
            latency_ms=_elapsed_ms(started),
            provider="openai",
            model=model,
        )


# ── Fallback composite client ────────────────────────────────────────────────


class FallbackLLMClient:
    """Tries the local model first and retries a failed call on the paid API.

    Any exception from the primary (Ollama down, timeout, model not pulled)
    triggers the fallback.  Responses from the fallback carry a
    ``"(fallback)"`` suffix on ``provider`` so ``llm_calls`` can tell them apart.
    """

    def __init__(
        self,
        primary: LLMClient | None = None,
        fallback: LLMClient | None = None,
    ) -> None:
        self._primary = primary or OllamaLLMClient()
        self._fallback = fallback or PaidLLMClient()

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.0,
        max_tokens: int = 300,
    ) -> LLMResponse:
        options = {"temperature": temperature, "max_tokens": max_tokens}
        vision = _has_images(messages)
        try:
            response = await self._primary.chat(messages, **options)
        except Exception as exc:
            logger.warning(
                "Primary LLM failed for %s request (%s: %s); using fallback",
                "vision" if vision else "text", type(exc).__name__, exc,
            )
        else:
            logger.debug(
                "Primary LLM %s answered in %sms", response.model, response.latency_ms,
            )
            return response

        try:
            response = await self._fallback.chat(messages, **options)
        except Exception:
            logger.exception("Fallback LLM failed as well")
            raise
        response.provider = f"{response.provider} (fallback)"
        logger.info("Fallback LLM %s answered in %sms", response.model, response.latency_ms)
        return response


# ── Format conversion helpers ─────────────────────────────────────────────────


def _messages_to_ollama(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert ChatMessage list to Ollama's format (images as raw base64)."""
    result: list[dict[str, Any]] = []
    for msg in messages:
        entry: dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.images:
            entry["images"] = [_split_data_url(url)[1] for url in msg.images]
        result.append(entry)
    return result


def _message_to_openai(msg: ChatMessage) -> dict[str, Any]:
    """OpenAI chat format; images become ``image_url`` content parts."""
    if not msg.images:
        return {"role": msg.role, "content": msg.content}
    parts: list[dict[str, Any]] = [{"type": "text", "text": msg.content}]
    parts.extend(
        {"type": "image_url", "image_url": {"url": url}} for url in msg.images
    )
    return {"role": msg.role, "content": parts}


def _message_to_anthropic(msg: ChatMessage) -> dict[str, Any]:
    """Anthropic format; images become base64 ``image`` blocks before the text."""
    if not msg.images:
        return {"role": msg.role, "content": msg.content}
    blocks: list[dict[str, Any]] = []
    for url in msg.images:
        mime, payload = _split_data_url(url)
        blocks.append(
            {
                "type": "image",
                "source": {"type": "base64", "media_type": mime, "data": payload},
            }
        )
    blocks.append({"type": "text", "text": msg.content})
    return {"role": msg.role, "content": blocks}


def _estimate_cost_usd(
    provider: str,
    model: str,
    input_tokens: int | None,
    output_tokens: int | None,
) -> Decimal | None:
    """Rough cost estimate for paid API calls.

    Pricing per 1M tokens as of late 2025; update as needed.
    """
    if provider.startswith("ollama"):
        return Decimal("0")

    in_t = input_tokens or 0
    out_t = output_tokens or 0
    name = model.lower()

    if "haiku" in name:
        return Decimal(str(in_t * 0.25 / 1_000_000 + out_t * 1.25 / 1_000_000))

    if "llama-3.1-8b" in name:
        return Decimal(str(in_t * 0.05 / 1_000_000 + out_t * 0.08 / 1_000_000))

    if "llama-4-maverick" in name:
        return Decimal(str(in_t * 0.20 / 1_000_000 + out_t * 0.60 / 1_000_000))

    if "gpt-4o-mini" in name:
        return Decimal(str(in_t * 0.15 / 1_000_000 + out_t * 0.60 / 1_000_000))

    return None
