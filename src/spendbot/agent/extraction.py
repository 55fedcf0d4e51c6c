"""LLM-backed expense extraction from text and receipt images.

The LLM is treated as an unreliable collaborator: every failure (transport
error, malformed JSON, missing fields) is caught here and turned into an
:class:`ExtractedExpense` with ``error`` set, never an exception.

Receipt images take two calls: a verbatim transcription, then a structured
extraction with a self-reported confidence.  When the transcription does not
contain the extracted price, the confidence is capped just below the
auto-save threshold so the user is asked to confirm.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from spendbot.agent.llm_client import ChatMessage, LLMClient, LLMResponse
from spendbot.agent.prompts import (
    EXTRACT_IMAGE_PROMPT,
    EXTRACT_TEXT_PROMPT,
    JSON_SYSTEM_PROMPT,
    OCR_SYSTEM_PROMPT,
    TRANSCRIBE_RECEIPT_PROMPT,
)
from spendbot.config import settings
from spendbot.expenses.currency import KNOWN_CODES, to_cents

logger = logging.getLogger(__name__)

#: Confidence ceiling for image extractions the transcription does not back up.
UNCORROBORATED_CONFIDENCE_CAP = 0.84

_FENCE_RE = re.compile(r"```(?:json)?\s*|```")
_NUMBER_TOKEN_RE = re.compile(r"\d+(?:[.,]\d+)*")


@dataclass
class ExtractedExpense:
    """Best-effort expense from the LLM (or why there is none)."""

    item: str | None = None
    price: Decimal | None = None
    currency: str | None = None
    confidence: float = 0.0
    error: str | None = None
    transcription: str = ""
    llm_responses: list[LLMResponse] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.item) and self.price is not None


def _truncate(text: str, limit: int = 300) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


def _parse_json_reply(content: str) -> dict[str, Any] | None:
    """Parse an LLM JSON reply, tolerating code fences."""
    cleaned = _FENCE_RE.sub("", content or "").strip()
    if not cleaned:
        return None
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        # Some models wrap the object in prose; take the outermost braces.
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def _coerce_price(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        return None
    if not price.is_finite() or price <= 0:
        return None
    return to_cents(price)


def _coerce_currency(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    code = value.strip().upper()
    return code if code in KNOWN_CODES else None


def _coerce_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(confidence, 0.0), 1.0)


def _expense_from_payload(
    payload: dict[str, Any] | None,
    default_confidence: float = 1.0,
) -> ExtractedExpense:
    """Build an :class:`ExtractedExpense` from the model's JSON reply.

    *default_confidence* applies when the model omits ``confidence``.
    """
    if payload is None:
        return ExtractedExpense(error="unparseable")
    if payload.get("error"):
        return ExtractedExpense(
            error=str(payload["error"]),
            confidence=_coerce_confidence(payload.get("confidence", 0)),
        )

    item = str(payload.get("item") or "").strip()
    price = _coerce_price(payload.get("price"))
    if not item or price is None:
        return ExtractedExpense(error="incomplete")

    return ExtractedExpense(
        item=item,
        price=price,
        currency=_coerce_currency(payload.get("currency")),
        confidence=_coerce_confidence(payload.get("confidence", default_confidence)),
    )


def transcription_mentions_price(transcription: str, price: Decimal) -> bool:
    """True if any number in *transcription* equals *price* (to the cent).

    Both ``1,234.50`` and ``1.234,50`` style separators are accepted.
    """
    target = to_cents(price)
    for token in _NUMBER_TOKEN_RE.findall(transcription or ""):
        candidates = {
            token.replace(",", ""),
            token.replace(".", "").replace(",", "."),
            token.replace(",", "."),
        }
        for candidate in candidates:
            try:
                if to_cents(Decimal(candidate)) == target:
                    return True
            except InvalidOperation:
                continue
    return False


class ExpenseExtractor:
    """Turns text or receipt images into expenses via an :class:`LLMClient`.

    Args:
        llm_client: Client used for all extraction calls.
    """

    def __init__(self, llm_client: LLMClient) -> None:
        self._llm = llm_client

    async def extract_from_text(self, text: str) -> ExtractedExpense:
        """Extract ``{item, price, currency}`` from free text."""
        messages = [
            ChatMessage(role="system", content=JSON_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=EXTRACT_TEXT_PROMPT.format(user_message=text.replace('"', "'")),
            ),
        ]
        try:
            response = await self._llm.chat(messages, temperature=0.0, max_tokens=100)
        except Exception:
            logger.exception("LLM text extraction failed for: %s", _truncate(text, 100))
            return ExtractedExpense(error="llm_unavailable")

        logger.info("LLM text extraction response: %s", _truncate(response.content))
        result = _expense_from_payload(_parse_json_reply(response.content))
        result.llm_responses.append(response)
        return result

    async def extract_from_image(
        self,
        image_data_url: str,
        caption: str = "",
    ) -> ExtractedExpense:
        """Extract an expense with a confidence score from a receipt photo.

        Args:
            image_data_url: The image as a ``data:<mime>;base64,...`` URL.
            caption: The user's caption, passed to the model as context.

        Returns:
            An :class:`ExtractedExpense`.  On any failure ``error`` is set
            and ``confidence`` is whatever the model reported (default 0).
        """
        responses: list[LLMResponse] = []
        transcription = await self._transcribe(image_data_url, responses)

        messages = [
            ChatMessage(role="system", content=JSON_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=EXTRACT_IMAGE_PROMPT.format(caption=caption.replace('"', "'")),
                images=[image_data_url],
            ),
        ]
        try:
            response = await self._llm.chat(messages, temperature=0.1, max_tokens=200)
        except Exception:
            logger.exception("LLM image extraction failed")
            return ExtractedExpense(
                error="llm_unavailable",
                transcription=transcription,
                llm_responses=responses,
            )
        responses.append(response)
        logger.info("LLM image extraction response: %s", _truncate(response.content))

        # A receipt without a self-reported score is never auto-saved.
        result = _expense_from_payload(
            _parse_json_reply(response.content),
            default_confidence=settings.confirm_confidence,
        )
        result.transcription = transcription
        result.llm_responses = responses

        if result.ok and not transcription_mentions_price(transcription, result.price):
            if result.confidence > UNCORROBORATED_CONFIDENCE_CAP:
                logger.info(
                    "Price %s not found in transcription; capping confidence %.2f -> %.2f",
                    result.price, result.confidence, UNCORROBORATED_CONFIDENCE_CAP,
                )
                result.confidence = UNCORROBORATED_CONFIDENCE_CAP
        return result

    async def _transcribe(self, image_data_url: str, responses: list[LLMResponse]) -> str:
        messages = [
            ChatMessage(role="system", content=OCR_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=TRANSCRIBE_RECEIPT_PROMPT,
                images=[image_data_url],
            ),
        ]
        try:
            response = await self._llm.chat(messages, temperature=0.1, max_tokens=500)
        except Exception:
            logger.warning("Receipt transcription failed; continuing without it", exc_info=True)
            return ""
        responses.append(response)
        logger.debug("Receipt transcription: %s", _truncate(response.content))
        return response.content or ""
