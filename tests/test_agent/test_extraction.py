"""Tests for LLM-backed expense extraction."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from spendbot.agent.extraction import (
    UNCORROBORATED_CONFIDENCE_CAP,
    ExpenseExtractor,
    _parse_json_reply,
    transcription_mentions_price,
)
from spendbot.agent.llm_client import LLMResponse
from spendbot.expenses.image_pipeline import ConfidenceTier, confidence_tier

DATA_URL = "data:image/jpeg;base64,AAAA"


def _llm(*contents: str | Exception) -> AsyncMock:
    llm = AsyncMock()
    llm.chat = AsyncMock(
        side_effect=[
            c if isinstance(c, Exception) else LLMResponse(content=c, provider="ollama", model="m")
            for c in contents
        ]
    )
    return llm


# ── JSON reply parsing ────────────────────────────────────────────────────────


def test_parse_json_plain() -> None:
    assert _parse_json_reply('{"item": "Tea", "price": 5}') == {"item": "Tea", "price": 5}


def test_parse_json_fenced() -> None:
    assert _parse_json_reply('```json\n{"item": "Tea"}\n```') == {"item": "Tea"}


def test_parse_json_wrapped_in_prose() -> None:
    assert _parse_json_reply('Sure! {"item": "Tea", "price": 5} Hope it helps') == {
        "item": "Tea",
        "price": 5,
    }


@pytest.mark.parametrize("content", ["", "no json here", "[1, 2]", "{broken"])
def test_parse_json_rejects(content: str) -> None:
    assert _parse_json_reply(content) is None


def test_transcription_mentions_price() -> None:
    assert transcription_mentions_price("TOTAL 1,234.50\nCASH", Decimal("1234.50"))
    assert transcription_mentions_price("Summe 1.234,50 EUR", Decimal("1234.5"))
    assert transcription_mentions_price("Total 12", Decimal("12.00"))
    assert not transcription_mentions_price("Total 13.00", Decimal("12.00"))
    assert not transcription_mentions_price("", Decimal("12.00"))


# ── Text extraction ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_extract_from_text_success() -> None:
    extractor = ExpenseExtractor(_llm('{"item": "Bananas", "price": "100", "currency": "bdt"}'))
    result = await extractor.extract_from_text("100 2 bananas")

    assert result.ok
    assert result.item == "Bananas"
    assert result.price == Decimal("100.00")
    assert result.currency == "BDT"
    assert len(result.llm_responses) == 1


@pytest.mark.asyncio
async def test_extract_from_text_model_error() -> None:
    extractor = ExpenseExtractor(_llm('{"error": "invalid"}'))
    result = await extractor.extract_from_text("hello there")
    assert not result.ok
    assert result.error == "invalid"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content",
    ['{"item": "Tea", "price": 0}', '{"item": "", "price": 5}', '{"item": "Tea", "price": "abc"}'],
)
async def test_extract_from_text_incomplete(content: str) -> None:
    result = await ExpenseExtractor(_llm(content)).extract_from_text("tea")
    assert result.error == "incomplete"


@pytest.mark.asyncio
async def test_extract_from_text_unknown_currency_dropped() -> None:
    result = await ExpenseExtractor(
        _llm('{"item": "Tea", "price": 5, "currency": "XYZ"}')
    ).extract_from_text("tea 5 xyz")
    assert result.ok
    assert result.currency is None


@pytest.mark.asyncio
async def test_extract_from_text_llm_unavailable() -> None:
    result = await ExpenseExtractor(_llm(ConnectionError("down"))).extract_from_text("tea")
    assert result.error == "llm_unavailable"
    assert result.llm_responses == []


# ── Image extraction ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_extract_from_image_corroborated_keeps_confidence() -> None:
    llm = _llm(
        "SUPER MART\nMilk 2.00\nTOTAL 42.50",
        '{"item": "Groceries", "price": 42.5, "confidence": 0.95}',
    )
    result = await ExpenseExtractor(llm).extract_from_image(DATA_URL, caption="weekly shop")

    assert result.ok
    assert result.price == Decimal("42.50")
    assert result.confidence == 0.95
    assert "TOTAL 42.50" in result.transcription
    assert len(result.llm_responses) == 2
    assert llm.chat.call_args_list[1].args[0][1].images == [DATA_URL]
    assert "weekly shop" in llm.chat.call_args_list[1].args[0][1].content


@pytest.mark.asyncio
async def test_extract_from_image_uncorroborated_is_capped() -> None:
    llm = _llm("SUPER MART\nTOTAL 40.00", '{"item": "Groceries", "price": 42.5, "confidence": 0.97}')
    result = await ExpenseExtractor(llm).extract_from_image(DATA_URL)
    assert result.confidence == UNCORROBORATED_CONFIDENCE_CAP


@pytest.mark.asyncio
async def test_extract_from_image_low_confidence_not_raised() -> None:
    llm = _llm("blurry", '{"item": "Dinner", "price": 30, "confidence": 0.4}')
    result = await ExpenseExtractor(llm).extract_from_image(DATA_URL)
    assert result.confidence == 0.4


@pytest.mark.asyncio
async def test_extract_from_image_transcription_failure_continues() -> None:
    llm = _llm(RuntimeError("vision down"), '{"item": "Lunch", "price": 12, "confidence": 0.9}')
    result = await ExpenseExtractor(llm).extract_from_image(DATA_URL)

    assert result.ok
    assert result.transcription == ""
    assert result.confidence == UNCORROBORATED_CONFIDENCE_CAP
    assert len(result.llm_responses) == 1


@pytest.mark.asyncio
async def test_extract_from_image_not_a_receipt() -> None:
    llm = _llm("a cat", '{"error": "not_a_receipt", "confidence": 0.2}')
    result = await ExpenseExtractor(llm).extract_from_image(DATA_URL)
    assert result.error == "not_a_receipt"
    assert result.confidence == 0.2


@pytest.mark.asyncio
async def test_extract_from_image_extraction_failure() -> None:
    llm = _llm("TOTAL 5", ConnectionError("down"))
    result = await ExpenseExtractor(llm).extract_from_image(DATA_URL)
    assert result.error == "llm_unavailable"
    assert result.transcription == "TOTAL 5"
    assert len(result.llm_responses) == 1


@pytest.mark.asyncio
async def test_extract_from_image_missing_confidence_lands_in_confirmation_band() -> None:
    llm = _llm("SUPER MART\nTOTAL 42.50", '{"item": "Groceries", "price": 42.5}')
    with patch("spendbot.agent.extraction.settings") as mock_settings:
        mock_settings.confirm_confidence = 0.5
        result = await ExpenseExtractor(llm).extract_from_image(DATA_URL)

    assert result.ok
    assert result.confidence == 0.5


@pytest.mark.asyncio
async def test_extract_from_image_missing_confidence_asks_for_confirmation() -> None:
    llm = _llm("SUPER MART\nTOTAL 42.50", '{"item": "Groceries", "price": 42.5}')
    result = await ExpenseExtractor(llm).extract_from_image(DATA_URL)
    assert confidence_tier(result.confidence) is ConfidenceTier.MEDIUM


@pytest.mark.asyncio
async def test_extract_from_text_missing_confidence_defaults_high() -> None:
    llm = _llm('{"item": "Coffee", "price": 3}')
    result = await ExpenseExtractor(llm).extract_from_text("coffee three")
    assert result.ok
    assert result.confidence == 1.0
