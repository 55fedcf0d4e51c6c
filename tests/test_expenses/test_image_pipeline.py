"""Tests for the confidence-gated receipt image pipeline."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from spendbot.agent.extraction import ExtractedExpense
from spendbot.agent.messages import MediaPayload
from spendbot.agent.state import ImageReference
from spendbot.expenses.image_pipeline import (
    ConfidenceTier,
    ImageOutcome,
    caption_hint,
    confidence_tier,
    process_image,
    receipt_filename,
)

TODAY = date(2024, 6, 10)

# ── Helpers ───────────────────────────────────────────────────────────────────


def _media() -> MediaPayload:
    return MediaPayload(mime_type="image/jpeg", data=b"\xff\xd8fake-jpeg")


def _extractor(result: ExtractedExpense) -> MagicMock:
    extractor = MagicMock()
    extractor.extract_from_image = AsyncMock(return_value=result)
    return extractor


def _reading(confidence: float, item: str = "Supermarket", price: str = "42.10") -> ExtractedExpense:
    return ExtractedExpense(
        item=item, price=Decimal(price), currency="EUR", confidence=confidence,
    )


def _image_host() -> MagicMock:
    host = MagicMock()
    host.upload = AsyncMock(
        return_value=ImageReference(provider="cloudinary", ref="u/2024/r1", url="https://img/r1"),
    )
    host.delete = AsyncMock()
    return host


async def _run(result: ExtractedExpense, caption: str = "", image_host=None):
    return await process_image(
        media=_media(),
        caption=caption,
        user_id="15550001",
        today=TODAY,
        extractor=_extractor(result),
        image_host=image_host,
    )


# ── Tier mapping ──────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("confidence", "tier"),
    [
        (1.0, ConfidenceTier.HIGH),
        (0.85, ConfidenceTier.HIGH),
        (0.8499, ConfidenceTier.MEDIUM),
        (0.5, ConfidenceTier.MEDIUM),
        (0.4999, ConfidenceTier.LOW),
        (0.0, ConfidenceTier.LOW),
    ],
)
def test_confidence_tier_boundaries(confidence: float, tier: ConfidenceTier) -> None:
    assert confidence_tier(confidence) is tier


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("confidence", "outcome"),
    [
        (0.85, ImageOutcome.AUTO_SAVED),
        (0.8499, ImageOutcome.CONFIRMATION_REQUESTED),
        (0.5, ImageOutcome.CONFIRMATION_REQUESTED),
        (0.4999, ImageOutcome.CLARIFICATION_REQUESTED),
    ],
)
async def test_gate_boundaries(confidence: float, outcome: ImageOutcome) -> None:
    decision = await _run(_reading(confidence))
    assert decision.outcome is outcome


# ── Caption handling ──────────────────────────────────────────────────────────


def test_caption_hint() -> None:
    assert caption_hint("  Weekly   groceries ") == "Weekly groceries"
    assert caption_hint("Groceries 25") is None
    assert caption_hint("") is None
    assert caption_hint(None) is None


@pytest.mark.asyncio
async def test_parseable_caption_wins_without_extraction() -> None:
    extractor = _extractor(_reading(0.1))
    decision = await process_image(
        media=_media(),
        caption="Groceries 25",
        user_id="15550001",
        today=TODAY,
        extractor=extractor,
    )
    assert decision.outcome is ImageOutcome.AUTO_SAVED
    assert decision.draft is not None
    assert decision.draft.item == "Groceries"
    assert decision.draft.price == Decimal("25.00")
    assert decision.draft.expense_date == TODAY
    extractor.extract_from_image.assert_not_called()


@pytest.mark.asyncio
async def test_high_confidence_uses_label_caption_as_item() -> None:
    decision = await _run(_reading(0.95), caption="Groceries")
    assert decision.outcome is ImageOutcome.AUTO_SAVED
    assert decision.draft.item == "Groceries"
    assert decision.draft.price == Decimal("42.10")


@pytest.mark.asyncio
async def test_medium_confidence_keeps_extracted_item() -> None:
    decision = await _run(_reading(0.7), caption="Groceries")
    assert decision.outcome is ImageOutcome.CONFIRMATION_REQUESTED
    assert decision.draft.item == "Supermarket"
    assert decision.confidence == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_low_confidence_with_label_caption_awaits_amount() -> None:
    decision = await _run(_reading(0.2), caption="Pharmacy")
    assert decision.outcome is ImageOutcome.AWAITING_AMOUNT
    assert decision.draft.item == "Pharmacy"
    assert decision.draft.price == Decimal("0.00")


@pytest.mark.asyncio
async def test_extraction_error_without_caption_asks_for_clarification() -> None:
    decision = await _run(ExtractedExpense(error="unreadable", confidence=0.9))
    assert decision.outcome is ImageOutcome.CLARIFICATION_REQUESTED
    assert decision.draft is None
    assert decision.confidence == 0.0


# ── Image hosting ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_upload_attached_to_draft() -> None:
    host = _image_host()
    decision = await _run(_reading(0.9), image_host=host)
    host.upload.assert_awaited_once()
    assert decision.draft.image is not None
    assert decision.draft.image.url == "https://img/r1"


@pytest.mark.asyncio
async def test_upload_failure_continues_without_image() -> None:
    host = _image_host()
    host.upload.side_effect = RuntimeError("cloudinary down")
    decision = await _run(_reading(0.9), image_host=host)
    assert decision.outcome is ImageOutcome.AUTO_SAVED
    assert decision.draft.image is None


@pytest.mark.asyncio
async def test_no_upload_when_clarifying() -> None:
    host = _image_host()
    await _run(_reading(0.1), image_host=host)
    host.upload.assert_not_called()


def test_receipt_filename() -> None:
    name = receipt_filename(_media(), TODAY)
    assert name.startswith("receipt_20240610_")
    assert name.endswith((".jpg", ".jpeg", ".jpe"))
    named = MediaPayload(mime_type="image/png", data=b"x", filename="bill.png")
    assert receipt_filename(named, TODAY) == "bill.png"
