"""Confidence-gated receipt image pipeline.

Decides what to do with a photographed receipt, in priority order:

1. A caption the text parser can read wins outright and is auto-saved.
2. Otherwise the image is sent to the extractor, and its confidence picks
   the tier:

   ============  =====================  =================================
   Tier          Confidence             Outcome
   ============  =====================  =================================
   HIGH          ``>= 0.85``            auto-save
   MEDIUM        ``0.5 <= c < 0.85``    draft + ask YES/NO
   LOW           ``< 0.5``              ask for the amount when a
                                        digit-free caption names the item,
                                        otherwise ask for a clearer photo
   ============  =====================  =================================

The pipeline only *decides*; the orchestrator persists drafts and expenses.
Resolved drafts never carry the detected currency as authoritative; the
orchestrator stamps the user's preferred currency when saving.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import StrEnum

from spendbot.agent.extraction import ExpenseExtractor
from spendbot.agent.llm_client import LLMResponse
from spendbot.agent.messages import MediaPayload
from spendbot.agent.state import ExpenseDraft, ImageReference
from spendbot.config import settings
from spendbot.expenses.currency import to_cents
from spendbot.expenses.parser import parse_expense_text
from spendbot.integrations.image_host import ImageHost

logger = logging.getLogger(__name__)

_DIGIT_RE = re.compile(r"\d")


class ConfidenceTier(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ImageOutcome(StrEnum):
    """What the orchestrator should do with a receipt."""

    AUTO_SAVED = "auto_saved"
    CONFIRMATION_REQUESTED = "confirmation_requested"
    AWAITING_AMOUNT = "awaiting_amount"
    CLARIFICATION_REQUESTED = "clarification_requested"


@dataclass
class ImageDecision:
    """Result of :func:`process_image`.

    ``draft`` is set for every outcome except ``CLARIFICATION_REQUESTED``.
    """

    outcome: ImageOutcome
    draft: ExpenseDraft | None = None
    confidence: float | None = None
    llm_responses: list[LLMResponse] = field(default_factory=list)


def confidence_tier(confidence: float) -> ConfidenceTier:
    """Map an extraction confidence onto its gating tier."""
    if confidence >= settings.auto_save_confidence:
        return ConfidenceTier.HIGH
    if confidence >= settings.confirm_confidence:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


def caption_hint(caption: str | None) -> str | None:
    """A caption usable as an item name: non-empty and free of digits."""
    if not caption:
        return None
    hint = " ".join(caption.split())
    if not hint or _DIGIT_RE.search(hint):
        return None
    return hint


def receipt_filename(media: MediaPayload, today: date) -> str:
    """Unique file name for an uploaded receipt."""
    if media.filename:
        return media.filename
    extension = mimetypes.guess_extension(media.mime_type) or ".jpg"
    return f"receipt_{today:%Y%m%d}_{uuid.uuid4().hex[:8]}{extension}"


async def _upload(
    image_host: ImageHost | None,
    media: MediaPayload,
    user_id: str,
    today: date,
) -> ImageReference | None:
    """Upload the receipt; failures are logged and the expense goes on without it."""
    if image_host is None:
        return None
    try:
        return await image_host.upload(
            media.data,
            media.mime_type,
            receipt_filename(media, today),
            user_id,
            today,
        )
    except Exception:
        logger.exception("Receipt upload failed for user %s; continuing without image", user_id)
        return None


async def process_image(
    *,
    media: MediaPayload,
    caption: str,
    user_id: str,
    today: date,
    extractor: ExpenseExtractor,
    image_host: ImageHost | None = None,
) -> ImageDecision:
    """Run the receipt decision policy.

    Args:
        media: The downloaded image.
        caption: The message caption (may be empty).
        user_id: Sender, used for the image folder.
        today: Processing day; becomes the expense date.
        extractor: LLM-backed extractor for the image.
        image_host: Where to store the photo, or ``None`` to skip hosting.

    Returns:
        An :class:`ImageDecision`.
    """
    caption = (caption or "").strip()

    parsed = parse_expense_text(caption) if caption else None
    if parsed is not None:
        logger.info("Using caption for receipt from %s: %r", user_id, caption)
        image = await _upload(image_host, media, user_id, today)
        return ImageDecision(
            outcome=ImageOutcome.AUTO_SAVED,
            draft=ExpenseDraft(
                item=parsed.item,
                price=parsed.price,
                currency=parsed.currency,
                expense_date=today,
                image=image,
            ),
        )

    extracted = await extractor.extract_from_image(media.data_url(), caption)
    hint = caption_hint(caption)
    confidence = extracted.confidence if extracted.ok else 0.0
    tier = confidence_tier(confidence)
    logger.info(
        "Receipt from %s: confidence=%.2f tier=%s ok=%s",
        user_id, confidence, tier, extracted.ok,
    )

    if extracted.ok and tier is not ConfidenceTier.LOW:
        image = await _upload(image_host, media, user_id, today)
        item = hint if (hint and tier is ConfidenceTier.HIGH) else extracted.item
        draft = ExpenseDraft(
            item=item or "Receipt",
            price=to_cents(extracted.price or Decimal("0")),
            currency=extracted.currency,
            confidence=confidence,
            expense_date=today,
            image=image,
        )
        outcome = (
            ImageOutcome.AUTO_SAVED
            if tier is ConfidenceTier.HIGH
            else ImageOutcome.CONFIRMATION_REQUESTED
        )
        return ImageDecision(
            outcome=outcome,
            draft=draft,
            confidence=confidence,
            llm_responses=extracted.llm_responses,
        )

    if hint:
        image = await _upload(image_host, media, user_id, today)
        return ImageDecision(
            outcome=ImageOutcome.AWAITING_AMOUNT,
            draft=ExpenseDraft(
                item=hint,
                price=Decimal("0.00"),
                confidence=confidence,
                expense_date=today,
                image=image,
            ),
            confidence=confidence,
            llm_responses=extracted.llm_responses,
        )

    return ImageDecision(
        outcome=ImageOutcome.CLARIFICATION_REQUESTED,
        confidence=confidence,
        llm_responses=extracted.llm_responses,
    )
