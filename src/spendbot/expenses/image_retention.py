"""Purge hosted receipt images of old expenses.

Run as ``spendbot-purge-images`` (or ``python -m spendbot.expenses.image_retention``),
typically from a daily cron job.  For every expense dated more than
``settings.image_retention_days`` ago that still references a hosted image:

1. delete the image from the host (a missing image counts as deleted);
2. clear ``image_provider`` / ``image_ref`` / ``image_url`` and stamp
   ``image_deleted_at``.

The expense row itself is kept.  An image whose deletion fails keeps its
reference and is retried on the next run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from spendbot.config import settings
from spendbot.integrations.image_host import (
    PROVIDER_CLOUDINARY,
    ImageHost,
    ImageHostError,
    create_image_host,
)
from spendbot.ledger import repository

logger = logging.getLogger(__name__)


@dataclass
class RetentionReport:
    """Counters for one purge run."""

    processed: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0


def retention_cutoff(today: date, days: int | None = None) -> date:
    """Expenses dated strictly before this day lose their hosted image."""
    return today - timedelta(days=settings.image_retention_days if days is None else days)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def purge_expired_images(
    session: AsyncSession,
    image_host: ImageHost | None,
    *,
    today: date,
    limit: int | None = None,
    now: Callable[[], datetime] = _utcnow,
) -> RetentionReport:
    """Delete expired receipt images and clear their references.

    Args:
        session: Active DB session (the caller commits).
        image_host: Host to delete from, or ``None`` when hosting is not
            configured; references are then cleared without remote deletion.
        today: Reference day for the retention cutoff.
        limit: Maximum number of expenses handled in this run.
        now: Timestamp source for ``image_deleted_at``.

    Returns:
        A :class:`RetentionReport` with the run's counters.
    """
    cutoff = retention_cutoff(today)
    expenses = await repository.list_expenses_with_expired_images(session, cutoff, limit=limit)
    logger.info("Purging receipt images older than %s: %d candidates", cutoff.isoformat(), len(expenses))

    report = RetentionReport()
    for expense in expenses:
        report.processed += 1
        label = f"#{expense.number:03d} ({expense.user_id})"

        if expense.image_provider == PROVIDER_CLOUDINARY and expense.image_ref:
            if image_host is None:
                logger.warning("Image hosting not configured; not deleting %s for %s", expense.image_ref, label)
                report.skipped += 1
            else:
                try:
                    await image_host.delete(expense.image_ref)
                except Exception:
                    logger.exception("Failed to delete image %s for %s", expense.image_ref, label)
                    report.errors += 1
                    continue
                logger.info("Deleted image %s for %s", expense.image_ref, label)
                report.deleted += 1
        else:
            logger.warning("Expense %s has no provider/ref; clearing without remote deletion", label)
            report.skipped += 1

        await repository.clear_expense_image(session, expense, now())

    logger.info(
        "Image purge done. Processed: %d, deleted: %d, skipped: %d, errors: %d",
        report.processed, report.deleted, report.skipped, report.errors,
    )
    return report


# ── Command line ──────────────────────────────────────────────────────────────


async def run_purge() -> RetentionReport:
    """Run one purge against the configured database and image host."""
    from spendbot.db.session import engine, get_session

    try:
        image_host = create_image_host()
    except ImageHostError:
        logger.warning("Image host misconfigured; references will be cleared without deletion")
        image_host = None

    try:
        async with get_session() as session:
            return await purge_expired_images(
                session,
                image_host,
                today=date.today(),
                limit=settings.image_retention_batch_size,
            )
    finally:
        await engine.dispose()


def main() -> None:
    """Entry point for ``spendbot-purge-images``."""
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    report = asyncio.run(run_purge())
    if report.errors:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
