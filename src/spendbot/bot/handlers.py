"""Per-message handling for inbound WhatsApp messages.

:func:`handle_inbound` is the single seam between the webhook and the
conversation state machine:

1. Open a DB session and send the message through the orchestrator.
2. Log any LLM calls to ``llm_calls``.
3. Commit, and only then delete released receipt images and send the
   document (exports) and text replies.

If anything fails, the exception is logged, recorded in ``failure_log``
through a fresh session, and the user receives a generic error reply.
"""

from __future__ import annotations

import logging
import traceback
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from spendbot.agent import process_message, release_images
from spendbot.agent.llm_client import _estimate_cost_usd
from spendbot.agent.messages import InboundMessage, MediaPayload
from spendbot.agent.orchestrator import OrchestratorResult
from spendbot.bot.formatters import GENERIC_ERROR_TEXT
from spendbot.bot.whatsapp import ChannelError
from spendbot.db.session import get_session
from spendbot.ledger import repository

logger = logging.getLogger(__name__)


class ReplyChannel(Protocol):
    """What the handler needs from the messaging channel."""

    async def send_text(self, to: str, text: str) -> None: ...

    async def send_document(
        self, to: str, media: MediaPayload, caption: str | None = None,
    ) -> None: ...


async def handle_inbound(message: InboundMessage, channel: ReplyChannel) -> OrchestratorResult | None:
    """Process one inbound message end to end.

    Returns:
        The orchestrator result, or ``None`` if processing failed (the
        failure has then been logged and answered).
    """
    try:
        async with get_session() as session:
            result = await process_message(message, session)
            await _log_llm_responses(session, result)
        # Session committed: safe to drop images and confirm to the user.
        if result.released_images:
            await release_images(result.released_images)
        await _send_result(channel, message.sender, result)
        return result
    except Exception as exc:
        source = _failure_source(exc)
        logger.exception("Failed to handle message from %s (%s)", message.sender, source)
        await _record_failure(message, exc, source)
        await _send_generic_error(channel, message.sender)
        return None


async def _send_result(channel: ReplyChannel, to: str, result: OrchestratorResult) -> None:
    if result.document is not None:
        await channel.send_document(to, result.document)
    for reply in result.replies:
        await channel.send_text(to, reply)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _failure_source(exc: BaseException) -> str:
    if isinstance(exc, SQLAlchemyError):
        return "storage"
    if isinstance(exc, ChannelError):
        return "channel"
    return "internal"


async def _record_failure(message: InboundMessage, exc: BaseException, source: str) -> None:
    """Write a ``failure_log`` row; a failure here is only logged."""
    try:
        async with get_session() as session:
            await repository.save_failure(
                session,
                user_id=message.sender,
                user_input=message.body or ("[media]" if message.has_media else ""),
                error_reply=GENERIC_ERROR_TEXT,
                traceback_str="".join(
                    traceback.format_exception(type(exc), exc, exc.__traceback__)
                ),
                failure_source=source,
            )
    except Exception:
        logger.exception("Could not record failure for %s", message.sender)


async def _send_generic_error(channel: ReplyChannel, to: str) -> None:
    try:
        await channel.send_text(to, GENERIC_ERROR_TEXT)
    except Exception:
        logger.exception("Could not send error reply to %s", to)


async def _log_llm_responses(session: AsyncSession, result: OrchestratorResult) -> None:
    """Log all LLM calls embedded in an orchestrator result."""
    for llm_response in result.llm_responses:
        if llm_response is None:
            continue
        provider = llm_response.provider.replace(" (fallback)", "")
        await repository.save_llm_call(
            session,
            provider=provider,
            model=llm_response.model,
            input_tokens=llm_response.input_tokens,
            output_tokens=llm_response.output_tokens,
            latency_ms=llm_response.latency_ms,
            is_fallback=llm_response.is_fallback,
            cost_usd=_estimate_cost_usd(
                provider, llm_response.model,
                llm_response.input_tokens, llm_response.output_tokens,
            ),
        )
