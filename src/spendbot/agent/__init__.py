"""LLM agent orchestration layer.

Provides the entry point for the bot handler layer:

- :func:`process_message` - send one inbound WhatsApp message through the
  per-user state machine (onboarding, commands, expenses, receipts).

- :func:`release_images` - delete the hosted images a committed step
  released (deleted expenses, discarded receipt drafts).

:func:`process_message` returns an
:class:`~spendbot.agent.orchestrator.OrchestratorResult`.

The orchestrator and its collaborators are imported inside the functions:
the expense modules import :mod:`spendbot.agent.extraction`, and this
package must stay importable from there.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

if TYPE_CHECKING:
    from spendbot.agent.extraction import ExpenseExtractor
    from spendbot.agent.llm_client import LLMClient
    from spendbot.agent.messages import InboundMessage
    from spendbot.agent.orchestrator import Orchestrator, OrchestratorResult
    from spendbot.integrations.image_host import ImageHost

logger = logging.getLogger(__name__)

# Module-level singletons, lazily initialized.
_llm_client: LLMClient | None = None
_orchestrator: Orchestrator | None = None
_image_host: ImageHost | None = None


def get_llm_client() -> LLMClient:
    """Return the module-level LLM client, creating it on first call."""
    global _llm_client
    if _llm_client is None:
        from spendbot.agent.llm_client import FallbackLLMClient

        _llm_client = FallbackLLMClient()
    return _llm_client


def set_llm_client(client: LLMClient) -> None:
    """Override the module-level LLM client (useful for testing)."""
    global _llm_client, _orchestrator
    _llm_client = client
    _orchestrator = None


def set_image_host(host: ImageHost | None) -> None:
    """Configure receipt image hosting for the orchestrator."""
    global _image_host, _orchestrator
    _image_host = host
    _orchestrator = None


def get_extractor() -> ExpenseExtractor:
    from spendbot.agent.extraction import ExpenseExtractor

    return ExpenseExtractor(get_llm_client())


def get_orchestrator() -> Orchestrator:
    """Return the module-level orchestrator, creating it on first call."""
    global _orchestrator
    if _orchestrator is None:
        from spendbot.agent.orchestrator import Orchestrator

        _orchestrator = Orchestrator(extractor=get_extractor(), image_host=_image_host)
    return _orchestrator


def set_orchestrator(orch: Orchestrator | None) -> None:
    """Override the module-level orchestrator (useful for testing)."""
    global _orchestrator
    _orchestrator = orch


async def process_message(
    message: InboundMessage,
    session: AsyncSession,
) -> OrchestratorResult:
    """Send an inbound message through the conversation state machine.

    This is the primary entry point called by the bot handler.

    Args:
        message: The channel-neutral inbound message.
        session: Active async database session.

    Returns:
        An :class:`OrchestratorResult` with the replies and optional
        document to send.
    """
    return await get_orchestrator().handle_message(message, session)


async def release_images(refs: list[str]) -> None:
    """Delete hosted receipt images released by a committed step."""
    if refs:
        await get_orchestrator().release_images(refs)
