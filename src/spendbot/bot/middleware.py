"""Sender filters applied to every inbound webhook message.

Runs *before* the message reaches the handler:

- status broadcasts (``status@broadcast``) and group chats (``…@g.us``)
  are never answered;
- if ``settings.allowed_numbers`` is configured, only listed senders may
  use the bot.  An empty list admits everyone (useful during development).
"""

from __future__ import annotations

import logging
import re

from spendbot.config import settings

logger = logging.getLogger(__name__)

BROADCAST_SENDER = "status@broadcast"
GROUP_SUFFIX = "@g.us"

_NON_DIGITS = re.compile(r"\D")


def normalize_number(sender: str) -> str:
    """Digits only: ``"+971 50-123 4567"`` → ``"971501234567"``."""
    return _NON_DIGITS.sub("", sender)


def is_broadcast_or_group(sender: str) -> bool:
    return sender == BROADCAST_SENDER or sender.endswith(GROUP_SUFFIX)


def is_sender_allowed(sender: str, allowed: list[str] | None = None) -> bool:
    """Apply the broadcast/group filter and the allow-list to *sender*."""
    if not sender:
        return False
    if is_broadcast_or_group(sender):
        logger.debug("Ignoring broadcast/group message from %s", sender)
        return False

    allowed_numbers = settings.allowed_numbers if allowed is None else allowed
    if not allowed_numbers:
        return True

    if normalize_number(sender) not in {normalize_number(n) for n in allowed_numbers}:
        logger.warning("Rejected message from unauthorized sender %s", sender)
        return False
    return True
