"""aiohttp webhook server for the WhatsApp Cloud API.

Routes:

- ``GET /webhook`` - subscription verification (echoes ``hub.challenge``)
- ``POST /webhook`` - inbound message notifications
- ``GET /health`` - liveness check

Inbound messages are de-duplicated by WhatsApp message ID, passed through
the sender filters in :mod:`spendbot.bot.middleware`, and handed to
:func:`spendbot.bot.handlers.handle_inbound` one at a time.  The POST
handler always answers ``200 {"status": "ok"}`` so WhatsApp does not
redeliver a payload we have already seen.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from spendbot.agent.messages import InboundMessage, MediaPayload
from spendbot.agent.state import RecentMessageCache
from spendbot.bot.formatters import UNSUPPORTED_MESSAGE_TEXT
from spendbot.bot.handlers import handle_inbound
from spendbot.bot.middleware import is_sender_allowed
from spendbot.bot.whatsapp import ChannelError, WhatsAppCloudClient
from spendbot.config import settings

logger = logging.getLogger(__name__)

InboundHandler = Callable[[InboundMessage, WhatsAppCloudClient], Awaitable[Any]]


# ── Payload parsing ───────────────────────────────────────────────────────────


def extract_messages(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten ``entry[].changes[].value.messages[]`` from a notification.

    Status updates (delivered / read receipts) carry no ``messages`` and
    yield nothing.
    """
    messages: list[dict[str, Any]] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for raw in value.get("messages") or []:
                if isinstance(raw, dict):
                    messages.append(raw)
    return messages


def _media_downloader(
    channel: WhatsAppCloudClient, media_id: str,
) -> Callable[[], Awaitable[MediaPayload | None]]:
    async def _download() -> MediaPayload | None:
        try:
            return await channel.download_media(media_id)
        except ChannelError:
            logger.exception("Could not download media %s", media_id)
            return None

    return _download


def to_inbound_message(
    raw: dict[str, Any], channel: WhatsAppCloudClient,
) -> InboundMessage | None:
    """Build an :class:`InboundMessage` from a raw ``text`` or ``image`` message.

    Returns ``None`` for any other message type.
    """
    sender = str(raw.get("from") or "")
    message_id = raw.get("id")
    kind = raw.get("type")

    if kind == "text":
        body = (raw.get("text") or {}).get("body") or ""
        return InboundMessage(sender=sender, body=body, message_id=message_id)

    if kind == "image":
        image = raw.get("image") or {}
        media_id = image.get("id")
        return InboundMessage(
            sender=sender,
            body=image.get("caption") or "",
            message_id=message_id,
            has_media=True,
            download_media=_media_downloader(channel, media_id) if media_id else None,
        )

    return None


# ── Request handlers ──────────────────────────────────────────────────────────


async def handle_verify(request: web.Request) -> web.Response:
    """GET /webhook - answer the subscription challenge."""
    mode = request.query.get("hub.mode")
    token = request.query.get("hub.verify_token")
    challenge = request.query.get("hub.challenge", "")

    if mode == "subscribe" and token and token == settings.whatsapp_verify_token:
        logger.info("Webhook verified")
        return web.Response(text=challenge)

    logger.warning("Webhook verification failed (mode=%s)", mode)
    return web.Response(status=403, text="Forbidden")


async def handle_notification(request: web.Request) -> web.Response:
    """POST /webhook - process inbound messages."""
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        logger.warning("Ignoring webhook with invalid JSON")
        return web.json_response({"status": "ok"})

    channel: WhatsAppCloudClient = request.app["channel"]
    cache: RecentMessageCache = request.app["recent_messages"]
    handler: InboundHandler = request.app["handler"]

    for raw in extract_messages(payload if isinstance(payload, dict) else {}):
        message_id = raw.get("id")
        if message_id and cache.seen(message_id):
            logger.info("Skipping duplicate delivery %s", message_id)
            continue

        sender = str(raw.get("from") or "")
        if not is_sender_allowed(sender):
            continue

        message = to_inbound_message(raw, channel)
        if message is None:
            logger.info("Unsupported message type %r from %s", raw.get("type"), sender)
            try:
                await channel.send_text(sender, UNSUPPORTED_MESSAGE_TEXT)
            except ChannelError:
                logger.exception("Could not answer unsupported message from %s", sender)
            continue

        await handler(message, channel)

    return web.json_response({"status": "ok"})


async def handle_health(request: web.Request) -> web.Response:
    """GET /health - liveness check."""
    return web.json_response({"status": "ok"})


def create_webhook_app(
    channel: WhatsAppCloudClient,
    handler: InboundHandler = handle_inbound,
    recent_messages: RecentMessageCache | None = None,
) -> web.Application:
    """Build the aiohttp application serving the WhatsApp webhook."""
    app = web.Application()
    app["channel"] = channel
    app["handler"] = handler
    app["recent_messages"] = (
        recent_messages if recent_messages is not None else RecentMessageCache(settings.dedup_window)
    )

    app.router.add_get("/webhook", handle_verify)
    app.router.add_post("/webhook", handle_notification)
    app.router.add_get("/health", handle_health)
    return app
