"""WhatsApp bot factory and entry point.

Creates the WhatsApp Cloud API client and the image host, builds the
aiohttp webhook application and exposes :func:`run_bot` to serve it.
"""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from spendbot.agent import set_image_host
from spendbot.bot.webhook import create_webhook_app
from spendbot.bot.whatsapp import WhatsAppCloudClient
from spendbot.config import settings
from spendbot.db.session import engine
from spendbot.integrations.image_host import create_image_host

logger = logging.getLogger(__name__)


async def run_bot() -> None:
    """Start the webhook server and serve until cancelled.

    This is the main coroutine invoked from ``__main__.py``.
    """
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not settings.whatsapp_access_token or not settings.whatsapp_phone_number_id:
        logger.warning("WhatsApp credentials are not configured; replies will fail")

    image_host = create_image_host()
    set_image_host(image_host)

    channel = WhatsAppCloudClient()
    app = create_webhook_app(channel)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.webhook_host, settings.webhook_port)
    await site.start()
    logger.info(
        "SpendBot webhook listening on http://%s:%d/webhook",
        settings.webhook_host, settings.webhook_port,
    )

    try:
        await asyncio.Event().wait()
    finally:
        logger.info("SpendBot shutting down, disposing DB engine")
        await runner.cleanup()
        await channel.close()
        await engine.dispose()
