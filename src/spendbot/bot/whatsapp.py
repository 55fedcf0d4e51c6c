"""WhatsApp Cloud API client.

Thin aiohttp wrapper around the Graph API calls the bot needs:

- ``POST /{phone_number_id}/messages`` - text and document messages
- ``POST /{phone_number_id}/media`` - upload a document before sending it
- ``GET /{media_id}`` then the returned URL - download inbound media

Every outbound write goes through :func:`~spendbot.integrations.retry.with_retries`;
only transient failures (network errors, HTTP 429 and 5xx) are retried.
"""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

from spendbot.agent.messages import MediaPayload
from spendbot.config import settings
from spendbot.integrations.retry import with_retries

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"

# WhatsApp rejects text bodies above this length.
MAX_TEXT_LENGTH = 4096


class ChannelError(Exception):
    """A WhatsApp API call failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientChannelError(ChannelError):
    """A failure worth retrying (network error, rate limit, server error)."""


def _is_transient(status: int) -> bool:
    return status == 429 or status >= 500


class WhatsAppCloudClient:
    """Send and receive through one WhatsApp business phone number.

    Args:
        access_token: Graph API bearer token.
        phone_number_id: Sending phone number ID.
        api_version: Graph API version, e.g. ``"v20.0"``.
        session: Optional shared :class:`aiohttp.ClientSession`; one is
            created lazily (and owned) otherwise.
    """

    def __init__(
        self,
        access_token: str | None = None,
        phone_number_id: str | None = None,
        api_version: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._token = access_token if access_token is not None else settings.whatsapp_access_token
        self._phone_number_id = phone_number_id or settings.whatsapp_phone_number_id
        self._api_version = api_version or settings.whatsapp_api_version
        self._session = session
        self._owns_session = session is None

    # ── Plumbing ──────────────────────────────────────────────────────────

    def _url(self, path: str) -> str:
        return f"{GRAPH_BASE_URL}/{self._api_version}/{path.lstrip('/')}"

    @property
    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        session = self._get_session()
        try:
            async with session.request(method, url, headers=self._auth_headers, **kwargs) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    error_cls = TransientChannelError if _is_transient(resp.status) else ChannelError
                    raise error_cls(
                        f"{method} {url} returned {resp.status}: {detail[:300]}",
                        status=resp.status,
                    )
                return await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise TransientChannelError(f"{method} {url} failed: {exc}") from exc

    async def _post_message(self, payload: dict[str, Any], description: str) -> dict[str, Any]:
        url = self._url(f"{self._phone_number_id}/messages")
        body = {"messaging_product": "whatsapp", **payload}
        return await with_retries(
            lambda: self._request_json("POST", url, json=body),
            description=description,
            retry_on=(TransientChannelError,),
        )

    # ── Outbound ──────────────────────────────────────────────────────────

    async def send_text(self, to: str, text: str) -> None:
        """Send a plain text message (WhatsApp ``*bold*`` markup allowed)."""
        if len(text) > MAX_TEXT_LENGTH:
            logger.warning("Truncating %d-char reply to %s", len(text), to)
            text = text[: MAX_TEXT_LENGTH - 1] + "…"
        await self._post_message(
            {"to": to, "type": "text", "text": {"body": text, "preview_url": False}},
            description=f"send text to {to}",
        )
        logger.debug("Sent text to %s (%d chars)", to, len(text))

    async def upload_media(self, media: MediaPayload) -> str:
        """Upload *media* and return its WhatsApp media ID."""
        url = self._url(f"{self._phone_number_id}/media")

        async def _upload() -> dict[str, Any]:
            form = aiohttp.FormData()
            form.add_field("messaging_product", "whatsapp")
            form.add_field("type", media.mime_type)
            form.add_field(
                "file",
                media.data,
                filename=media.filename or "file",
                content_type=media.mime_type,
            )
            return await self._request_json("POST", url, data=form)

        result = await with_retries(
            _upload,
            description=f"upload {media.filename or media.mime_type}",
            retry_on=(TransientChannelError,),
        )
        media_id = result.get("id")
        if not media_id:
            raise ChannelError(f"Media upload returned no id: {result}")
        return str(media_id)

    async def send_document(self, to: str, media: MediaPayload, caption: str | None = None) -> None:
        """Upload *media* and send it as a document message."""
        media_id = await self.upload_media(media)
        document: dict[str, Any] = {"id": media_id, "filename": media.filename or "document"}
        if caption:
            document["caption"] = caption
        await self._post_message(
            {"to": to, "type": "document", "document": document},
            description=f"send document to {to}",
        )
        logger.info("Sent document %s to %s", media.filename, to)

    # ── Inbound media ─────────────────────────────────────────────────────

    async def download_media(self, media_id: str) -> MediaPayload:
        """Fetch the metadata for *media_id*, then its bytes.

        Raises:
            ChannelError: Either request failed.
        """
        meta = await self._request_json("GET", self._url(media_id))
        url = meta.get("url")
        if not url:
            raise ChannelError(f"No download URL for media {media_id}")

        session = self._get_session()
        try:
            async with session.get(url, headers=self._auth_headers) as resp:
                if resp.status >= 400:
                    raise ChannelError(
                        f"Media download for {media_id} returned {resp.status}",
                        status=resp.status,
                    )
                data = await resp.read()
                mime_type = meta.get("mime_type") or resp.content_type
        except aiohttp.ClientError as exc:
            raise ChannelError(f"Media download for {media_id} failed: {exc}") from exc

        logger.debug("Downloaded media %s (%s, %d bytes)", media_id, mime_type, len(data))
        return MediaPayload(mime_type=mime_type.split(";")[0].strip(), data=data)
