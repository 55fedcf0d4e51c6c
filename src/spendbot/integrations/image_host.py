"""Receipt image hosting.

Defines the :class:`ImageHost` protocol consumed by the image pipeline and a
Cloudinary implementation.  Images are filed per user and month
(``<user>/<YYYY>/<YYYY-MM>/<name>``) so they can be cleaned up by month.

The Cloudinary SDK is synchronous; calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
from datetime import date
from typing import Any, Protocol, runtime_checkable

from spendbot.agent.state import ImageReference
from spendbot.config import settings
from spendbot.integrations.retry import with_retries

logger = logging.getLogger(__name__)

PROVIDER_CLOUDINARY = "cloudinary"


class ImageHostError(Exception):
    """Raised when the image host rejects an upload or delete."""


@runtime_checkable
class ImageHost(Protocol):
    """Stores receipt images and returns a public reference."""

    async def upload(
        self,
        data: bytes,
        mime_type: str,
        filename: str,
        user_id: str,
        day: date,
    ) -> ImageReference:
        """Upload *data* and return where it now lives."""
        ...

    async def delete(self, ref: str) -> None:
        """Remove a previously uploaded image (missing images are not an error)."""
        ...


def image_folder(user_id: str, day: date) -> str:
    """Folder for a user's receipts of *day*'s month."""
    safe_user = re.sub(r"[^A-Za-z0-9_-]", "_", user_id)
    return f"{safe_user}/{day.year:04d}/{day.year:04d}-{day.month:02d}"


def _public_id(filename: str) -> str:
    stem = re.sub(r"\.[^.]+$", "", filename.lstrip("/"))
    return re.sub(r"\s+", "_", stem) or "receipt"


class CloudinaryImageHost:
    """:class:`ImageHost` backed by Cloudinary.

    Credentials come from ``settings.cloudinary_*``.
    """

    def __init__(
        self,
        cloud_name: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
    ) -> None:
        import cloudinary

        self._config: dict[str, Any] = {
            "cloud_name": cloud_name or settings.cloudinary_cloud_name,
            "api_key": api_key or settings.cloudinary_api_key,
            "api_secret": api_secret or settings.cloudinary_api_secret,
            "secure": True,
        }
        if not all(self._config[k] for k in ("cloud_name", "api_key", "api_secret")):
            raise ImageHostError(
                "Cloudinary not configured. Set CLOUDINARY_CLOUD_NAME, "
                "CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET."
            )
        cloudinary.config(**self._config)

    async def upload(
        self,
        data: bytes,
        mime_type: str,
        filename: str,
        user_id: str,
        day: date,
    ) -> ImageReference:
        import cloudinary.uploader

        folder = image_folder(user_id, day)
        public_id = _public_id(filename)

        def _upload() -> dict[str, Any]:
            return cloudinary.uploader.upload(
                io.BytesIO(data),
                folder=folder,
                public_id=public_id,
                resource_type="image",
                overwrite=False,
            )

        result = await with_retries(
            lambda: asyncio.to_thread(_upload),
            description="cloudinary upload",
        )
        if not result.get("public_id") or not result.get("secure_url"):
            raise ImageHostError("Cloudinary upload returned no public_id/secure_url")

        logger.info("Uploaded receipt image %s (%s)", result["public_id"], mime_type)
        return ImageReference(
            provider=PROVIDER_CLOUDINARY,
            ref=result["public_id"],
            url=result["secure_url"],
        )

    async def delete(self, ref: str) -> None:
        import cloudinary.uploader

        def _destroy() -> dict[str, Any]:
            return cloudinary.uploader.destroy(ref, resource_type="image")

        result = await with_retries(
            lambda: asyncio.to_thread(_destroy),
            description="cloudinary delete",
        )
        outcome = result.get("result")
        if outcome not in ("ok", "not found"):
            raise ImageHostError(f"Cloudinary delete failed: {outcome}")
        logger.info("Deleted receipt image %s (%s)", ref, outcome)


def create_image_host() -> ImageHost | None:
    """Build the configured image host, or ``None`` when hosting is disabled."""
    if not settings.image_hosting_enabled:
        logger.info("Image hosting disabled; receipts will not be stored")
        return None
    return CloudinaryImageHost()
