"""Channel-neutral message types exchanged with the orchestrator."""

from __future__ import annotations

import base64
from collections.abc import Awaitable, Callable
from dataclasses import dataclass


@dataclass
class MediaPayload:
    """Binary media downloaded from the channel or sent back to it."""

    mime_type: str
    data: bytes
    filename: str | None = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def data_url(self) -> str:
        """``data:`` URL accepted by vision models."""
        return f"data:{self.mime_type};base64,{self.base64_data}"


@dataclass
class InboundMessage:
    """A user message as seen by the orchestrator.

    ``body`` holds the text or, for media messages, the caption.
    """

    sender: str
    body: str = ""
    message_id: str | None = None
    has_media: bool = False
    download_media: Callable[[], Awaitable[MediaPayload | None]] | None = None

