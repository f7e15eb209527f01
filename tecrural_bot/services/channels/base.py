from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from tecrural_bot.models import Account
from tecrural_bot.services.account_service import AccountDirectory
from tecrural_bot.services.commands import CommandName, detect_command


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    OTHER = "other"


class ChannelError(Exception):
    """Provider API answered with an error."""


class MediaDownloadError(ChannelError):
    """Image bytes could not be fetched from the provider."""


@dataclass
class InboundMessage:
    provider: Channel
    external_message_id: str
    sender_channel_id: str
    kind: MessageKind
    text: Optional[str] = None
    image_ref: Optional[str] = None
    caption: Optional[str] = None
    mime_type: Optional[str] = None
    sender_username: Optional[str] = None
    sender_first_name: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"{self.provider.value}:{self.external_message_id}"


@dataclass
class DownloadedMedia:
    content: bytes
    mime_type: Optional[str]


async def fetch_media(url: str, headers: Optional[dict] = None, max_bytes: int = 0, timeout: float = 30.0) -> DownloadedMedia:
    """Stream `url` into memory. Stops one byte past `max_bytes` so callers can reject oversize files."""
    data = bytearray()
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            async with client.stream("GET", url, headers=headers or {}) as response:
                response.raise_for_status()
                mime_type = response.headers.get("content-type")
                async for chunk in response.aiter_bytes():
                    if not chunk:
                        continue
                    data.extend(chunk)
                    if max_bytes and len(data) > max_bytes:
                        break
    except httpx.HTTPError as e:
        raise MediaDownloadError(f"Media download failed: {e}") from e

    return DownloadedMedia(content=bytes(data), mime_type=mime_type)


class ChannelAdapter(ABC):
    """What the conversation engine needs from a messaging channel."""

    channel: Channel
    command_aliases: dict[str, CommandName]
    unknown_sender_text: str

    def detect_command(self, text: Optional[str]) -> Optional[CommandName]:
        return detect_command(text, self.command_aliases)

    @abstractmethod
    def resolve_identity(self, directory: AccountDirectory, message: InboundMessage) -> Optional[Account]:
        pass

    @abstractmethod
    async def send_text(self, recipient: str, text: str) -> bool:
        """Send a text reply. Never raises; returns False when delivery failed."""

    @abstractmethod
    async def send_image(self, recipient: str, image_url: str, caption: Optional[str] = None) -> bool:
        pass

    @abstractmethod
    async def download_media(self, message: InboundMessage, max_bytes: int) -> DownloadedMedia:
        """Fetch the image of `message`. Raises MediaDownloadError."""

    async def send_menu(self, recipient: str, text: str, buttons: Optional[dict] = None) -> bool:
        return await self.send_text(recipient, text)

    async def send_typing(self, recipient: str) -> None:
        return None
