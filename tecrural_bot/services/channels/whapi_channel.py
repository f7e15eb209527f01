import hashlib
import hmac
from typing import Optional

import httpx

from tecrural_bot.logging_config import get_logger, mask_phone
from tecrural_bot.models import Account
from tecrural_bot.services import messages
from tecrural_bot.services.account_service import AccountDirectory, phone_digits
from tecrural_bot.services.channels.base import (
    Channel,
    ChannelAdapter,
    DownloadedMedia,
    InboundMessage,
    MediaDownloadError,
    MessageKind,
    fetch_media,
)
from tecrural_bot.services.commands import WHATSAPP_COMMAND_ALIASES

logger = get_logger("whapi_channel")


def to_whapi_chat_id(phone: str) -> Optional[str]:
    digits = phone_digits(phone)
    if not digits:
        return None
    return f"{digits}@s.whatsapp.net"


def verify_whapi_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded, optionally prefixed with `sha256=`."""
    if not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


def _sender_from(raw: dict) -> Optional[str]:
    sender = raw.get("from") or raw.get("chat_id") or ""
    digits = phone_digits(str(sender).split("@", 1)[0])
    return digits or None


def _normalize_whapi_message(raw: dict) -> Optional[InboundMessage]:
    message_id = raw.get("id")
    sender = _sender_from(raw)
    if not message_id or not sender:
        return None

    chat_id = str(raw.get("chat_id") or "")
    if chat_id.endswith("@g.us"):
        # Group chats are not served.
        return None

    base = {
        "provider": Channel.WHATSAPP,
        "external_message_id": str(message_id),
        "sender_channel_id": sender,
        "sender_first_name": raw.get("from_name"),
    }

    message_type = raw.get("type")
    if message_type == "text":
        text = (raw.get("text") or {}).get("body")
        return InboundMessage(kind=MessageKind.TEXT, text=text, **base)

    if message_type in ("image", "document"):
        media = raw.get(message_type) or {}
        mime_type = media.get("mime_type")
        if message_type == "image" or (mime_type or "").startswith("image/"):
            return InboundMessage(
                kind=MessageKind.IMAGE,
                image_ref=media.get("link") or media.get("id"),
                caption=media.get("caption"),
                mime_type=mime_type,
                **base,
            )

    return InboundMessage(kind=MessageKind.OTHER, **base)


def parse_whapi_payload(payload: dict) -> list[InboundMessage]:
    """Extract the user messages of a Whapi webhook (`{"messages": [...]}`)."""
    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list):
        return []

    result = []
    for raw in raw_messages:
        if not isinstance(raw, dict) or raw.get("from_me"):
            continue
        message = _normalize_whapi_message(raw)
        if message is not None:
            result.append(message)
    return result


class WhapiChannel(ChannelAdapter):
    """WhatsApp through the Whapi.cloud gateway."""

    channel = Channel.WHATSAPP
    command_aliases = WHATSAPP_COMMAND_ALIASES
    unknown_sender_text = messages.UNKNOWN_SENDER_WHATSAPP

    def __init__(self, api_url: str, token: Optional[str], timeout_seconds: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}

    async def _post(self, path: str, payload: dict) -> bool:
        if not self.token:
            logger.warning("WHAPI_TOKEN not configured, message not sent", extra={"context": {"path": path}})
            return False

        url = f"{self.api_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Whapi request failed: {e}", extra={"context": {"path": path}})
            return False

        if response.status_code >= 400:
            logger.error(
                "Whapi error response",
                extra={"context": {"path": path, "status_code": response.status_code, "body": response.text[:200]}},
            )
            return False
        return True

    def resolve_identity(self, directory: AccountDirectory, message: InboundMessage) -> Optional[Account]:
        return directory.find_by_phone(message.sender_channel_id)

    async def send_text(self, recipient: str, text: str) -> bool:
        chat_id = to_whapi_chat_id(recipient)
        if not chat_id or not text:
            return False
        sent = await self._post("messages/text", {"to": chat_id, "body": str(text)})
        if sent:
            logger.debug("WhatsApp text sent", extra={"context": {"to": mask_phone(recipient)}})
        return sent

    async def send_image(self, recipient: str, image_url: str, caption: Optional[str] = None) -> bool:
        chat_id = to_whapi_chat_id(recipient)
        if not chat_id or not image_url:
            return False
        return await self._post("messages/image", {"to": chat_id, "media": str(image_url), "caption": caption or ""})

    async def download_media(self, message: InboundMessage, max_bytes: int) -> DownloadedMedia:
        ref = message.image_ref
        if not ref:
            raise MediaDownloadError("WhatsApp message has no media reference")

        if ref.startswith("http://") or ref.startswith("https://"):
            url = ref
        else:
            url = f"{self.api_url}/media/{ref}"

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        media = await fetch_media(url, headers=headers, max_bytes=max_bytes, timeout=self.timeout_seconds)
        # The webhook's declared MIME type is more reliable than the CDN's content-type.
        return DownloadedMedia(content=media.content, mime_type=message.mime_type or media.mime_type)
