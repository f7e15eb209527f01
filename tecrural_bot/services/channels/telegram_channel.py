import hmac
import mimetypes
from typing import Optional

import httpx

from tecrural_bot.logging_config import get_logger, mask_phone
from tecrural_bot.models import Account
from tecrural_bot.schemas.telegram import TelegramMessage, TelegramUpdate
from tecrural_bot.services import messages
from tecrural_bot.services.account_service import AccountDirectory
from tecrural_bot.services.channels.base import (
    Channel,
    ChannelAdapter,
    DownloadedMedia,
    InboundMessage,
    MediaDownloadError,
    MessageKind,
    fetch_media,
)
from tecrural_bot.services.commands import TELEGRAM_COMMAND_ALIASES

logger = get_logger("telegram_channel")

MAX_MESSAGE_LENGTH = 4096

# Inline menu buttons are replayed through the command dispatcher.
CALLBACK_COMMANDS = {
    "nuevo": "/nuevo",
    "historial": "/historial",
    "creditos": "/creditos",
    "ayuda": "/ayuda",
}


def verify_telegram_secret(provided: Optional[str], secret: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split on line boundaries where possible so Markdown entities are not cut in half."""
    if len(text) <= limit:
        return [text]

    chunks = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    if remaining:
        chunks.append(remaining)
    return chunks


def _normalize_message(message: TelegramMessage) -> Optional[InboundMessage]:
    if message.from_user and message.from_user.is_bot:
        return None

    base = {
        "provider": Channel.TELEGRAM,
        "external_message_id": f"{message.chat.id}:{message.message_id}",
        "sender_channel_id": str(message.chat.id),
        "sender_username": message.from_user.username if message.from_user else None,
        "sender_first_name": message.from_user.first_name if message.from_user else None,
    }

    if message.photo:
        # Telegram lists sizes smallest first.
        largest = message.photo[-1]
        return InboundMessage(
            kind=MessageKind.IMAGE,
            image_ref=largest.file_id,
            caption=message.caption,
            mime_type="image/jpeg",
            **base,
        )

    if message.document and (message.document.mime_type or "").startswith("image/"):
        return InboundMessage(
            kind=MessageKind.IMAGE,
            image_ref=message.document.file_id,
            caption=message.caption,
            mime_type=message.document.mime_type,
            **base,
        )

    if message.text is not None:
        return InboundMessage(kind=MessageKind.TEXT, text=message.text, **base)

    return InboundMessage(kind=MessageKind.OTHER, **base)


def parse_telegram_update(update: TelegramUpdate) -> list[InboundMessage]:
    """Extract the user message of a Telegram update. Edited messages are ignored."""
    callback = update.callback_query
    if callback is not None:
        if callback.from_user.is_bot:
            return []
        command = CALLBACK_COMMANDS.get(callback.data or "")
        if command is None:
            return []
        chat_id = callback.message.chat.id if callback.message else callback.from_user.id
        return [
            InboundMessage(
                provider=Channel.TELEGRAM,
                external_message_id=f"callback:{callback.id}",
                sender_channel_id=str(chat_id),
                kind=MessageKind.TEXT,
                text=command,
                sender_username=callback.from_user.username,
                sender_first_name=callback.from_user.first_name,
            )
        ]

    if update.message is None:
        return []

    message = _normalize_message(update.message)
    return [message] if message is not None else []


class TelegramChannel(ChannelAdapter):
    """Telegram Bot API."""

    channel = Channel.TELEGRAM
    command_aliases = TELEGRAM_COMMAND_ALIASES
    unknown_sender_text = messages.UNKNOWN_SENDER_TELEGRAM

    BASE_URL = "https://api.telegram.org/bot{token}"
    FILE_URL = "https://api.telegram.org/file/bot{token}/{file_path}"

    def __init__(self, bot_token: Optional[str], timeout_seconds: float = 30.0):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.timeout_seconds = timeout_seconds

    async def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        """Make request to Telegram API."""
        if not self.bot_token:
            logger.warning("TELEGRAM_BOT_TOKEN not configured", extra={"context": {"method": method}})
            return {"ok": False, "description": "bot token not configured"}

        url = f"{self.base_url}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, json=data or {})
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Telegram API error: {e}", extra={"context": {"method": method}})
            return {"ok": False, "description": str(e)}

    def resolve_identity(self, directory: AccountDirectory, message: InboundMessage) -> Optional[Account]:
        return directory.find_by_telegram_id(message.sender_channel_id)

    async def _send_chunk(self, chat_id: str, text: str, reply_markup: Optional[dict] = None) -> bool:
        data = {"chat_id": chat_id, "text": text, "parse_mode": "Markdown"}
        if reply_markup:
            data["reply_markup"] = reply_markup

        result = await self._make_request("sendMessage", data)
        if result.get("ok"):
            return True

        if "parse entities" in str(result.get("description", "")).lower():
            # Report text may carry unbalanced Markdown; send it plain.
            data.pop("parse_mode")
            result = await self._make_request("sendMessage", data)
            if result.get("ok"):
                return True

        logger.warning(
            "Telegram sendMessage failed",
            extra={"context": {"chat_id": mask_phone(chat_id), "description": result.get("description")}},
        )
        return False

    async def send_text(self, recipient: str, text: str) -> bool:
        if not text:
            return False
        sent = True
        for chunk in split_message(text):
            sent = await self._send_chunk(recipient, chunk) and sent
        return sent

    async def send_menu(self, recipient: str, text: str, buttons: Optional[dict] = None) -> bool:
        return await self._send_chunk(recipient, text, reply_markup=buttons)

    async def send_image(self, recipient: str, image_url: str, caption: Optional[str] = None) -> bool:
        data = {"chat_id": recipient, "photo": image_url}
        if caption:
            data["caption"] = caption[:1024]
        result = await self._make_request("sendPhoto", data)
        return bool(result.get("ok"))

    async def send_typing(self, recipient: str) -> None:
        await self._make_request("sendChatAction", {"chat_id": recipient, "action": "typing"})

    async def answer_callback_query(self, callback_query_id: str) -> bool:
        result = await self._make_request("answerCallbackQuery", {"callback_query_id": callback_query_id})
        return bool(result.get("ok"))

    async def download_media(self, message: InboundMessage, max_bytes: int) -> DownloadedMedia:
        if not message.image_ref:
            raise MediaDownloadError("Telegram message has no file id")

        result = await self._make_request("getFile", {"file_id": message.image_ref})
        file_path = (result.get("result") or {}).get("file_path") if result.get("ok") else None
        if not file_path:
            raise MediaDownloadError(f"getFile failed: {result.get('description')}")

        url = self.FILE_URL.format(token=self.bot_token, file_path=file_path)
        media = await fetch_media(url, max_bytes=max_bytes, timeout=self.timeout_seconds)

        guessed, _ = mimetypes.guess_type(file_path)
        return DownloadedMedia(content=media.content, mime_type=message.mime_type or guessed or media.mime_type)
