"""Ops alerts for the bot, delivered to a Telegram chat."""

from typing import Optional

import httpx

from tecrural_bot.config import settings
from tecrural_bot.logging_config import get_logger, redact_text

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = settings.alert_bot_token
ALERT_CHAT_ID = settings.alert_chat_id

_alerted_once: set[str] = set()


async def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to the ops Telegram chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict (values are redacted)

    Returns:
        True if sent successfully
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}

    text = f"{emoji.get(level, '📢')} *TEC Rural bot {level}*\n\n{message}"

    if context:
        context_str = "\n".join(f"  {k}: {redact_text(str(v))}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={"chat_id": ALERT_CHAT_ID, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def alert_once(key: str, level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send an alert only the first time `key` is seen in this process (config problems repeat per request)."""
    if key in _alerted_once:
        return False
    _alerted_once.add(key)
    return await send_alert(level, message, context)


async def alert_error(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for ERROR level alert."""
    return await send_alert("ERROR", message, context)
