from tecrural_bot.schemas.telegram import TelegramUpdate, TelegramWebhookResponse
from tecrural_bot.schemas.webhook import SessionCleanupResponse, WebhookResponse

__all__ = ["TelegramUpdate", "TelegramWebhookResponse", "SessionCleanupResponse", "WebhookResponse"]
