from tecrural_bot.models.account import Account
from tecrural_bot.models.conversation_session import ConversationSession
from tecrural_bot.models.diagnosis import Diagnosis
from tecrural_bot.models.processed_message import ProcessedMessage
from tecrural_bot.models.telegram_link_token import TelegramLinkToken

__all__ = [
    "Account",
    "ConversationSession",
    "Diagnosis",
    "ProcessedMessage",
    "TelegramLinkToken",
]
