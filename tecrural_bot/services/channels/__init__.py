from tecrural_bot.services.channels.base import (
    Channel,
    ChannelAdapter,
    ChannelError,
    DownloadedMedia,
    InboundMessage,
    MediaDownloadError,
    MessageKind,
)
from tecrural_bot.services.channels.telegram_channel import TelegramChannel
from tecrural_bot.services.channels.whapi_channel import WhapiChannel

__all__ = [
    "Channel",
    "ChannelAdapter",
    "ChannelError",
    "DownloadedMedia",
    "InboundMessage",
    "MediaDownloadError",
    "MessageKind",
    "TelegramChannel",
    "WhapiChannel",
]
