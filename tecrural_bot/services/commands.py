import re
from enum import Enum
from typing import Optional


class CommandName(str, Enum):
    NEW = "new"
    START = "start"
    HISTORY = "history"
    CREDITS = "credits"
    HELP = "help"


_SHARED_ALIASES = {
    "/nuevo": CommandName.NEW,
    "/new": CommandName.NEW,
    "/historial": CommandName.HISTORY,
    "/history": CommandName.HISTORY,
    "/creditos": CommandName.CREDITS,
    "/créditos": CommandName.CREDITS,
    "/credits": CommandName.CREDITS,
    "/ayuda": CommandName.HELP,
    "/help": CommandName.HELP,
    "/comandos": CommandName.HELP,
}

# WhatsApp has no start menu, so /start simply begins a diagnosis.
WHATSAPP_COMMAND_ALIASES = {**_SHARED_ALIASES, "/start": CommandName.NEW}
TELEGRAM_COMMAND_ALIASES = {**_SHARED_ALIASES, "/start": CommandName.START}

LINK_COMMANDS = ("/vincular", "/link")

_BOT_MENTION = re.compile(r"^(/[^\s@]+)@\w+")
_LINK_TOKEN = re.compile(r"^[A-Za-z0-9]{4,12}$")


def normalize_command_text(text: str) -> str:
    normalized = text.strip().lower()
    # Telegram groups append the bot username: /nuevo@TecRuralBot
    return _BOT_MENTION.sub(r"\1", normalized)


def detect_command(text: Optional[str], aliases: dict[str, CommandName]) -> Optional[CommandName]:
    """Exact, case-insensitive match against the channel's command vocabulary."""
    if not text or not isinstance(text, str):
        return None
    return aliases.get(normalize_command_text(text))


def parse_link_command(text: Optional[str]) -> Optional[str]:
    """Extract the token from `/vincular ABC123`, `/link ABC123` or a `/start ABC123` deep link."""
    if not text:
        return None
    parts = text.strip().split()
    if len(parts) != 2:
        return None
    command = normalize_command_text(parts[0])
    if command not in LINK_COMMANDS and command != "/start":
        return None
    token = parts[1].strip()
    if not _LINK_TOKEN.match(token):
        return None
    return token.upper()
