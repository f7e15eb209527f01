"""JSON logging configuration for the TEC Rural bot service."""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any

_BEARER_PATTERN = re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)
_BOT_TOKEN_PATTERN = re.compile(r"bot\d+:[A-Za-z0-9_-]+")
_PHONE_PATTERN = re.compile(r"\+?\d{7,15}")


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
        }

        if hasattr(record, "context") and record.context:
            log_data["context"] = record.context

        if record.exc_info:
            log_data["exception"] = redact_text(self.formatException(record.exc_info))

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure JSON logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(f"tecrural.{name}")


def mask_phone(value: Any) -> str:
    """Keep only the last four digits of a phone number or chat id."""
    raw = str(value or "")
    digits = "".join(ch for ch in raw if ch.isdigit())
    if not digits:
        return "***"
    prefix = "+" if raw.strip().startswith("+") else ""
    return f"{prefix}***{digits[-4:]}"


def mask_id(value: Any) -> str:
    raw = str(value or "")
    if len(raw) <= 6:
        return "***"
    return f"{raw[:2]}***{raw[-2:]}"


def redact_text(value: str) -> str:
    """Strip credentials and phone numbers out of free text (URLs, exception messages)."""
    result = _BEARER_PATTERN.sub("Bearer ***", value)
    result = _BOT_TOKEN_PATTERN.sub("bot***", result)
    return _PHONE_PATTERN.sub(lambda match: mask_phone(match.group(0)), result)
