import json
from typing import Any, Optional

from tecrural_bot.logging_config import get_logger

logger = get_logger("webhook_payload")


def decode_json_payload(raw: bytes, source: str) -> Optional[Any]:
    """Decode a webhook body with tolerant decoding. Returns None when it is not JSON."""
    if not raw or not raw.strip():
        logger.info("Webhook ping with empty body", extra={"context": {"source": source}})
        return None

    for encoding in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(encoding, errors="replace"))
        except ValueError:
            continue

    logger.warning(
        "Webhook payload is not valid JSON",
        extra={"context": {"source": source, "size": len(raw)}},
    )
    return None
