from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    message: str
    processed: int = 0
    outcomes: list[str] = []


class SessionCleanupResponse(BaseModel):
    success: bool
    cleaned: int
    timestamp: datetime
    message: Optional[str] = None
