"""Periodic maintenance endpoints, called by an external scheduler."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from tecrural_bot.config import settings
from tecrural_bot.database import get_db
from tecrural_bot.logging_config import get_logger
from tecrural_bot.schemas.webhook import SessionCleanupResponse
from tecrural_bot.services.session_store import SqlSessionStore

logger = get_logger("cron")

router = APIRouter()


def _require_cron_secret(authorization: Optional[str]) -> None:
    expected = settings.cron_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="CRON_SECRET not configured",
        )
    if not authorization or authorization != f"Bearer {expected}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron token")


@router.get("/cron/cleanup-sessions", response_model=SessionCleanupResponse)
def cleanup_sessions(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    _require_cron_secret(authorization)

    now = datetime.now(timezone.utc)
    cleaned = SqlSessionStore(db).delete_expired(now)
    logger.info("Expired sessions cleaned", extra={"context": {"cleaned": cleaned}})
    return SessionCleanupResponse(success=True, cleaned=cleaned, timestamp=now)
