import asyncio

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from tecrural_bot.config import settings
from tecrural_bot.database import get_db
from tecrural_bot.logging_config import get_logger, setup_logging
from tecrural_bot.routers import cron, telegram_webhook, whatsapp_webhook
from tecrural_bot.services.notification_service import notification_dispatcher

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="TEC Rural Bot",
    description="WhatsApp and Telegram crop diagnosis assistant",
    version="0.1.0",
)

app.include_router(whatsapp_webhook.router)
app.include_router(telegram_webhook.router)
app.include_router(cron.router)

SHUTDOWN_DRAIN_SECONDS = 10.0


@app.on_event("shutdown")
async def drain_notifications() -> None:
    if not notification_dispatcher.pending:
        return
    try:
        await asyncio.wait_for(notification_dispatcher.drain(), timeout=SHUTDOWN_DRAIN_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(
            "Shutdown with pending notifications",
            extra={"context": {"pending": notification_dispatcher.pending}},
        )


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
