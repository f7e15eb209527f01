from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from tecrural_bot.config import settings
from tecrural_bot.database import get_db
from tecrural_bot.dependencies import (
    build_engine,
    get_diagnosis_adapter,
    get_telegram_channel,
    get_whapi_channel,
)
from tecrural_bot.logging_config import get_logger
from tecrural_bot.routers.common import decode_json_payload
from tecrural_bot.schemas.telegram import TelegramUpdate, TelegramWebhookResponse
from tecrural_bot.services.alert_service import alert_once
from tecrural_bot.services.channels import TelegramChannel, WhapiChannel
from tecrural_bot.services.channels.telegram_channel import parse_telegram_update, verify_telegram_secret
from tecrural_bot.services.diagnosis_adapter import DiagnosisAdapter

logger = get_logger("telegram_webhook")

router = APIRouter()


async def _check_secret(provided: Optional[str]) -> None:
    secret = settings.telegram_webhook_secret
    if not secret:
        logger.warning("TELEGRAM_WEBHOOK_SECRET not configured, accepting unauthenticated webhook")
        await alert_once(
            "telegram_webhook_secret_missing",
            "WARNING",
            "TELEGRAM_WEBHOOK_SECRET is not configured: Telegram webhooks are not authenticated",
        )
        return

    if not verify_telegram_secret(provided, secret):
        logger.warning("Rejected Telegram webhook with invalid secret token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


@router.post("/webhooks/telegram", response_model=TelegramWebhookResponse)
async def handle_telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
    db: Session = Depends(get_db),
    channel: TelegramChannel = Depends(get_telegram_channel),
    whatsapp: WhapiChannel = Depends(get_whapi_channel),
    diagnosis: DiagnosisAdapter = Depends(get_diagnosis_adapter),
):
    """
    Handle Telegram bot updates:
    - Text, photos and image documents from farmers -> conversation engine
    - Callback queries (menu buttons) -> answered, then replayed as commands
    """
    await _check_secret(x_telegram_bot_api_secret_token)

    body = decode_json_payload(await request.body(), "telegram")
    if not isinstance(body, dict):
        return TelegramWebhookResponse(success=True, message="Ignored malformed payload")

    try:
        update = TelegramUpdate(**body)
    except ValidationError as e:
        logger.warning("Telegram update failed validation", extra={"context": {"errors": e.error_count()}})
        return TelegramWebhookResponse(success=True, message="Ignored malformed payload")

    if update.callback_query:
        await channel.answer_callback_query(update.callback_query.id)

    inbound = parse_telegram_update(update)
    if not inbound:
        return TelegramWebhookResponse(success=True, message="No actionable content")

    engine = build_engine(channel, db, diagnosis, whatsapp_notifier=whatsapp)
    outcome = None
    for message in inbound:
        outcome = await engine.handle(message)

    return TelegramWebhookResponse(success=True, message=outcome.value if outcome else None)
