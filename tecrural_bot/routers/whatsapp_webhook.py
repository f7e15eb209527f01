from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from tecrural_bot.config import settings
from tecrural_bot.database import get_db
from tecrural_bot.dependencies import build_engine, get_diagnosis_adapter, get_whapi_channel
from tecrural_bot.logging_config import get_logger
from tecrural_bot.routers.common import decode_json_payload
from tecrural_bot.schemas.webhook import WebhookResponse
from tecrural_bot.services.alert_service import alert_once
from tecrural_bot.services.channels import WhapiChannel
from tecrural_bot.services.channels.whapi_channel import parse_whapi_payload, verify_whapi_signature
from tecrural_bot.services.diagnosis_adapter import DiagnosisAdapter

logger = get_logger("whatsapp_webhook")

router = APIRouter()

SIGNATURE_HEADER = "X-Whapi-Signature"


async def _check_signature(request: Request, raw_body: bytes) -> None:
    secret = settings.whapi_webhook_secret
    if not secret:
        logger.warning("WHAPI_WEBHOOK_SECRET not configured, accepting unsigned webhook")
        await alert_once(
            "whapi_webhook_secret_missing",
            "WARNING",
            "WHAPI_WEBHOOK_SECRET is not configured: WhatsApp webhooks are not authenticated",
        )
        return

    if not verify_whapi_signature(raw_body, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning(
            "Rejected WhatsApp webhook with invalid signature",
            extra={"context": {"client": request.client.host if request.client else None}},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")


@router.post("/webhooks/whatsapp", response_model=WebhookResponse)
async def handle_whatsapp_webhook(
    request: Request,
    db: Session = Depends(get_db),
    channel: WhapiChannel = Depends(get_whapi_channel),
    diagnosis: DiagnosisAdapter = Depends(get_diagnosis_adapter),
):
    """Whapi.cloud webhook: `{"messages": [...]}`.

    Always acknowledged with 200 except for signature failures, since Whapi retries
    aggressively on any other status.
    """
    raw_body = await request.body()
    await _check_signature(request, raw_body)

    payload = decode_json_payload(raw_body, "whatsapp")
    if not isinstance(payload, dict):
        return WebhookResponse(success=True, message="Ignored malformed payload")

    inbound = parse_whapi_payload(payload)
    if not inbound:
        return WebhookResponse(success=True, message="No user messages")

    engine = build_engine(channel, db, diagnosis)
    outcomes = []
    for message in inbound:
        outcome = await engine.handle(message)
        outcomes.append(outcome.value)

    return WebhookResponse(
        success=True,
        message="Webhook recibido",
        processed=len(outcomes),
        outcomes=outcomes,
    )
