"""FastAPI providers wiring the conversation engine to its collaborators."""

from typing import Optional

from sqlalchemy.orm import Session

from tecrural_bot.config import settings
from tecrural_bot.services.account_service import SqlAccountDirectory
from tecrural_bot.services.channels import ChannelAdapter, TelegramChannel, WhapiChannel
from tecrural_bot.services.conversation_engine import ConversationEngine
from tecrural_bot.services.dedup_service import SqlDedupStore
from tecrural_bot.services.diagnosis import HttpDiagnosisEngine
from tecrural_bot.services.diagnosis_adapter import DiagnosisAdapter
from tecrural_bot.services.session_store import SqlSessionStore


def get_whapi_channel() -> WhapiChannel:
    return WhapiChannel(settings.whapi_api_url, settings.whapi_token)


def get_telegram_channel() -> TelegramChannel:
    return TelegramChannel(settings.telegram_bot_token)


def get_diagnosis_adapter() -> DiagnosisAdapter:
    engine = HttpDiagnosisEngine(
        settings.diagnosis_engine_url,
        settings.diagnosis_engine_token,
        timeout_seconds=settings.diagnosis_timeout_seconds,
    )
    return DiagnosisAdapter(engine, settings.allowed_image_mime_types, settings.max_image_bytes)


def build_engine(
    channel: ChannelAdapter,
    db: Session,
    diagnosis: DiagnosisAdapter,
    whatsapp_notifier: Optional[ChannelAdapter] = None,
) -> ConversationEngine:
    return ConversationEngine(
        channel,
        SqlSessionStore(db),
        SqlDedupStore(db),
        SqlAccountDirectory(db),
        diagnosis,
        session_ttl_minutes=settings.session_ttl_minutes,
        processing_lease_minutes=settings.processing_lease_minutes,
        max_image_bytes=settings.max_image_bytes,
        whatsapp_notifier=whatsapp_notifier,
    )
