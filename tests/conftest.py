import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tecrural_bot.database import Base
from tecrural_bot.models import Account
from tecrural_bot.services.account_service import AccountDirectory, phones_match, phone_digits
from tecrural_bot.services.channels.base import (
    Channel,
    ChannelAdapter,
    DownloadedMedia,
    InboundMessage,
    MessageKind,
)
from tecrural_bot.services.commands import TELEGRAM_COMMAND_ALIASES, WHATSAPP_COMMAND_ALIASES
from tecrural_bot.services.conversation_engine import ConversationEngine
from tecrural_bot.services.dedup_service import DedupStore
from tecrural_bot.services.diagnosis import DiagnosisEngine, DiagnosisRequest, DiagnosisResult
from tecrural_bot.services.diagnosis_adapter import DiagnosisAdapter
from tecrural_bot.services.notification_service import NotificationDispatcher
from tecrural_bot.services.result import Result
from tecrural_bot.services.session_state import encode_state
from tecrural_bot.services.session_store import SessionStore, StoredSession

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64

FIXED_NOW = datetime(2025, 3, 14, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def sqlite_session():
    """In-memory SQLite session with every table created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


class FakeChannel(ChannelAdapter):
    def __init__(self, channel: Channel = Channel.WHATSAPP):
        self.channel = channel
        self.command_aliases = (
            TELEGRAM_COMMAND_ALIASES if channel == Channel.TELEGRAM else WHATSAPP_COMMAND_ALIASES
        )
        self.unknown_sender_text = f"unknown sender on {channel.value}"
        self.sent_texts: list[tuple[str, str]] = []
        self.sent_images: list[tuple[str, str, Optional[str]]] = []
        self.menus: list[tuple[str, str, Optional[dict]]] = []
        self.downloads: list[str] = []
        self.media = DownloadedMedia(content=JPEG_BYTES, mime_type="image/jpeg")
        self.download_error: Optional[Exception] = None

    def resolve_identity(self, directory, message):
        if self.channel == Channel.TELEGRAM:
            return directory.find_by_telegram_id(message.sender_channel_id)
        return directory.find_by_phone(message.sender_channel_id)

    async def send_text(self, recipient, text):
        self.sent_texts.append((recipient, text))
        return True

    async def send_image(self, recipient, image_url, caption=None):
        self.sent_images.append((recipient, image_url, caption))
        return True

    async def send_menu(self, recipient, text, buttons=None):
        self.menus.append((recipient, text, buttons))
        return True

    async def download_media(self, message, max_bytes):
        self.downloads.append(message.image_ref)
        if self.download_error is not None:
            raise self.download_error
        return self.media

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent_texts]


class InMemorySessionStore(SessionStore):
    def __init__(self):
        self.rows: dict[tuple[str, str], StoredSession] = {}
        self.saves = 0

    def get(self, channel, sender_channel_id, now):
        row = self.rows.get((channel, sender_channel_id))
        if row is None:
            return None
        if row.expires_at <= now:
            del self.rows[(channel, sender_channel_id)]
            return None
        return row

    def save(self, channel, sender_channel_id, account_id, state, *, now, expires_at):
        state_value, crop_name, user_notes = encode_state(state)
        row = StoredSession(
            channel=channel,
            sender_channel_id=sender_channel_id,
            account_id=account_id,
            state=state_value,
            crop_name=crop_name,
            user_notes=user_notes,
            expires_at=expires_at,
            last_activity_at=now,
        )
        self.rows[(channel, sender_channel_id)] = row
        self.saves += 1
        return row

    def delete(self, channel, sender_channel_id):
        self.rows.pop((channel, sender_channel_id), None)

    def delete_expired(self, now):
        expired = [key for key, row in self.rows.items() if row.expires_at <= now]
        for key in expired:
            del self.rows[key]
        return len(expired)

    def put_raw(self, channel, sender, state, crop_name=None, user_notes=None, expires_at=None):
        self.rows[(channel, sender)] = StoredSession(
            channel=channel,
            sender_channel_id=sender,
            account_id=None,
            state=state,
            crop_name=crop_name,
            user_notes=user_notes,
            expires_at=expires_at or FIXED_NOW + timedelta(minutes=30),
            last_activity_at=FIXED_NOW,
        )


class InMemoryDedupStore(DedupStore):
    def __init__(self):
        self.keys: dict[str, str] = {}

    def has_been_processed(self, dedup_key):
        return dedup_key in self.keys

    def mark_processed(self, dedup_key, sender_channel_id):
        if dedup_key in self.keys:
            return False
        self.keys[dedup_key] = sender_channel_id
        return True


class InMemoryAccountDirectory(AccountDirectory):
    def __init__(self, accounts: Optional[list[Account]] = None):
        self.accounts = list(accounts or [])
        self.diagnoses: list = []
        self.link_result: Optional[Result] = None

    def find_by_phone(self, phone):
        digits = phone_digits(phone)
        return next((a for a in self.accounts if phones_match(a.phone, digits)), None)

    def find_by_telegram_id(self, telegram_id):
        return next((a for a in self.accounts if a.telegram_id == str(telegram_id)), None)

    def get_credits(self, account_id):
        account = next((a for a in self.accounts if a.id == account_id), None)
        return account.credits_remaining if account else 0

    def recent_diagnoses(self, account_id, limit=5):
        return self.diagnoses[:limit]

    def link_telegram(self, token, telegram_id, telegram_username, now):
        return self.link_result or Result.failure("invalid", "invalid_token")


class FakeDiagnosisEngine(DiagnosisEngine):
    def __init__(self, result: Optional[DiagnosisResult] = None):
        self.result = result or DiagnosisResult.success(
            report_markdown="## Tizón temprano\nAplicar fungicida cúprico.",
            confidence=0.87,
            remaining_credits=4,
            image_url="https://cdn.tecrural.app/diagnoses/abc.jpg",
        )
        self.requests: list[DiagnosisRequest] = []

    async def diagnose(self, request):
        self.requests.append(request)
        return self.result


def make_account(**overrides) -> Account:
    values = {
        "id": uuid.uuid4(),
        "first_name": "Lucía",
        "phone": "+573001234567",
        "telegram_id": "998877",
        "credits_remaining": 5,
        "notify_whatsapp_on_diagnosis": False,
    }
    values.update(overrides)
    return Account(**values)


def text_message(text: str, message_id: str = "wamid-1", sender: str = "573001234567", provider=Channel.WHATSAPP):
    return InboundMessage(
        provider=provider,
        external_message_id=message_id,
        sender_channel_id=sender,
        kind=MessageKind.TEXT,
        text=text,
    )


def image_message(
    message_id: str = "wamid-img",
    caption: Optional[str] = None,
    sender: str = "573001234567",
    provider=Channel.WHATSAPP,
):
    return InboundMessage(
        provider=provider,
        external_message_id=message_id,
        sender_channel_id=sender,
        kind=MessageKind.IMAGE,
        image_ref="https://media.example/photo.jpg",
        caption=caption,
        mime_type="image/jpeg",
    )


class EngineHarness:
    """Conversation engine wired to in-memory collaborators, with a movable clock."""

    def __init__(self, channel: Channel = Channel.WHATSAPP, accounts: Optional[list[Account]] = None):
        self.now = FIXED_NOW
        self.channel = FakeChannel(channel)
        self.sessions = InMemorySessionStore()
        self.dedup = InMemoryDedupStore()
        self.accounts = InMemoryAccountDirectory(accounts if accounts is not None else [make_account()])
        self.engine_backend = FakeDiagnosisEngine()
        self.adapter = DiagnosisAdapter(
            self.engine_backend, ["image/jpeg", "image/png", "image/webp"], 10 * 1024 * 1024
        )
        self.whatsapp = FakeChannel(Channel.WHATSAPP)
        self.notifications = NotificationDispatcher()
        self.engine = ConversationEngine(
            self.channel,
            self.sessions,
            self.dedup,
            self.accounts,
            self.adapter,
            whatsapp_notifier=self.whatsapp,
            notifications=self.notifications,
            clock=lambda: self.now,
        )

    @property
    def account(self) -> Account:
        return self.accounts.accounts[0]

    def session(self, sender: str = "573001234567") -> Optional[StoredSession]:
        return self.sessions.rows.get((self.channel.channel.value, sender))

    async def send(self, message: InboundMessage):
        outcome = await self.engine.handle(message)
        await self.notifications.drain()
        return outcome


@pytest.fixture
def harness():
    return EngineHarness()


@pytest.fixture
def telegram_harness():
    return EngineHarness(channel=Channel.TELEGRAM)
