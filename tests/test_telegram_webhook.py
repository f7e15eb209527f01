import uuid
from unittest.mock import patch

import pytest
from conftest import FakeChannel, FakeDiagnosisEngine
from fastapi.testclient import TestClient

from tecrural_bot.config import settings
from tecrural_bot.database import get_db
from tecrural_bot.dependencies import get_diagnosis_adapter, get_telegram_channel, get_whapi_channel
from tecrural_bot.main import app
from tecrural_bot.models import Account, ConversationSession
from tecrural_bot.schemas.telegram import TelegramCallbackQuery, TelegramMessage, TelegramUpdate
from tecrural_bot.services import messages
from tecrural_bot.services.channels.base import Channel
from tecrural_bot.services.diagnosis_adapter import DiagnosisAdapter

SECRET = "tg-secret"
HEADERS = {"X-Telegram-Bot-Api-Secret-Token": SECRET}


class FakeTelegramChannel(FakeChannel):
    def __init__(self):
        super().__init__(Channel.TELEGRAM)
        self.answered: list[str] = []

    async def answer_callback_query(self, callback_query_id):
        self.answered.append(callback_query_id)
        return True


def _update(update_id=1, message_id=10, text="/ayuda", chat_id=998877):
    return {
        "update_id": update_id,
        "message": {
            "message_id": message_id,
            "date": 1700000000,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": chat_id, "is_bot": False, "first_name": "Andrés"},
            "text": text,
        },
    }


@pytest.fixture
def channel():
    return FakeTelegramChannel()


@pytest.fixture
def client(sqlite_session, channel, monkeypatch):
    sqlite_session.add(
        Account(
            id=uuid.uuid4(),
            first_name="Andrés",
            phone="+573001234567",
            telegram_id="998877",
            credits_remaining=5,
            notify_whatsapp_on_diagnosis=False,
        )
    )
    sqlite_session.commit()

    def _override_get_db():
        yield sqlite_session

    monkeypatch.setattr(settings, "telegram_webhook_secret", SECRET)
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_telegram_channel] = lambda: channel
    app.dependency_overrides[get_whapi_channel] = lambda: FakeChannel(Channel.WHATSAPP)
    app.dependency_overrides[get_diagnosis_adapter] = lambda: DiagnosisAdapter(
        FakeDiagnosisEngine(), ["image/jpeg"], 1024 * 1024
    )
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestTelegramSchemas:
    def test_message_from_alias(self):
        message = TelegramMessage(
            message_id=1,
            date=1700000000,
            chat={"id": 5, "type": "private"},
            **{"from": {"id": 5, "first_name": "Andrés"}},
        )
        assert message.from_user.first_name == "Andrés"

    def test_nested_callback_from(self):
        update = TelegramUpdate(
            update_id=3,
            callback_query={"id": "cb", "from": {"id": 7, "first_name": "Ana"}, "data": "nuevo"},
        )
        assert isinstance(update.callback_query, TelegramCallbackQuery)
        assert update.callback_query.from_user.id == 7


class TestTelegramWebhookAuth:
    def test_missing_secret_header_returns_401(self, client, channel):
        response = client.post("/webhooks/telegram", json=_update())

        assert response.status_code == 401
        assert channel.sent_texts == []

    def test_wrong_secret_returns_401(self, client):
        response = client.post(
            "/webhooks/telegram", json=_update(), headers={"X-Telegram-Bot-Api-Secret-Token": "nope"}
        )
        assert response.status_code == 401

    @patch("tecrural_bot.routers.telegram_webhook.alert_once")
    def test_unconfigured_secret_accepts_and_alerts(self, mock_alert, client, monkeypatch):
        monkeypatch.setattr(settings, "telegram_webhook_secret", None)

        response = client.post("/webhooks/telegram", json=_update())

        assert response.status_code == 200
        assert mock_alert.call_args[0][0] == "telegram_webhook_secret_missing"


class TestTelegramWebhook:
    def test_help_command(self, client, channel):
        response = client.post("/webhooks/telegram", json=_update(), headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "command"}
        assert channel.texts == [messages.HELP]

    def test_malformed_body_is_acknowledged(self, client):
        response = client.post("/webhooks/telegram", content=b"<html>", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["message"] == "Ignored malformed payload"

    def test_invalid_update_is_acknowledged(self, client):
        response = client.post("/webhooks/telegram", json={"message": {"text": "sin update_id"}}, headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["message"] == "Ignored malformed payload"

    def test_edited_message_is_ignored(self, client, channel):
        body = _update()
        body["edited_message"] = body.pop("message")

        response = client.post("/webhooks/telegram", json=body, headers=HEADERS)

        assert response.json()["message"] == "No actionable content"
        assert channel.sent_texts == []

    def test_callback_is_answered_and_dispatched(self, client, channel, sqlite_session):
        body = {
            "update_id": 5,
            "callback_query": {
                "id": "cb-1",
                "from": {"id": 998877, "first_name": "Andrés"},
                "message": _update()["message"],
                "data": "nuevo",
            },
        }

        response = client.post("/webhooks/telegram", json=body, headers=HEADERS)

        assert response.json()["message"] == "command"
        assert channel.answered == ["cb-1"]
        assert channel.texts == [messages.ASK_CROP]
        assert sqlite_session.query(ConversationSession).one().channel == "telegram"

    def test_start_shows_menu(self, client, channel):
        client.post("/webhooks/telegram", json=_update(text="/start"), headers=HEADERS)

        assert channel.menus[0][1] == messages.START_MENU_TEXT
        assert channel.menus[0][2] == messages.START_MENU_BUTTONS

    def test_unlinked_chat(self, client, channel):
        response = client.post("/webhooks/telegram", json=_update(chat_id=111), headers=HEADERS)

        assert response.json()["message"] == "unknown_sender"
        assert channel.texts == [messages.UNKNOWN_SENDER_TELEGRAM]
