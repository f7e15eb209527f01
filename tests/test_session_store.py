from datetime import timedelta
from unittest.mock import MagicMock

from conftest import FIXED_NOW
from sqlalchemy.exc import IntegrityError

from tecrural_bot.models import ConversationSession
from tecrural_bot.services.session_state import AwaitingCrop, AwaitingImage, AwaitingNotes
from tecrural_bot.services.session_store import SqlSessionStore


def _save(store, state, sender="573001234567", minutes=30, channel="whatsapp"):
    return store.save(
        channel,
        sender,
        None,
        state,
        now=FIXED_NOW,
        expires_at=FIXED_NOW + timedelta(minutes=minutes),
    )


class TestSqlSessionStore:
    def test_save_and_get(self, sqlite_session):
        store = SqlSessionStore(sqlite_session)
        _save(store, AwaitingNotes(crop_name="tomate"))

        stored = store.get("whatsapp", "573001234567", FIXED_NOW)

        assert stored.state == "awaiting_notes"
        assert stored.crop_name == "tomate"
        assert stored.user_notes is None
        assert stored.expires_at == FIXED_NOW + timedelta(minutes=30)

    def test_save_overwrites_single_row(self, sqlite_session):
        store = SqlSessionStore(sqlite_session)
        _save(store, AwaitingCrop())
        _save(store, AwaitingImage(crop_name="café", notes="roya"))

        assert sqlite_session.query(ConversationSession).count() == 1
        stored = store.get("whatsapp", "573001234567", FIXED_NOW)
        assert stored.state == "awaiting_image"
        assert stored.user_notes == "roya"

    def test_channels_are_independent(self, sqlite_session):
        store = SqlSessionStore(sqlite_session)
        _save(store, AwaitingCrop(), sender="12345", channel="whatsapp")
        _save(store, AwaitingNotes(crop_name="maíz"), sender="12345", channel="telegram")

        assert store.get("whatsapp", "12345", FIXED_NOW).state == "awaiting_crop"
        assert store.get("telegram", "12345", FIXED_NOW).state == "awaiting_notes"

    def test_expired_session_is_deleted_on_read(self, sqlite_session):
        store = SqlSessionStore(sqlite_session)
        _save(store, AwaitingCrop(), minutes=30)

        assert store.get("whatsapp", "573001234567", FIXED_NOW + timedelta(minutes=30)) is None
        assert sqlite_session.query(ConversationSession).count() == 0

    def test_delete_missing_is_noop(self, sqlite_session):
        store = SqlSessionStore(sqlite_session)
        store.delete("whatsapp", "nobody")
        assert sqlite_session.query(ConversationSession).count() == 0

    def test_delete(self, sqlite_session):
        store = SqlSessionStore(sqlite_session)
        _save(store, AwaitingCrop())
        store.delete("whatsapp", "573001234567")
        assert store.get("whatsapp", "573001234567", FIXED_NOW) is None

    def test_delete_expired_counts_only_expired(self, sqlite_session):
        store = SqlSessionStore(sqlite_session)
        _save(store, AwaitingCrop(), sender="1", minutes=5)
        _save(store, AwaitingCrop(), sender="2", minutes=10)
        _save(store, AwaitingCrop(), sender="3", minutes=60)

        removed = store.delete_expired(FIXED_NOW + timedelta(minutes=10))

        assert removed == 2
        assert store.get("whatsapp", "3", FIXED_NOW) is not None

    def test_insert_race_where_winning_row_is_gone_inserts_again(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.first.return_value = None
        db.commit.side_effect = [IntegrityError("INSERT INTO conversation_sessions", {}, Exception("duplicate")), None]
        store = SqlSessionStore(db)

        stored = _save(store, AwaitingImage(crop_name="papa", notes=""))

        db.rollback.assert_called_once()
        assert db.add.call_count == 2
        assert db.commit.call_count == 2
        assert stored.state == "awaiting_image"
        assert stored.crop_name == "papa"
        assert stored.expires_at == FIXED_NOW + timedelta(minutes=30)
