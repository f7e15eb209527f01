from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tecrural_bot.logging_config import get_logger, mask_phone
from tecrural_bot.models import ConversationSession
from tecrural_bot.services.session_state import SessionState, encode_state

logger = get_logger("session_store")


@dataclass
class StoredSession:
    """Raw session row. `state` is decoded by the engine so corrupt rows can be reset there."""

    channel: str
    sender_channel_id: str
    account_id: Optional[UUID]
    state: str
    crop_name: Optional[str]
    user_notes: Optional[str]
    expires_at: datetime
    last_activity_at: datetime


def as_utc(value: datetime) -> datetime:
    # SQLite hands timezone-aware columns back as naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionStore(ABC):
    """Persistence of the per-sender conversation session."""

    @abstractmethod
    def get(self, channel: str, sender_channel_id: str, now: datetime) -> Optional[StoredSession]:
        """Return the live session, or None. Expired sessions are deleted and reported as absent."""

    @abstractmethod
    def save(
        self,
        channel: str,
        sender_channel_id: str,
        account_id: Optional[UUID],
        state: SessionState,
        *,
        now: datetime,
        expires_at: datetime,
    ) -> StoredSession:
        """Create or overwrite (last write wins) the sender's session."""

    @abstractmethod
    def delete(self, channel: str, sender_channel_id: str) -> None:
        """Remove the sender's session if there is one."""

    @abstractmethod
    def delete_expired(self, now: datetime) -> int:
        """Remove every session past its expiry. Returns the number removed."""


class SqlSessionStore(SessionStore):
    def __init__(self, db: Session):
        self.db = db

    def _find(self, channel: str, sender_channel_id: str) -> Optional[ConversationSession]:
        return (
            self.db.query(ConversationSession)
            .filter(
                ConversationSession.channel == channel,
                ConversationSession.sender_channel_id == sender_channel_id,
            )
            .first()
        )

    def _upsert_row(self, channel: str, sender_channel_id: str, fields: dict) -> ConversationSession:
        row = self._find(channel, sender_channel_id)
        if row is None:
            row = ConversationSession(channel=channel, sender_channel_id=sender_channel_id)
            self.db.add(row)
        for name, value in fields.items():
            setattr(row, name, value)
        return row

    @staticmethod
    def _to_stored(row: ConversationSession) -> StoredSession:
        return StoredSession(
            channel=row.channel,
            sender_channel_id=row.sender_channel_id,
            account_id=row.account_id,
            state=row.state,
            crop_name=row.crop_name,
            user_notes=row.user_notes,
            expires_at=as_utc(row.expires_at),
            last_activity_at=as_utc(row.last_activity_at),
        )

    def get(self, channel: str, sender_channel_id: str, now: datetime) -> Optional[StoredSession]:
        row = self._find(channel, sender_channel_id)
        if row is None:
            return None

        if as_utc(row.expires_at) <= now:
            logger.info(
                "Session expired, removing",
                extra={"context": {"channel": channel, "sender": mask_phone(sender_channel_id), "state": row.state}},
            )
            self.db.delete(row)
            self.db.commit()
            return None

        return self._to_stored(row)

    def save(
        self,
        channel: str,
        sender_channel_id: str,
        account_id: Optional[UUID],
        state: SessionState,
        *,
        now: datetime,
        expires_at: datetime,
    ) -> StoredSession:
        state_value, crop_name, user_notes = encode_state(state)

        fields = {
            "account_id": account_id,
            "state": state_value,
            "crop_name": crop_name,
            "user_notes": user_notes,
            "expires_at": expires_at,
            "last_activity_at": now,
        }

        row = self._upsert_row(channel, sender_channel_id, fields)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery from the same sender raced this one; the row may
            # exist now or may already have been removed again.
            self.db.rollback()
            row = self._upsert_row(channel, sender_channel_id, fields)
            self.db.commit()

        return self._to_stored(row)

    def delete(self, channel: str, sender_channel_id: str) -> None:
        if not self.db.is_active:
            # Called from failure handling after a statement already broke the transaction.
            self.db.rollback()
        self.db.query(ConversationSession).filter(
            ConversationSession.channel == channel,
            ConversationSession.sender_channel_id == sender_channel_id,
        ).delete(synchronize_session=False)
        self.db.commit()

    def delete_expired(self, now: datetime) -> int:
        removed = (
            self.db.query(ConversationSession)
            .filter(ConversationSession.expires_at <= now)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return removed
