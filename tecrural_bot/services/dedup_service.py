from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tecrural_bot.logging_config import get_logger, mask_phone
from tecrural_bot.models import ProcessedMessage

logger = get_logger("dedup_service")


def build_dedup_key(provider: str, external_message_id: str) -> str:
    return f"{provider}:{external_message_id.strip()}"


class DedupStore(ABC):
    """Append-only log of webhook messages whose business logic already ran."""

    @abstractmethod
    def has_been_processed(self, dedup_key: str) -> bool:
        """Read-only lookup, used by tests and ad-hoc inspection.

        The conversation engine never calls this: it relies on mark_processed alone,
        because a check followed by an insert would let concurrent redeliveries both pass.
        """

    @abstractmethod
    def mark_processed(self, dedup_key: str, sender_channel_id: str) -> bool:
        """Record the key. Returns False when it was already recorded (the unique constraint fired)."""


class SqlDedupStore(DedupStore):
    def __init__(self, db: Session):
        self.db = db

    def has_been_processed(self, dedup_key: str) -> bool:
        return self.db.query(ProcessedMessage).filter(ProcessedMessage.dedup_key == dedup_key).first() is not None

    def mark_processed(self, dedup_key: str, sender_channel_id: str) -> bool:
        self.db.add(
            ProcessedMessage(
                dedup_key=dedup_key,
                sender_channel_id=sender_channel_id,
                processed_at=datetime.now(timezone.utc),
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                "Duplicate message (unique constraint)",
                extra={"context": {"dedup_key": dedup_key, "sender": mask_phone(sender_channel_id)}},
            )
            return False
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return True
