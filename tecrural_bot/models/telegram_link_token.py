import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text, Uuid
from sqlalchemy.types import TIMESTAMP

from tecrural_bot.database import Base


class TelegramLinkToken(Base):
    __tablename__ = "telegram_link_tokens"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    token = Column(Text, nullable=False, unique=True)
    user_id = Column(Uuid, ForeignKey("profiles.id"))
    telegram_id = Column(Text)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    used = Column(Boolean, nullable=False, default=False)
