import uuid

from sqlalchemy import Column, Text, UniqueConstraint, Uuid
from sqlalchemy.types import TIMESTAMP

from tecrural_bot.database import Base


class ConversationSession(Base):
    __tablename__ = "bot_sessions"
    __table_args__ = (UniqueConstraint("channel", "sender_channel_id", name="uq_bot_sessions_sender"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    channel = Column(Text, nullable=False)  # whatsapp, telegram
    sender_channel_id = Column(Text, nullable=False)  # phone digits or telegram chat id
    account_id = Column(Uuid)
    state = Column(Text, nullable=False)  # awaiting_crop, awaiting_notes, awaiting_image, processing
    crop_name = Column(Text)
    user_notes = Column(Text)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    last_activity_at = Column(TIMESTAMP(timezone=True), nullable=False)
