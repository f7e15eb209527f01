from sqlalchemy import Column, Text
from sqlalchemy.types import TIMESTAMP

from tecrural_bot.database import Base


class ProcessedMessage(Base):
    __tablename__ = "processed_messages"

    dedup_key = Column(Text, primary_key=True)  # "<provider>:<external message id>"
    sender_channel_id = Column(Text, nullable=False)
    processed_at = Column(TIMESTAMP(timezone=True), nullable=False)
