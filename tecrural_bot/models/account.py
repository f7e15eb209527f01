import uuid

from sqlalchemy import Boolean, Column, Integer, Text, Uuid
from sqlalchemy.types import TIMESTAMP

from tecrural_bot.database import Base


class Account(Base):
    __tablename__ = "profiles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name = Column(Text)
    last_name = Column(Text)
    email = Column(Text)
    phone = Column(Text)  # E.164 as typed in the web app, e.g. +573001234567
    telegram_id = Column(Text, unique=True)
    telegram_username = Column(Text)
    credits_remaining = Column(Integer, nullable=False, default=0)
    notify_whatsapp_on_diagnosis = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True))
