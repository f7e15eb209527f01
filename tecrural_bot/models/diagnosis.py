import uuid

from sqlalchemy import Column, Float, ForeignKey, Text, Uuid
from sqlalchemy.types import TIMESTAMP

from tecrural_bot.database import Base


class Diagnosis(Base):
    __tablename__ = "diagnoses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("profiles.id"), nullable=False)
    cultivo_name = Column(Text)
    confidence_score = Column(Float)  # 0..1
    ai_diagnosis_md = Column(Text)
    image_url = Column(Text)
    source = Column(Text)  # web, whatsapp, telegram
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
