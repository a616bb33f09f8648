import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from zapdesk.database import Base


class NlpIntent(Base):
    __tablename__ = "nlp_intents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    intent_name = Column(Text, nullable=False)
    training_phrases = Column(JSONB, nullable=False, default=list)
    confidence_threshold = Column(Numeric(4, 3), nullable=False, default=0.7)
    target_stage = Column(Text)  # chatbot stage to jump to on match
    parameters = Column(JSONB, nullable=False, default=dict)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
