import uuid

from sqlalchemy import Column, ForeignKey, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from zapdesk.database import Base


class ChatbotState(Base):
    __tablename__ = "chatbot_state"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contact_phone = Column(Text, nullable=False, unique=True)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"))
    current_stage = Column(Text, nullable=False, default="start")
    context = Column(JSONB, nullable=False, default=dict)
    nlp_intent = Column(Text)
    nlp_confidence = Column(Numeric(4, 3))
    correlation_id = Column(Text)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Compare-and-swap on every UPDATE/DELETE; a concurrent turn raises StaleDataError.
    __mapper_args__ = {"version_id_col": version}
