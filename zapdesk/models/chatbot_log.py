import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from zapdesk.database import Base


class ChatbotLog(Base):
    __tablename__ = "chatbot_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    correlation_id = Column(Text)
    function_name = Column(Text, nullable=False)
    level = Column(Text, nullable=False)  # debug, info, warning, error
    message = Column(Text, nullable=False)
    contact_phone = Column(Text)
    current_stage = Column(Text)
    log_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
