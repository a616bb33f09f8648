import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from zapdesk.database import Base


class FailedMessage(Base):
    """Dead-letter copy of a queue row that exhausted its retry budget."""

    __tablename__ = "failed_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    original_message_id = Column(UUID(as_uuid=True), ForeignKey("message_queue.id"), nullable=False, unique=True)
    correlation_id = Column(Text)
    message_type = Column(Text, nullable=False)
    payload = Column(JSONB, nullable=False)
    error_message = Column(Text)
    failure_count = Column(Integer, nullable=False, default=1)
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
