import uuid

from sqlalchemy import Column, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from zapdesk.database import Base


class QueuedMessage(Base):
    __tablename__ = "message_queue"
    __table_args__ = (Index("ix_message_queue_claim", "status", "priority", "scheduled_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    correlation_id = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False)  # chatbot_message
    payload = Column(JSONB, nullable=False)
    priority = Column(Integer, nullable=False, default=0)  # higher is served first
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    status = Column(Text, nullable=False, default="pending")  # pending, processing, completed, retrying, failed
    scheduled_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    locked_at = Column(TIMESTAMP(timezone=True))
    processed_at = Column(TIMESTAMP(timezone=True))
    error_message = Column(Text)
    dedup_key = Column(Text, unique=True)  # instanceId:messageId for webhook turns
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
