import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from zapdesk.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    sender_kind = Column(Text, nullable=False)  # customer, agent, system
    message_type = Column(Text, nullable=False, default="text")  # text, image, audio, video, document, location, contact, buttons, list
    content = Column(Text, nullable=False, default="")
    payload = Column(JSONB, nullable=False, default=dict)
    external_id = Column(Text)  # gateway message id
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")
