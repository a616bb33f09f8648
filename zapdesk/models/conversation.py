import uuid

from sqlalchemy import Column, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from zapdesk.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # At most one open conversation per contact
        Index(
            "uq_conversations_open_contact",
            "contact_id",
            unique=True,
            postgresql_where=text("status <> 'finished'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"))
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    channel = Column(Text, nullable=False, default="whatsapp")
    status = Column(Text, nullable=False, default="active")  # active, in_progress, finished
    state = Column(Text, nullable=False, default="bot_active")  # bot_active, pending, agent_active
    assigned_agent_id = Column(UUID(as_uuid=True))
    department = Column(Text)
    transfer_reason = Column(Text)
    last_message_at = Column(TIMESTAMP(timezone=True))
    transferred_at = Column(TIMESTAMP(timezone=True))
    finished_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    contact = relationship("Contact", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
