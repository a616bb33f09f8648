import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from zapdesk.database import Base


class TriggerActivation(Base):
    """Append-only audit of fired triggers; also backs cooldown and daily caps."""

    __tablename__ = "trigger_activations"
    __table_args__ = (Index("ix_trigger_activations_lookup", "trigger_id", "contact_phone", "created_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    trigger_id = Column(UUID(as_uuid=True), ForeignKey("automation_triggers.id"), nullable=False)
    contact_phone = Column(Text, nullable=False)
    activation_reason = Column(Text)
    conditions_met = Column(JSONB, nullable=False, default=dict)
    actions_executed = Column(JSONB, nullable=False, default=dict)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    trigger = relationship("AutomationTrigger", back_populates="activations")
