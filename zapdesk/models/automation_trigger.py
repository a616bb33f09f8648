import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from zapdesk.database import Base


class AutomationTrigger(Base):
    __tablename__ = "automation_triggers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"))  # NULL = all tenants
    name = Column(Text, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=100)  # 1 = highest
    trigger_type = Column(Text, nullable=False)  # message_received, keyword_detected, first_message, business_hours, user_return, inactivity
    conditions = Column(JSONB, nullable=False, default=dict)
    actions = Column(JSONB, nullable=False, default=dict)
    cooldown_minutes = Column(Integer)
    max_activations_per_day = Column(Integer)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    activations = relationship("TriggerActivation", back_populates="trigger")
