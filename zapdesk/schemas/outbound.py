from typing import Any, Optional

from pydantic import BaseModel, Field


class OutboundMessage(BaseModel):
    """One send instruction for the gateway: {type, phone, data}."""

    type: str
    phone: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class SendResponse(BaseModel):
    success: bool
    message: str
    gateway_response: Optional[Any] = None
