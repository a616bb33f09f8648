from typing import Any, Optional, Union
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictFloat, StrictInt

MESSAGE_RECEIVED_EVENT = "message-received"


class TextContent(BaseModel):
    message: str = Field(min_length=1, strict=True)


class WebhookMessageData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messageId: str = Field(min_length=1, strict=True)
    sender: str = Field(min_length=1, strict=True, validation_alias=AliasChoices("from", "sender"))
    to: str = Field(min_length=1, strict=True)
    text: TextContent
    timestamp: Union[StrictInt, StrictFloat]
    fromMe: bool = Field(strict=True)
    senderName: Optional[str] = Field(default=None, strict=True)
    pushName: Optional[str] = Field(default=None, strict=True)


class WebhookPayload(BaseModel):
    """Canonical inbound gateway event."""

    event: str = Field(min_length=1, strict=True)
    instanceId: str = Field(min_length=1, strict=True)
    data: WebhookMessageData

    @property
    def is_incoming_message(self) -> bool:
        return self.event == MESSAGE_RECEIVED_EVENT and not self.data.fromMe

    @property
    def display_name(self) -> str:
        return self.data.senderName or self.data.pushName or "Cliente"

    def to_queue_message(self) -> dict[str, Any]:
        """Plain dict stored in the queue payload, using the wire field names."""
        payload = self.model_dump()
        payload["data"]["from"] = payload["data"].pop("sender")
        return payload


class WebhookResponse(BaseModel):
    success: bool
    message: str
    status: Optional[str] = None
    queue_id: Optional[UUID] = None
    correlation_id: Optional[str] = None
    details: Optional[Any] = None
