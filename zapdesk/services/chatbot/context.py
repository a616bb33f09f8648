from typing import Any, Optional

from pydantic import BaseModel, Field


class ChatContext(BaseModel):
    """Fields the chatbot collects across turns; stored as chatbot_state.context.

    Keys this model does not know land in ``extra`` so stored data is never dropped.
    """

    name: Optional[str] = None
    phone: Optional[str] = None
    product_interest: Optional[str] = None
    product_details: Optional[str] = None
    support_issue: Optional[str] = None
    transfer_reason: Optional[str] = None
    department: Optional[str] = None
    invalid_attempts: int = 0
    nlp_insights: Optional[dict[str, Any]] = None
    flow_id: Optional[str] = None
    triggered_by: Optional[str] = None
    trigger_reason: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_stored(cls, data: Optional[dict[str, Any]]) -> "ChatContext":
        data = dict(data or {})
        known = {key: data.pop(key) for key in list(data) if key in cls.model_fields and key != "extra"}
        extra = data.pop("extra", None)
        extra = dict(extra) if isinstance(extra, dict) else {}
        extra.update(data)
        return cls.model_validate({**known, "extra": extra})

    def to_stored(self) -> dict[str, Any]:
        stored = self.model_dump(exclude_none=True, exclude={"extra"})
        if self.extra:
            stored["extra"] = dict(self.extra)
        return stored
