from fastapi import APIRouter, HTTPException

from zapdesk.logging_config import get_logger
from zapdesk.schemas.outbound import OutboundMessage, SendResponse
from zapdesk.services.sender_service import OutboundValidationError, send_message

logger = get_logger("messages_router")

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/send", response_model=SendResponse)
def send(message: OutboundMessage):
    """Relay one outbound instruction to the gateway (agent panel, scripts)."""
    try:
        result = send_message(message)
    except OutboundValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.ok:
        logger.warning(
            "Relay send failed",
            extra={"context": {"phone": message.phone, "type": message.type, "error": result.error}},
        )
        raise HTTPException(status_code=502, detail=result.error)

    return SendResponse(success=True, message="Message sent", gateway_response=result.value)
