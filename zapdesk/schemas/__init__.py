from zapdesk.schemas.outbound import OutboundMessage, SendResponse
from zapdesk.schemas.webhook import WebhookPayload, WebhookResponse

__all__ = ["OutboundMessage", "SendResponse", "WebhookPayload", "WebhookResponse"]
