import json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from zapdesk.config import settings
from zapdesk.correlation import new_correlation_id, reset_correlation_id, set_correlation_id
from zapdesk.database import get_db
from zapdesk.logging_config import PipelineLogger, get_logger
from zapdesk.schemas.webhook import WebhookPayload, WebhookResponse
from zapdesk.services.conversation_service import (
    get_company_by_instance,
    get_contact,
    get_open_conversation,
    message_exists,
    record_customer_message,
    save_message,
)
from zapdesk.services.event_service import (
    EVENT_CLASS_MESSAGE,
    classify_event,
    get_request_signature,
    has_routable_content,
    is_native_upsert,
    normalize_evolution_payload,
    verify_signature,
)
from zapdesk.services.queue_processor import SOURCE_ROUTER, process_queue_in_new_session
from zapdesk.services.queue_service import MESSAGE_TYPE_CHATBOT, build_dedup_key, dedup_key_exists, enqueue
from zapdesk.services.sender_service import sanitize_phone
from zapdesk.services.state_machine import is_human_owned
from zapdesk.services.trigger_service import build_trigger_context, evaluate_triggers

logger = get_logger("webhook")

router = APIRouter(tags=["webhook"])

CHATBOT_PRIORITY = 1


async def _read_json_body(request: Request) -> tuple[bytes, dict]:
    raw = await request.body()

    if settings.webhook_secret:
        provided = get_request_signature(request.headers)
        if not verify_signature(settings.webhook_secret, raw, provided):
            logger.warning("Webhook signature rejected", extra={"context": {"has_signature": bool(provided)}})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        body = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    return raw, body


def _route_message(
    db: Session,
    payload: WebhookPayload,
    correlation_id: str,
    background_tasks: BackgroundTasks,
    response: Response,
) -> WebhookResponse:
    log = PipelineLogger("chatbot_router", correlation_id)
    data = payload.data
    phone = sanitize_phone(data.sender)
    text = data.text.message

    dedup_key = build_dedup_key(payload.instanceId, data.messageId)
    if dedup_key_exists(db, dedup_key) or message_exists(db, data.messageId):
        log.info("Duplicate delivery ignored", contact_phone=phone, message_id=data.messageId)
        return WebhookResponse(success=True, message="Duplicate message ignored", correlation_id=correlation_id)

    company = get_company_by_instance(db, payload.instanceId)
    company_id = company.id if company else None

    contact = get_contact(db, company_id, phone)
    conversation = get_open_conversation(db, contact.id) if contact else None
    if conversation is not None and is_human_owned(conversation.state):
        save_message(db, conversation, "customer", text, external_id=data.messageId)
        db.commit()
        log.info("Message forwarded to human", contact_phone=phone, conversation_id=str(conversation.id))
        return WebhookResponse(success=True, message="Forwarded to human", correlation_id=correlation_id)

    trigger_context = build_trigger_context(
        db,
        company_id=company_id,
        phone=phone,
        message_content=text,
        contact_name=payload.display_name,
        correlation_id=correlation_id,
    )
    evaluation = evaluate_triggers(db, trigger_context)
    if evaluation.transferred:
        record_customer_message(db, company_id, phone, text, name=payload.display_name, external_id=data.messageId)
        db.commit()
        log.info("Transferred by automation trigger", contact_phone=phone, triggers=evaluation.triggers)
        return WebhookResponse(
            success=True,
            message="Transferred to human by automation trigger",
            correlation_id=correlation_id,
            details={"activated_triggers": evaluation.activated, "triggers": evaluation.triggers},
        )

    queue_id = enqueue(
        db,
        message_type=MESSAGE_TYPE_CHATBOT,
        payload={
            "message": payload.to_queue_message(),
            "company_id": str(company_id) if company_id else None,
            "contact_phone": phone,
        },
        correlation_id=correlation_id,
        priority=CHATBOT_PRIORITY,
        metadata={"routing_reason": "chatbot", "phone": phone, "message_id": data.messageId},
        dedup_key=dedup_key,
    )
    db.commit()

    if queue_id is None:
        return WebhookResponse(success=True, message="Duplicate message ignored", correlation_id=correlation_id)

    background_tasks.add_task(process_queue_in_new_session, SOURCE_ROUTER)
    log.info("Message queued for chatbot", contact_phone=phone, queue_id=str(queue_id))
    response.status_code = status.HTTP_202_ACCEPTED
    return WebhookResponse(
        success=True,
        message="Message queued for processing",
        status="queued",
        queue_id=queue_id,
        correlation_id=correlation_id,
        details={"activated_triggers": evaluation.activated} if evaluation.activated else None,
    )


@router.post("/webhook", response_model=WebhookResponse)
@router.post("/webhook/evolution", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Entry point for every gateway event.

    Only 400 (bad JSON / payload) and 401 (bad signature) are surfaced to the gateway;
    everything else answers 2xx so the gateway does not start its own retries.
    """
    _, body = await _read_json_body(request)
    native_upsert = is_native_upsert(body)
    body = normalize_evolution_payload(body)

    event = body.get("event")
    event_class = classify_event(event)
    if event_class != EVENT_CLASS_MESSAGE:
        logger.info(
            f"Gateway event acknowledged: {event}",
            extra={"context": {"event_class": event_class, "instance": body.get("instanceId") or body.get("instance")}},
        )
        return WebhookResponse(success=True, message=f"Event {event} acknowledged")

    if native_upsert and not has_routable_content(body):
        logger.info(
            "Message ignored",
            extra={"context": {"event": event, "from_me": body["data"]["fromMe"], "instance": body.get("instanceId")}},
        )
        return WebhookResponse(success=True, message="Message ignored")

    try:
        payload = WebhookPayload.model_validate(body)
    except ValidationError as e:
        logger.warning("Invalid webhook payload", extra={"context": {"errors": e.errors(include_url=False)}})
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "message": "Invalid payload",
                "details": json.loads(e.json(include_url=False)),
            },
        )

    if not payload.is_incoming_message:
        logger.info(
            "Message ignored",
            extra={"context": {"event": payload.event, "from_me": payload.data.fromMe}},
        )
        return WebhookResponse(success=True, message="Message ignored")

    correlation_id = new_correlation_id()
    token = set_correlation_id(correlation_id)
    try:
        return _route_message(db, payload, correlation_id, background_tasks, response)
    except Exception as e:
        db.rollback()
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        return WebhookResponse(success=False, message="Internal error", correlation_id=correlation_id)
    finally:
        reset_correlation_id(token)
