from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from zapdesk.config import settings
from zapdesk.correlation import reset_correlation_id, set_correlation_id
from zapdesk.logging_config import PipelineLogger, get_logger
from zapdesk.schemas.webhook import WebhookPayload
from zapdesk.services.chatbot.engine import run_turn
from zapdesk.services.queue_service import (
    MESSAGE_TYPE_CHATBOT,
    STATUS_RETRYING,
    dequeue_batch,
    mark_completed,
    mark_failed,
    release_stale_processing,
)
from zapdesk.services.sender_service import OutboundValidationError, sanitize_phone, send_or_raise

logger = get_logger("queue_processor")

SOURCE_ROUTER = "router"
SOURCE_SCHEDULER = "scheduler"


class PermanentProcessingError(Exception):
    """The queued message can never succeed; skip retries."""


def batch_size_for(source: str) -> int:
    if source == SOURCE_SCHEDULER:
        return settings.queue_batch_size_scheduler
    return settings.queue_batch_size_router


def process_chatbot_message(db: Session, row: dict[str, Any]) -> dict[str, Any]:
    """Run one chatbot turn from a queue row and deliver its replies, then commit."""
    payload = row.get("payload") or {}
    try:
        message = WebhookPayload.model_validate(payload.get("message") or {})
    except ValidationError as e:
        raise PermanentProcessingError(f"invalid_payload: {e.error_count()} error(s)") from e

    phone = payload.get("contact_phone") or sanitize_phone(message.data.sender)
    outcome = run_turn(
        db,
        phone=phone,
        text=message.data.text.message,
        user_name=message.display_name,
        company_id=payload.get("company_id"),
        correlation_id=row.get("correlation_id"),
        external_id=message.data.messageId,
    )

    for outbound in outcome.outbound:
        send_or_raise(outbound)

    db.commit()
    return {
        "stage": outcome.stage,
        "sent": len(outcome.outbound),
        "transferred": outcome.transfer is not None,
        "skipped": outcome.skipped,
    }


HANDLERS = {
    MESSAGE_TYPE_CHATBOT: process_chatbot_message,
}


def process_row(db: Session, row: dict[str, Any]) -> str:
    """Process one claimed row. Returns completed, retrying or failed."""
    correlation_id = row.get("correlation_id")
    token = set_correlation_id(correlation_id)
    log = PipelineLogger("queue_processor", correlation_id)
    try:
        handler = HANDLERS.get(row.get("message_type"))
        if handler is None:
            raise PermanentProcessingError(f"unsupported_message_type: {row.get('message_type')}")

        result = handler(db, row)
        mark_completed(db, row["id"])
        log.info("Queue message processed", queue_id=str(row["id"]), **result)
        return "completed"

    except Exception as exc:
        db.rollback()
        permanent = isinstance(exc, (PermanentProcessingError, OutboundValidationError))
        retry_count = row.get("retry_count") or 0
        max_retries = row.get("max_retries") or 0
        should_retry = not permanent and retry_count < max_retries
        if isinstance(exc, StaleDataError):
            log.warning("Concurrent turn for the same contact; replaying", queue_id=str(row["id"]))
        log.error(
            f"Queue message failed: {exc}",
            queue_id=str(row["id"]),
            retry_count=retry_count,
            should_retry=should_retry,
        )
        status = mark_failed(db, row["id"], error=f"{type(exc).__name__}: {exc}", should_retry=should_retry)
        return "retry_scheduled" if status == STATUS_RETRYING else "failed"

    finally:
        reset_correlation_id(token)


def process_queue_batch(db: Session, *, source: str = SOURCE_ROUTER, limit: Optional[int] = None) -> dict[str, int]:
    """Drain up to ``limit`` due messages (router: 10, scheduler: 5 by default)."""
    limit = batch_size_for(source) if limit is None else limit
    results = {"claimed": 0, "completed": 0, "retry_scheduled": 0, "failed": 0, "released_stale": 0}

    results["released_stale"] = release_stale_processing(db, stale_seconds=settings.queue_stale_processing_seconds)
    rows = dequeue_batch(db, limit=limit)
    results["claimed"] = len(rows)

    for row in rows:
        outcome = process_row(db, row)
        results[outcome] += 1

    if rows:
        logger.info("Queue batch processed", extra={"context": {"source": source, **results}})
    return results


def process_queue_in_new_session(source: str = SOURCE_ROUTER) -> dict[str, int]:
    """Entry point for background tasks and the worker loop; owns its session."""
    from zapdesk.database import SessionLocal

    db = SessionLocal()
    try:
        return process_queue_batch(db, source=source)
    except Exception as exc:
        db.rollback()
        logger.error("Queue processing run failed", extra={"context": {"source": source, "error": str(exc)}})
        return {"claimed": 0, "completed": 0, "retry_scheduled": 0, "failed": 0, "released_stale": 0}
    finally:
        db.close()
