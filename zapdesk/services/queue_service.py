from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from zapdesk.config import settings
from zapdesk.logging_config import get_logger
from zapdesk.models import FailedMessage, QueuedMessage

logger = get_logger("queue_service")

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_RETRYING = "retrying"
STATUS_FAILED = "failed"

MESSAGE_TYPE_CHATBOT = "chatbot_message"


def build_dedup_key(instance_id: str | None, message_id: str | None) -> str | None:
    if not message_id:
        return None
    return f"{instance_id or '-'}:{message_id.strip()}"


def enqueue(
    db: Session,
    *,
    message_type: str,
    payload: dict[str, Any],
    correlation_id: str,
    priority: int = 0,
    max_retries: Optional[int] = None,
    metadata: Optional[dict[str, Any]] = None,
    dedup_key: Optional[str] = None,
) -> Optional[uuid.UUID]:
    """Insert a pending queue row and return its id.

    Returns None when a row with the same dedup_key already exists (redelivered webhook).
    Caller owns the commit.
    """
    now = datetime.now(timezone.utc)
    stmt = (
        insert(QueuedMessage.__table__)
        .values(
            id=uuid.uuid4(),
            correlation_id=correlation_id,
            message_type=message_type,
            payload=payload,
            priority=priority,
            retry_count=0,
            max_retries=settings.queue_max_retries if max_retries is None else max_retries,
            status=STATUS_PENDING,
            scheduled_at=now,
            dedup_key=dedup_key,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["dedup_key"])
        .returning(QueuedMessage.__table__.c.id)
    )
    result = db.execute(stmt)
    queue_id = result.scalar_one_or_none()
    if queue_id is None:
        logger.info(
            "Duplicate queue message skipped",
            extra={"context": {"dedup_key": dedup_key, "message_type": message_type}},
        )
    return queue_id


def dequeue(db: Session) -> Optional[dict[str, Any]]:
    """Claim the next due message.

    Highest priority first, then oldest. The select and the status flip happen in one
    statement; SKIP LOCKED keeps concurrent callers from claiming the same row.
    """
    row = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM message_queue
                    WHERE status IN ('pending', 'retrying')
                      AND scheduled_at <= NOW()
                    ORDER BY priority DESC, created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE message_queue
                SET status = 'processing',
                    locked_at = NOW(),
                    updated_at = NOW()
                FROM cte
                WHERE message_queue.id = cte.id
                RETURNING message_queue.id,
                          message_queue.correlation_id,
                          message_queue.message_type,
                          message_queue.payload,
                          message_queue.priority,
                          message_queue.retry_count,
                          message_queue.max_retries,
                          message_queue.metadata,
                          message_queue.created_at
                """
            )
        )
        .mappings()
        .first()
    )
    db.commit()
    return dict(row) if row else None


def dequeue_batch(db: Session, *, limit: int) -> list[dict[str, Any]]:
    rows = []
    for _ in range(max(limit, 0)):
        row = dequeue(db)
        if row is None:
            break
        rows.append(row)
    return rows


def mark_completed(db: Session, message_id) -> None:
    db.execute(
        text(
            """
            UPDATE message_queue
            SET status = 'completed',
                processed_at = NOW(),
                locked_at = NULL,
                error_message = NULL,
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {"id": message_id},
    )
    db.commit()


def mark_failed(
    db: Session,
    message_id,
    *,
    error: str,
    should_retry: bool,
    retry_delay_seconds: Optional[int] = None,
) -> str:
    """Record a failed attempt. Returns the resulting status (retrying or failed).

    A retry is scheduled only when allowed and the budget is not spent; otherwise the row
    becomes failed and is copied once into the dead-letter table.
    """
    message = db.query(QueuedMessage).filter(QueuedMessage.id == message_id).with_for_update().first()
    if message is None:
        logger.warning("mark_failed: queue message not found", extra={"context": {"message_id": str(message_id)}})
        return STATUS_FAILED

    now = datetime.now(timezone.utc)
    error = (error or "unknown error")[:2000]
    delay = settings.queue_retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds

    if should_retry and message.retry_count < message.max_retries:
        message.status = STATUS_RETRYING
        message.retry_count = message.retry_count + 1
        message.scheduled_at = now + timedelta(seconds=delay)
        message.error_message = error
        message.locked_at = None
        message.processed_at = now
        message.updated_at = now
        db.commit()
        logger.info(
            "Queue message scheduled for retry",
            extra={
                "context": {
                    "message_id": str(message_id),
                    "retry_count": message.retry_count,
                    "max_retries": message.max_retries,
                    "error": error,
                }
            },
        )
        return STATUS_RETRYING

    message.status = STATUS_FAILED
    message.error_message = error
    message.locked_at = None
    message.processed_at = now
    message.updated_at = now
    move_to_dead_letter(db, message, error=error)
    db.commit()
    logger.error(
        "Queue message moved to dead letter",
        extra={
            "context": {
                "message_id": str(message_id),
                "correlation_id": message.correlation_id,
                "retry_count": message.retry_count,
                "error": error,
            }
        },
    )
    return STATUS_FAILED


def move_to_dead_letter(db: Session, message: QueuedMessage, *, error: str) -> None:
    stmt = (
        insert(FailedMessage.__table__)
        .values(
            id=uuid.uuid4(),
            original_message_id=message.id,
            correlation_id=message.correlation_id,
            message_type=message.message_type,
            payload=message.payload,
            error_message=error,
            failure_count=message.retry_count + 1,
            metadata=message.message_metadata or {},
        )
        .on_conflict_do_nothing(index_elements=["original_message_id"])
    )
    db.execute(stmt)


def release_stale_processing(db: Session, *, stale_seconds: int) -> int:
    """Return rows stuck in processing (worker died mid-turn) to the retry pool."""
    if stale_seconds <= 0:
        return 0
    result = db.execute(
        text(
            """
            UPDATE message_queue
            SET status = 'retrying',
                scheduled_at = NOW(),
                locked_at = NULL,
                error_message = 'processing lock expired',
                updated_at = NOW()
            WHERE status = 'processing'
              AND locked_at < NOW() - make_interval(secs => :stale_seconds)
            """
        ),
        {"stale_seconds": stale_seconds},
    )
    db.commit()
    released = result.rowcount or 0
    if released:
        logger.warning("Released stale queue locks", extra={"context": {"released": released}})
    return released


def get_queue_stats(db: Session) -> dict[str, int]:
    rows = db.query(QueuedMessage.status, func.count(QueuedMessage.id)).group_by(QueuedMessage.status).all()
    stats = {status: 0 for status in (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_RETRYING, STATUS_FAILED)}
    for status, count in rows:
        stats[status] = count
    stats["dead_letter"] = db.query(func.count(FailedMessage.id)).scalar() or 0
    return stats


def dedup_key_exists(db: Session, dedup_key: Optional[str]) -> bool:
    if not dedup_key:
        return False
    return db.query(QueuedMessage.id).filter(QueuedMessage.dedup_key == dedup_key).first() is not None
