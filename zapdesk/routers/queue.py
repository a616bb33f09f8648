from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from zapdesk.config import settings
from zapdesk.database import get_db
from zapdesk.logging_config import get_logger
from zapdesk.services.queue_processor import SOURCE_SCHEDULER, process_queue_batch
from zapdesk.services.queue_service import get_queue_stats

logger = get_logger("queue_router")

router = APIRouter(prefix="/queue", tags=["queue"])


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/process")
def process_queue(
    limit: Optional[int] = None,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Scheduler tick: drain one batch of due messages."""
    _require_admin_token(x_admin_token)
    if limit is not None and limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")
    results = process_queue_batch(db, source=SOURCE_SCHEDULER, limit=limit)
    return {"status": "ok", **results}


@router.get("/stats")
def queue_stats(
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    return {"status": "ok", "queue": get_queue_stats(db)}
