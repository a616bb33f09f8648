import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from zapdesk.config import settings
from zapdesk.database import SessionLocal, get_db
from zapdesk.logging_config import get_logger, setup_logging
from zapdesk.models import ChatbotState, Contact, Conversation, Message, QueuedMessage
from zapdesk.routers import conversations, messages, queue, webhook
from zapdesk.services.queue_processor import SOURCE_SCHEDULER, process_queue_in_new_session

setup_logging(settings.log_level, SessionLocal if settings.log_to_database else None)

app = FastAPI(
    title="Zapdesk API",
    description="WhatsApp chatbot pipeline: webhook, queue, triggers, chatbot and human handoff",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(messages.router)
app.include_router(queue.router)
app.include_router(conversations.router)

worker_logger = get_logger("queue_worker")
_queue_worker_task: asyncio.Task | None = None


def _is_queue_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.queue_worker_enabled


async def _queue_worker_loop() -> None:
    interval_seconds = max(settings.queue_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = await asyncio.to_thread(process_queue_in_new_session, SOURCE_SCHEDULER)
            if results.get("claimed"):
                worker_logger.info("Queue worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Queue worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_queue_worker() -> None:
    global _queue_worker_task
    if not _is_queue_worker_enabled():
        return
    if _queue_worker_task is None or _queue_worker_task.done():
        _queue_worker_task = asyncio.create_task(_queue_worker_loop())
        worker_logger.info("Queue worker started")


@app.on_event("shutdown")
async def stop_queue_worker() -> None:
    global _queue_worker_task
    if _queue_worker_task is None:
        return
    _queue_worker_task.cancel()
    try:
        await _queue_worker_task
    except asyncio.CancelledError:
        pass
    _queue_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "contacts": db.query(Contact).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "chatbot_states": db.query(ChatbotState).count(),
        "queued_messages": db.query(QueuedMessage).count(),
    }
