"""JSON logging configuration for Zapdesk API."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from zapdesk.correlation import get_correlation_id


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        if hasattr(record, "context") and record.context:
            log_data["context"] = record.context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class CorrelationFilter(logging.Filter):
    """Stamp the current correlation id on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


class DatabaseLogHandler(logging.Handler):
    """Persist pipeline log records into the chatbot_logs table.

    Only records emitted through PipelineLogger (they carry a ``pipeline`` attribute)
    are stored. Each record uses its own short-lived session so that a request
    rollback never discards its log trail.
    """

    def __init__(self, session_factory: Callable[[], Any], level: int = logging.INFO):
        super().__init__(level)
        self.session_factory = session_factory

    def emit(self, record: logging.LogRecord) -> None:
        pipeline = getattr(record, "pipeline", None)
        if not pipeline:
            return

        from zapdesk.models import ChatbotLog

        db = None
        try:
            db = self.session_factory()
            db.add(
                ChatbotLog(
                    correlation_id=getattr(record, "correlation_id", None),
                    function_name=pipeline.get("function_name"),
                    level=record.levelname.lower(),
                    message=record.getMessage(),
                    contact_phone=pipeline.get("contact_phone"),
                    current_stage=pipeline.get("current_stage"),
                    log_metadata=getattr(record, "context", None) or {},
                )
            )
            db.commit()
        except Exception:
            if db is not None:
                db.rollback()
            self.handleError(record)
        finally:
            if db is not None:
                db.close()


def setup_logging(level: str = "INFO", session_factory: Optional[Callable[[], Any]] = None) -> None:
    """Configure JSON logging for the application.

    When ``session_factory`` is given, pipeline records are also written to the database.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(CorrelationFilter())
    root_logger.addHandler(handler)

    if session_factory is not None:
        db_handler = DatabaseLogHandler(session_factory)
        db_handler.addFilter(CorrelationFilter())
        root_logger.addHandler(db_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(f"zapdesk.{name}")


class PipelineLogger(logging.LoggerAdapter):
    """Structured logger for one pipeline function invocation.

    Usage:
        log = PipelineLogger("chatbot_engine", correlation_id)
        log.info("Stage advanced", contact_phone=phone, current_stage="start", next_stage="awaiting_option")

    Keyword arguments other than ``contact_phone``, ``current_stage`` and ``exc_info``
    become record metadata.
    """

    _passthrough = ("exc_info", "stack_info", "stacklevel")

    def __init__(self, function_name: str, correlation_id: Optional[str] = None):
        super().__init__(get_logger(function_name), {})
        self.function_name = function_name
        self.correlation_id = correlation_id

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        passthrough = {key: kwargs.pop(key) for key in self._passthrough if key in kwargs}
        contact_phone = kwargs.pop("contact_phone", None)
        current_stage = kwargs.pop("current_stage", None)

        extra = {
            "context": kwargs,
            "pipeline": {
                "function_name": self.function_name,
                "contact_phone": contact_phone,
                "current_stage": current_stage,
            },
        }
        correlation_id = self.correlation_id or get_correlation_id()
        if correlation_id:
            extra["correlation_id"] = correlation_id
        if contact_phone:
            extra["context"] = {"contact_phone": contact_phone, **extra["context"]}
        if current_stage:
            extra["context"] = {"current_stage": current_stage, **extra["context"]}

        return msg, {"extra": extra, **passthrough}
