"""Correlation ID carried across one logical event (webhook -> queue -> engine)."""

import uuid
from contextvars import ContextVar, Token
from typing import Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(value: Optional[str]) -> Token:
    return _correlation_id.set(value)


def reset_correlation_id(token: Token) -> None:
    try:
        _correlation_id.reset(token)
    except ValueError:
        # Token created in another context (e.g. background task); just clear.
        _correlation_id.set(None)


def new_correlation_id() -> str:
    return str(uuid.uuid4())
