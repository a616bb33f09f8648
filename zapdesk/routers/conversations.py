"""Agent-side ownership actions on a conversation."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from zapdesk.database import get_db
from zapdesk.models import Conversation
from zapdesk.services.handoff_service import finish_conversation, release_conversation, take_conversation
from zapdesk.services.result import Result

router = APIRouter(prefix="/conversations", tags=["conversations"])


class TakeRequest(BaseModel):
    agent_id: UUID


class ConversationResponse(BaseModel):
    id: UUID
    status: str
    state: str
    assigned_agent_id: UUID | None = None
    department: str | None = None


def _get_conversation(db: Session, conversation_id: UUID) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


def _respond(db: Session, result: Result[Conversation]) -> ConversationResponse:
    if not result.ok:
        db.rollback()
        raise HTTPException(status_code=409, detail=result.error)
    db.commit()
    conversation = result.value
    return ConversationResponse(
        id=conversation.id,
        status=conversation.status,
        state=conversation.state,
        assigned_agent_id=conversation.assigned_agent_id,
        department=conversation.department,
    )


@router.post("/{conversation_id}/take", response_model=ConversationResponse)
def take(conversation_id: UUID, request: TakeRequest, db: Session = Depends(get_db)):
    conversation = _get_conversation(db, conversation_id)
    return _respond(db, take_conversation(db, conversation, request.agent_id))


@router.post("/{conversation_id}/release", response_model=ConversationResponse)
def release(conversation_id: UUID, db: Session = Depends(get_db)):
    conversation = _get_conversation(db, conversation_id)
    return _respond(db, release_conversation(db, conversation))


@router.post("/{conversation_id}/finish", response_model=ConversationResponse)
def finish(conversation_id: UUID, db: Session = Depends(get_db)):
    conversation = _get_conversation(db, conversation_id)
    return _respond(db, finish_conversation(db, conversation))
