import json
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from zapdesk.logging_config import get_logger
from zapdesk.models import ChatbotState, Conversation
from zapdesk.services.conversation_service import get_or_create_contact, get_or_create_conversation, save_message
from zapdesk.services.result import Result
from zapdesk.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    OwnershipState,
    agent_release,
    agent_take,
    is_human_owned,
    transfer_to_humans,
)

logger = get_logger("handoff_service")

DEFAULT_DEPARTMENT = "Geral"
DEFAULT_TRANSFER_REASON = "Fluxo do chatbot"
TRANSFER_HEADER = "[TRANSFERÊNCIA INTELIGENTE DO CHATBOT]"


def build_transfer_summary(
    *,
    client_name: str,
    phone: str,
    reason: str,
    department: str,
    context: dict[str, Any],
    nlp: Optional[dict[str, Any]] = None,
) -> str:
    """System message shown to the agent who picks the conversation up."""
    nlp = nlp or {}
    return (
        f"{TRANSFER_HEADER}\n\n"
        f"👤 Cliente: {client_name}\n"
        f"📱 Telefone: {phone}\n"
        f"🎯 Motivo: {reason}\n"
        f"🏢 Departamento: {department}\n\n"
        f"💡 Contexto da conversa:\n{json.dumps(context, ensure_ascii=False, indent=2, default=str)}\n\n"
        f"🤖 Análise de IA:\n"
        f"Intenção: {nlp.get('intent') or 'Não identificada'}\n"
        f"Confiança: {nlp.get('confidence') or 0}\n"
        f"Parâmetros: {json.dumps(nlp.get('parameters') or {}, ensure_ascii=False, indent=2)}"
    )


def get_chatbot_state(db: Session, phone: str) -> Optional[ChatbotState]:
    return db.query(ChatbotState).filter(ChatbotState.contact_phone == phone).first()


def release_chatbot_state(db: Session, phone: str) -> bool:
    """Delete the phone's chatbot state; the bot does not resume after this."""
    state = get_chatbot_state(db, phone)
    if state is None:
        return False
    db.delete(state)
    db.flush()
    return True


def transfer_to_human(
    db: Session,
    *,
    company_id: Optional[UUID],
    phone: str,
    reason: Optional[str] = None,
    department: Optional[str] = None,
    context: Optional[dict[str, Any]] = None,
    nlp: Optional[dict[str, Any]] = None,
    client_name: Optional[str] = None,
) -> Result[Conversation]:
    """End bot ownership: drop chatbot state, queue the conversation for agents, leave a summary.

    Caller owns the commit. Database errors propagate so the surrounding turn can be retried.
    """
    reason = reason or DEFAULT_TRANSFER_REASON
    department = department or DEFAULT_DEPARTMENT
    context = context or {}
    client_name = client_name or context.get("name") or "Cliente"

    released = release_chatbot_state(db, phone)

    contact = get_or_create_contact(db, company_id, phone, client_name)
    conversation = get_or_create_conversation(db, contact)

    if not is_human_owned(conversation.state):
        try:
            conversation.state = transfer_to_humans(OwnershipState(conversation.state)).value
        except (InvalidTransitionError, ValueError) as e:
            logger.error(f"Transfer rejected for conversation {conversation.id}: {e}")
            return Result.failure(str(e), "invalid_state")

    now = datetime.now(timezone.utc)
    conversation.status = ConversationStatus.ACTIVE.value
    conversation.department = department
    conversation.transfer_reason = reason
    conversation.transferred_at = now

    summary = build_transfer_summary(
        client_name=client_name,
        phone=phone,
        reason=reason,
        department=department,
        context=context,
        nlp=nlp,
    )
    save_message(
        db,
        conversation,
        "system",
        summary,
        payload={"kind": "transfer", "reason": reason, "department": department, "nlp": nlp or {}},
    )

    logger.info(
        "Conversation transferred to human",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "phone": phone,
                "department": department,
                "reason": reason,
                "state_released": released,
            }
        },
    )
    return Result.success(conversation)


def take_conversation(db: Session, conversation: Conversation, agent_id: UUID) -> Result[Conversation]:
    """pending -> agent_active."""
    if conversation.status == ConversationStatus.FINISHED.value:
        return Result.failure("Conversation is finished", "finished")
    try:
        conversation.state = agent_take(OwnershipState(conversation.state)).value
    except (InvalidTransitionError, ValueError) as e:
        return Result.failure(str(e), "invalid_state")

    conversation.assigned_agent_id = agent_id
    conversation.status = ConversationStatus.IN_PROGRESS.value
    db.flush()
    logger.info(f"Agent {agent_id} took conversation {conversation.id}")
    return Result.success(conversation)


def release_conversation(db: Session, conversation: Conversation) -> Result[Conversation]:
    """agent_active -> pending; back to the waiting queue."""
    try:
        conversation.state = agent_release(OwnershipState(conversation.state)).value
    except (InvalidTransitionError, ValueError) as e:
        return Result.failure(str(e), "invalid_state")

    conversation.assigned_agent_id = None
    conversation.status = ConversationStatus.ACTIVE.value
    db.flush()
    return Result.success(conversation)


def finish_conversation(db: Session, conversation: Conversation) -> Result[Conversation]:
    if conversation.status == ConversationStatus.FINISHED.value:
        return Result.failure("Conversation already finished", "finished")

    conversation.status = ConversationStatus.FINISHED.value
    conversation.finished_at = datetime.now(timezone.utc)
    db.flush()
    logger.info(f"Conversation {conversation.id} finished")
    return Result.success(conversation)
