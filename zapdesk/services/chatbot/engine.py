from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from zapdesk.logging_config import PipelineLogger
from zapdesk.models import ChatbotState, Conversation
from zapdesk.schemas.outbound import OutboundMessage
from zapdesk.services.chatbot.context import ChatContext
from zapdesk.services.chatbot.stages import STAGE_START, StageResult, TransferDecision, TurnInput, get_stage_handler
from zapdesk.services.conversation_service import get_or_create_contact, get_or_create_conversation, save_message
from zapdesk.services.handoff_service import get_chatbot_state, transfer_to_human
from zapdesk.services.llm import LLMProvider
from zapdesk.services.nlp_service import NLPResult, analyze_message
from zapdesk.services.state_machine import is_human_owned


@dataclass
class TurnOutcome:
    stage: str
    outbound: list[OutboundMessage] = field(default_factory=list)
    transfer: Optional[TransferDecision] = None
    nlp: NLPResult = field(default_factory=NLPResult)
    conversation_id: Optional[UUID] = None
    skipped: bool = False


def load_or_create_state(
    db: Session,
    *,
    phone: str,
    company_id: Optional[UUID],
    user_name: str,
    correlation_id: Optional[str],
) -> ChatbotState:
    """Live state for the phone; a new contact starts at ``start``."""
    state = get_chatbot_state(db, phone)

    if not state:
        state = ChatbotState(
            contact_phone=phone,
            company_id=company_id,
            current_stage=STAGE_START,
            context=ChatContext(name=user_name, phone=phone).to_stored(),
            correlation_id=correlation_id,
        )
        db.add(state)
        db.flush()

    return state


def persist_state(
    db: Session,
    state: ChatbotState,
    result: StageResult,
    nlp: NLPResult,
    correlation_id: Optional[str],
) -> None:
    """Update the row in place. The flush compares versions and raises StaleDataError on a lost race."""
    state.current_stage = result.next_stage
    state.context = result.context.to_stored()
    state.nlp_intent = nlp.intent
    state.nlp_confidence = nlp.confidence
    state.correlation_id = correlation_id
    db.flush()


def _record_bot_replies(db: Session, conversation: Conversation, outbound: list[OutboundMessage]) -> None:
    for message in outbound:
        save_message(
            db,
            conversation,
            "system",
            message.data.get("message") or "",
            message_type=message.type,
            payload={"author": "chatbot", "data": message.data},
        )


def run_turn(
    db: Session,
    *,
    phone: str,
    text: str,
    user_name: str = "Cliente",
    company_id: Optional[UUID] = None,
    correlation_id: Optional[str] = None,
    external_id: Optional[str] = None,
    provider: Optional[LLMProvider] = None,
) -> TurnOutcome:
    """Advance the phone's conversation by one customer message.

    Nothing is committed here; the queue processor commits after the replies are sent.
    """
    log = PipelineLogger("chatbot_engine", correlation_id)

    contact = get_or_create_contact(db, company_id, phone, user_name)
    conversation = get_or_create_conversation(db, contact)
    save_message(db, conversation, "customer", text, external_id=external_id)

    if is_human_owned(conversation.state):
        log.info("Conversation owned by a human, bot turn skipped", contact_phone=phone)
        return TurnOutcome(stage=conversation.state, conversation_id=conversation.id, skipped=True)

    state = load_or_create_state(
        db,
        phone=phone,
        company_id=company_id,
        user_name=user_name,
        correlation_id=correlation_id,
    )
    current_stage = state.current_stage

    nlp = analyze_message(db, text, company_id=company_id, stage=current_stage, provider=provider)
    context = ChatContext.from_stored(state.context)
    if nlp.intent:
        context.nlp_insights = {
            "intent": nlp.intent,
            "confidence": nlp.confidence,
            "parameters": nlp.parameters,
            "source": nlp.source,
        }

    if nlp.should_override_flow and nlp.target_stage:
        log.info(
            "NLP override",
            contact_phone=phone,
            current_stage=current_stage,
            target_stage=nlp.target_stage,
            intent=nlp.intent,
            confidence=nlp.confidence,
        )
        current_stage = nlp.target_stage

    handler = get_stage_handler(current_stage)
    result = handler(TurnInput(text=text, phone=phone, user_name=user_name, nlp=nlp), context)
    _record_bot_replies(db, conversation, result.outbound)

    if result.transfer:
        transfer_to_human(
            db,
            company_id=company_id,
            phone=phone,
            reason=result.transfer.reason,
            department=result.transfer.department,
            context=result.context.to_stored(),
            nlp=nlp.to_dict(),
            client_name=result.context.name or user_name,
        ).unwrap()
        log.info(
            "Transferred to human",
            contact_phone=phone,
            current_stage=current_stage,
            reason=result.transfer.reason,
            department=result.transfer.department,
        )
    else:
        persist_state(db, state, result, nlp, correlation_id)
        log.info(
            "Stage advanced",
            contact_phone=phone,
            current_stage=current_stage,
            next_stage=result.next_stage,
            outbound=len(result.outbound),
        )

    return TurnOutcome(
        stage=result.next_stage,
        outbound=result.outbound,
        transfer=result.transfer,
        nlp=nlp,
        conversation_id=conversation.id,
    )
