from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from zapdesk.models import Company, Contact, Conversation, Message
from zapdesk.services.state_machine import ConversationStatus, OwnershipState


def get_contact(db: Session, company_id: Optional[UUID], phone: str) -> Optional[Contact]:
    return db.query(Contact).filter(Contact.company_id == company_id, Contact.phone == phone).first()


def get_or_create_contact(db: Session, company_id: Optional[UUID], phone: str, name: Optional[str] = None) -> Contact:
    """Find contact by phone or create new one."""
    contact = get_contact(db, company_id, phone)

    if not contact:
        contact = Contact(company_id=company_id, phone=phone, name=name, tags=[])
        db.add(contact)
        db.flush()
    elif name and not contact.name:
        contact.name = name

    return contact


def get_open_conversation(db: Session, contact_id: UUID) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.contact_id == contact_id, Conversation.status != ConversationStatus.FINISHED.value)
        .order_by(Conversation.created_at.desc())
        .first()
    )


def get_or_create_conversation(db: Session, contact: Contact) -> Conversation:
    """Reuse the contact's open conversation or start a bot-owned one."""
    conversation = get_open_conversation(db, contact.id)

    if not conversation:
        conversation = Conversation(
            company_id=contact.company_id,
            contact_id=contact.id,
            channel="whatsapp",
            status=ConversationStatus.ACTIVE.value,
            state=OwnershipState.BOT_ACTIVE.value,
            last_message_at=datetime.now(timezone.utc),
        )
        db.add(conversation)
        db.flush()

    return conversation


def save_message(
    db: Session,
    conversation: Conversation,
    sender_kind: str,
    content: str,
    message_type: str = "text",
    payload: Optional[dict] = None,
    external_id: Optional[str] = None,
) -> Message:
    """Save message to database."""
    now = datetime.now(timezone.utc)
    message = Message(
        conversation_id=conversation.id,
        sender_kind=sender_kind,
        message_type=message_type,
        content=content or "",
        payload=payload or {},
        external_id=external_id,
        created_at=now,
    )
    db.add(message)
    conversation.last_message_at = now
    db.flush()
    return message


def record_customer_message(
    db: Session,
    company_id: Optional[UUID],
    phone: str,
    text: str,
    *,
    name: Optional[str] = None,
    external_id: Optional[str] = None,
) -> Tuple[Conversation, Message]:
    """Human-routing path: attach an inbound message to the contact's conversation."""
    contact = get_or_create_contact(db, company_id, phone, name)
    conversation = get_or_create_conversation(db, contact)
    message = save_message(db, conversation, "customer", text, external_id=external_id)
    return conversation, message


def add_contact_tag(db: Session, contact: Contact, tag: str) -> list[str]:
    tags = list(contact.tags or [])
    if tag not in tags:
        tags.append(tag)
        contact.tags = tags
        db.flush()
    return tags


def remove_contact_tag(db: Session, contact: Contact, tag: str) -> list[str]:
    tags = [existing for existing in (contact.tags or []) if existing != tag]
    contact.tags = tags
    db.flush()
    return tags


def message_exists(db: Session, external_id: Optional[str]) -> bool:
    if not external_id:
        return False
    return db.query(Message.id).filter(Message.external_id == external_id).first() is not None


def get_company_by_instance(db: Session, instance_id: Optional[str]) -> Optional[Company]:
    if not instance_id:
        return None
    return db.query(Company).filter(Company.instance_id == instance_id, Company.is_active.is_(True)).first()
