from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from deskrelay.models import Conversation, Customer, Message
from deskrelay.services.state_machine import ACTIVE_STATUSES, ConversationStatus

ACTIVE_STATUS_VALUES = [status.value for status in ACTIVE_STATUSES]


def ensure_timezone(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def get_or_create_customer(db: Session, phone_number: str, name: Optional[str] = None) -> Customer:
    """Find customer by phone number or create new one."""
    customer = db.query(Customer).filter(Customer.phone_number == phone_number).first()

    if not customer:
        customer = Customer(phone_number=phone_number, name=name, created_at=datetime.now(timezone.utc))
        db.add(customer)
        db.flush()
    elif name and not customer.name:
        customer.name = name

    return customer


def get_active_conversation(db: Session, customer_id: UUID) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.customer_id == customer_id, Conversation.status.in_(ACTIVE_STATUS_VALUES))
        .first()
    )


def get_or_create_conversation(db: Session, customer_id: UUID, channel: str = "whatsapp") -> Conversation:
    """Return the customer's single non-terminal conversation or open a new one."""
    conversation = get_active_conversation(db, customer_id)

    if not conversation:
        now = datetime.now(timezone.utc)
        conversation = Conversation(
            customer_id=customer_id,
            channel=channel,
            status=ConversationStatus.OPEN.value,
            version=1,
            ai_enabled=True,
            priority="medium",
            priority_history=[],
            created_at=now,
            status_changed_at=now,
        )
        db.add(conversation)
        db.flush()

    return conversation


def save_message(
    db: Session,
    conversation: Conversation,
    sender: str,
    content: str,
    external_id: Optional[str] = None,
    agent_id: Optional[UUID] = None,
    metadata: Optional[dict] = None,
) -> Message:
    message = Message(
        conversation_id=conversation.id,
        sender=sender,
        agent_id=agent_id,
        content=content,
        external_id=external_id,
        message_metadata=metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    touch_conversation(db, conversation, sender, message.created_at)
    return message


def touch_conversation(db: Session, conversation: Conversation, sender: str, at: Optional[datetime] = None) -> None:
    """Record activity. Never changes status; lifecycle writes go through lifecycle_service."""
    at = at or datetime.now(timezone.utc)
    conversation.last_message_at = at
    conversation.message_count = (conversation.message_count or 0) + 1
    if sender == "customer":
        conversation.last_customer_message_at = at
    elif sender == "agent":
        conversation.last_agent_message_at = at
    db.flush()


def is_ai_routed(conversation: Conversation) -> bool:
    """True when inbound text for this conversation goes to the assistant."""
    if not conversation.ai_enabled:
        return False
    return conversation.status in (ConversationStatus.OPEN.value, ConversationStatus.RESOLVED.value)


def recent_messages(db: Session, conversation_id: UUID, limit: int = 20) -> List[Message]:
    """Last `limit` messages, oldest first."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))
