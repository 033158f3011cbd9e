"""Priority escalation, takeover suggestions and agent auto-assignment.

Priority is a side attribute: nothing here changes a conversation's status.
Automatic escalation only ever raises priority.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from deskrelay.config import settings
from deskrelay.logging_config import get_logger
from deskrelay.models import Agent, Conversation, Customer, Message
from deskrelay.services import lifecycle_service
from deskrelay.services.conversation_service import ensure_timezone
from deskrelay.services.errors import NotFoundError, ValidationError
from deskrelay.services.notifier import EventPublisher
from deskrelay.services.result import Result
from deskrelay.services.state_machine import PRIORITY_LEVELS, Actor, ConversationStatus, escalated_priority

logger = get_logger("priority_service")

AI_UNCERTAINTY_PHRASES = ["i can't", "i cannot", "i'm not sure", "i am not sure", "you need to talk to"]
LONG_CONVERSATION_MESSAGES = 15
TAKEOVER_SCORE_THRESHOLD = 50
REPEATED_QUESTION_SIMILARITY = 0.6


@dataclass
class Escalation:
    conversation_id: UUID
    from_priority: str
    to_priority: str
    reason: str
    triggered_by: str


@dataclass
class TakeoverSuggestion:
    conversation_id: UUID
    triggers: List[str] = field(default_factory=list)
    score: int = 0


def escalate_priority(
    db: Session,
    conversation: Conversation,
    new_priority: str,
    reason: str,
    triggered_by: str = "system",
    publisher: Optional[EventPublisher] = None,
) -> Optional[Escalation]:
    """Raise priority and record it in the history. Returns None when it would not go up."""
    old_priority = conversation.priority or "medium"
    if escalated_priority(old_priority, new_priority) is None:
        return None

    _record_priority(conversation, old_priority, new_priority, reason, triggered_by)
    db.flush()

    escalation = Escalation(
        conversation_id=conversation.id,
        from_priority=old_priority,
        to_priority=new_priority,
        reason=reason,
        triggered_by=triggered_by,
    )
    if publisher is not None:
        publisher.publish(
            "conversation_escalated",
            {
                "conversation_id": str(conversation.id),
                "old_priority": old_priority,
                "new_priority": new_priority,
                "reason": reason,
            },
        )
    logger.info(f"Conversation {conversation.id} escalated: {old_priority} -> {new_priority} ({reason})")
    return escalation


def _record_priority(conversation: Conversation, old: str, new: str, reason: str, triggered_by: str) -> None:
    history = list(conversation.priority_history or [])
    history.append(
        {
            "from": old,
            "to": new,
            "reason": reason,
            "triggered_by": triggered_by,
            "at": datetime.now(timezone.utc).isoformat(),
        }
    )
    conversation.priority = new
    conversation.priority_history = history


def check_message_for_escalation(
    db: Session,
    conversation: Conversation,
    content: str,
    publisher: Optional[EventPublisher] = None,
) -> Optional[Escalation]:
    """Escalate on urgent/high keywords in customer text."""
    if not content or conversation.status == ConversationStatus.CLOSED.value:
        return None

    lowered = content.lower()
    for keyword in settings.urgent_keywords:
        if keyword.lower() in lowered:
            return escalate_priority(
                db, conversation, "urgent", f'Urgent keyword detected: "{keyword}"', "keyword", publisher
            )
    for keyword in settings.high_keywords:
        if keyword.lower() in lowered:
            return escalate_priority(
                db, conversation, "high", f'High priority keyword detected: "{keyword}"', "keyword", publisher
            )
    return None


def check_wait_time_escalation(
    db: Session,
    now: Optional[datetime] = None,
    publisher: Optional[EventPublisher] = None,
) -> List[Escalation]:
    """SLA pass over assigned conversations, plus VIP customers stuck at medium."""
    now = now or datetime.now(timezone.utc)
    threshold = timedelta(minutes=settings.sla_wait_minutes)
    escalations = []

    conversations = (
        db.query(Conversation)
        .filter(Conversation.status == ConversationStatus.ASSIGNED.value, Conversation.priority != "urgent")
        .all()
    )
    for conversation in conversations:
        escalation = None
        assigned_at = ensure_timezone(conversation.assigned_at)
        if assigned_at is not None and now - assigned_at > threshold:
            waited = int((now - assigned_at).total_seconds() // 60)
            target = "medium" if conversation.priority == "low" else "high"
            escalation = escalate_priority(
                db,
                conversation,
                target,
                f"Wait time exceeded threshold ({waited} minutes)",
                "wait_time",
                publisher,
            )
        if escalation is None and conversation.priority == "medium":
            customer = db.get(Customer, conversation.customer_id)
            if customer is not None and customer.segment == "vip":
                escalation = escalate_priority(
                    db, conversation, "high", "VIP customer auto-escalation", "vip", publisher
                )
        if escalation is not None:
            escalations.append(escalation)

    if escalations:
        logger.info(f"Wait-time escalation raised {len(escalations)} conversations")
    return escalations


def set_priority(
    db: Session,
    conversation_id: UUID,
    priority: str,
    actor: Actor,
    reason: Optional[str] = None,
    publisher: Optional[EventPublisher] = None,
) -> Result[Conversation]:
    """Manual priority change by an agent; may lower as well as raise."""
    try:
        if priority not in PRIORITY_LEVELS:
            raise ValidationError(f"Unknown priority: {priority}")
        actor = lifecycle_service.actor_for_agent(db, actor.id) if actor.is_agent else actor
        conversation = db.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
    except (ValidationError, NotFoundError) as e:
        return Result.from_error(e)
    except Exception as e:
        logger.error(f"Set priority failed: {e}")
        return Result.failure(str(e), "priority_error")

    old_priority = conversation.priority or "medium"
    if old_priority != priority:
        _record_priority(conversation, old_priority, priority, reason or f"Manually set by {actor.role}", "agent")
        db.flush()
        if publisher is not None:
            publisher.publish(
                "conversation_priority_changed",
                {"conversation_id": str(conversation.id), "old_priority": old_priority, "new_priority": priority},
            )
    return Result.success(conversation)


def detect_human_request(content: str) -> Optional[str]:
    """Matched keyword when the customer asks for a person, else None."""
    if not content:
        return None
    lowered = content.lower()
    for keyword in settings.human_request_keywords:
        if keyword.lower() in lowered:
            return keyword
    return None


def _similarity(words1: set, words2: set) -> float:
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def _has_repeated_questions(messages: List[Message]) -> bool:
    if len(messages) < 3:
        return False
    word_sets = [{word for word in message.content.lower().split() if len(word) > 4} for message in messages]
    for i in range(len(word_sets) - 1):
        for j in range(i + 1, len(word_sets)):
            if _similarity(word_sets[i], word_sets[j]) > REPEATED_QUESTION_SIMILARITY:
                return True
    return False


def suggest_takeover(
    db: Session,
    conversation: Conversation,
    content: str,
    ai_reply: Optional[str] = None,
    publisher: Optional[EventPublisher] = None,
) -> Optional[TakeoverSuggestion]:
    """Score signals that a human should step in; publish a suggestion past the threshold."""
    if not conversation.ai_enabled or conversation.assigned_agent_id is not None:
        return None

    suggestion = TakeoverSuggestion(conversation_id=conversation.id)
    if detect_human_request(content):
        suggestion.triggers.append("escalation_keyword")
        suggestion.score += 50
    if ai_reply and any(phrase in ai_reply.lower() for phrase in AI_UNCERTAINTY_PHRASES):
        suggestion.triggers.append("ai_uncertainty")
        suggestion.score += 30
    if (conversation.message_count or 0) >= LONG_CONVERSATION_MESSAGES:
        suggestion.triggers.append("long_conversation")
        suggestion.score += 20

    recent_customer_messages = (
        db.query(Message)
        .filter(Message.conversation_id == conversation.id, Message.sender == "customer")
        .order_by(Message.created_at.desc())
        .limit(5)
        .all()
    )
    if _has_repeated_questions(recent_customer_messages):
        suggestion.triggers.append("repeated_questions")
        suggestion.score += 35

    if suggestion.score < TAKEOVER_SCORE_THRESHOLD:
        return None

    if publisher is not None:
        publisher.publish(
            "takeover_suggested",
            {
                "conversation_id": str(conversation.id),
                "triggers": suggestion.triggers,
                "score": suggestion.score,
            },
        )
    logger.info(f"Takeover suggested for {conversation.id}: {', '.join(suggestion.triggers)}")
    return suggestion


def find_available_agent(db: Session) -> Optional[Agent]:
    """Least-loaded active agent with auto-assign on and free capacity."""
    load = (
        db.query(Conversation.assigned_agent_id, func.count(Conversation.id).label("active"))
        .filter(Conversation.status.in_(lifecycle_service.HOLDING_STATUSES))
        .group_by(Conversation.assigned_agent_id)
        .subquery()
    )
    rows = (
        db.query(Agent, func.coalesce(load.c.active, 0))
        .outerjoin(load, load.c.assigned_agent_id == Agent.id)
        .filter(Agent.is_active.is_(True), Agent.auto_assign.is_(True))
        .order_by(func.coalesce(load.c.active, 0).asc(), Agent.created_at.asc())
        .all()
    )
    for agent, active in rows:
        capacity = agent.max_concurrent_chats or 0
        if not capacity or active < capacity:
            return agent
    return None


def auto_assign(db: Session, conversation_id: UUID) -> Result[lifecycle_service.TransitionOutcome]:
    agent = find_available_agent(db)
    if agent is None:
        logger.info(f"No agents available for conversation {conversation_id}")
        return Result.failure("No agents available", "no_agents_available")
    return lifecycle_service.assign(db, conversation_id, agent.id, actor=Actor.system())
