"""Durable conversation transitions.

Each action reads the conversation, plans the transition with the pure state
machine, then writes it with a compare-and-update on `(id, version)`. When
another writer got there first the update matches no row; manual actions
re-read and re-plan once, sweep actions pass an expected status/version and
are skipped instead. Assignment records are opened and closed in the same
transaction as the status change. The caller commits.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deskrelay.config import settings
from deskrelay.logging_config import get_logger
from deskrelay.models import Agent, AssignmentRecord, Conversation, Customer
from deskrelay.services.conversation_service import ensure_timezone, get_active_conversation
from deskrelay.services.errors import (
    ConcurrencyConflict,
    DeskRelayError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from deskrelay.services.result import Result
from deskrelay.services.state_machine import (
    Actor,
    ConversationSnapshot,
    ConversationStatus,
    Effect,
    EffectKind,
    LifecycleAction,
    TransitionPlan,
    plan_transition,
)

logger = get_logger("lifecycle_service")

HOLDING_STATUSES = [ConversationStatus.ASSIGNED.value, ConversationStatus.WAITING.value]


@dataclass
class TransitionOutcome:
    conversation: Conversation
    plan: TransitionPlan
    actor: Actor
    conversation_id: Optional[UUID] = None
    opened_record: Optional[AssignmentRecord] = None
    closed_record: Optional[AssignmentRecord] = None
    opened_record_id: Optional[UUID] = None
    closed_record_id: Optional[UUID] = None
    customer_phone: Optional[str] = None
    summary: Optional[dict] = None

    @property
    def effects(self) -> List[Effect]:
        """Effects still to run after commit."""
        return self.plan.external_effects


def get_open_assignment(db: Session, conversation_id: UUID) -> Optional[AssignmentRecord]:
    return (
        db.query(AssignmentRecord)
        .filter(AssignmentRecord.conversation_id == conversation_id, AssignmentRecord.released_at.is_(None))
        .first()
    )


def list_assignments(db: Session, conversation_id: UUID) -> List[AssignmentRecord]:
    return (
        db.query(AssignmentRecord)
        .filter(AssignmentRecord.conversation_id == conversation_id)
        .order_by(AssignmentRecord.assigned_at.asc())
        .all()
    )


def count_active_chats(db: Session, agent_id: UUID) -> int:
    return (
        db.query(func.count(Conversation.id))
        .filter(Conversation.assigned_agent_id == agent_id, Conversation.status.in_(HOLDING_STATUSES))
        .scalar()
        or 0
    )


def actor_for_agent(db: Session, agent_id: UUID) -> Actor:
    """Actor for an agent id, with the role read from storage."""
    agent = db.get(Agent, agent_id)
    if agent is None:
        raise NotFoundError(f"Agent {agent_id} not found")
    if not agent.is_active:
        raise PermissionDeniedError(f"Agent {agent_id} is inactive")
    return Actor(id=agent.id, role=agent.role or "agent")


def _verified_actor(db: Session, actor: Actor) -> Actor:
    if not actor.is_agent:
        return actor
    return actor_for_agent(db, actor.id)


def _check_assignee(db: Session, agent_id: UUID, conversation: Conversation) -> None:
    agent = db.get(Agent, agent_id)
    if agent is None or not agent.is_active:
        raise ValidationError(f"Agent {agent_id} is not available", code="agent_unavailable")
    capacity = agent.max_concurrent_chats or 0
    if capacity and count_active_chats(db, agent_id) >= capacity:
        raise ValidationError(f"Agent {agent_id} is at capacity ({capacity} chats)", code="agent_unavailable")


def _check_reopen(db: Session, conversation: Conversation, action: LifecycleAction) -> None:
    other = get_active_conversation(db, conversation.customer_id)
    if other is not None and other.id != conversation.id:
        raise InvalidTransitionError(
            conversation.status,
            action.value,
            "customer already has an active conversation",
        )


def _field_changes(
    conversation: Conversation,
    plan: TransitionPlan,
    actor: Actor,
    now: datetime,
    notes: Optional[str],
    resolution_window: timedelta,
) -> dict:
    values = {
        Conversation.status: plan.to_status.value,
        Conversation.version: conversation.version + 1,
        Conversation.ai_enabled: plan.ai_enabled,
        Conversation.assigned_agent_id: plan.assigned_agent_id,
        Conversation.status_changed_at: now,
    }
    action = plan.action

    if action == LifecycleAction.ASSIGN:
        values[Conversation.assigned_at] = now
    elif action in (LifecycleAction.RELEASE, LifecycleAction.CLOSE, LifecycleAction.RESOLVE):
        values[Conversation.assigned_at] = None

    if action == LifecycleAction.RESOLVE:
        values[Conversation.resolved_at] = now
        values[Conversation.resolved_by] = actor.label
        values[Conversation.resolution_notes] = notes or "Resolved by agent"
        values[Conversation.resolution_confirmation_sent] = plan.has_effect(EffectKind.SEND_CUSTOMER_NOTICE)
        if plan.has_effect(EffectKind.START_RESOLUTION_TIMER):
            values[Conversation.resolution_due_at] = now + resolution_window
    elif action == LifecycleAction.CLOSE:
        values[Conversation.closed_at] = now
        if conversation.resolved_at is None:
            values[Conversation.resolved_at] = now
            values[Conversation.resolved_by] = actor.label
        values[Conversation.resolution_due_at] = None
    elif action == LifecycleAction.CONFIRM_RESOLUTION:
        values[Conversation.resolution_confirmed_at] = now
        values[Conversation.closed_at] = now
        values[Conversation.resolution_due_at] = None
    elif action in (LifecycleAction.REOPEN, LifecycleAction.REJECT_RESOLUTION):
        values[Conversation.closed_at] = None
        values[Conversation.resolved_at] = None
        values[Conversation.resolved_by] = None
        values[Conversation.resolution_confirmation_sent] = False
        values[Conversation.resolution_due_at] = None
        values[Conversation.resolution_confirmed_at] = None

    if plan.reassignment_count is not None:
        values[Conversation.reassignment_count] = plan.reassignment_count
    if plan.priority is not None:
        history = list(conversation.priority_history or [])
        history.append(
            {
                "from": conversation.priority,
                "to": plan.priority,
                "reason": f"Reassignment threshold reached ({plan.reassignment_count} reassignments)",
                "triggered_by": "reassignment",
                "at": now.isoformat(),
            }
        )
        values[Conversation.priority] = plan.priority
        values[Conversation.priority_history] = history
    return values


def compare_and_update(db: Session, conversation_id: UUID, expected_version: int, values: dict) -> bool:
    """UPDATE ... WHERE id = :id AND version = :expected. False when nothing matched."""
    matched = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.version == expected_version)
        .update(values, synchronize_session=False)
    )
    return matched == 1


def _close_record(
    db: Session, conversation: Conversation, effect: Effect, now: datetime
) -> Optional[AssignmentRecord]:
    record = get_open_assignment(db, conversation.id)
    if record is None:
        logger.warning(f"No open assignment record for conversation {conversation.id}")
        return None
    assigned_at = ensure_timezone(record.assigned_at)
    released_at = max(now, assigned_at)
    record.released_at = released_at
    record.duration_seconds = int((released_at - assigned_at).total_seconds())
    record.release_reason = effect.data.get("reason")
    record.release_method = effect.data.get("method")
    record.final_status = effect.data.get("final_status")
    record.transferred_to = effect.data.get("transferred_to")
    db.flush()
    return record


def _open_record(
    db: Session, conversation: Conversation, effect: Effect, actor: Actor, now: datetime
) -> AssignmentRecord:
    record = AssignmentRecord(
        conversation_id=conversation.id,
        customer_id=conversation.customer_id,
        agent_id=effect.data["agent_id"],
        assigned_by=actor.label,
        assigned_at=now,
    )
    db.add(record)
    db.flush()
    return record


def apply_action(
    db: Session,
    conversation_id: UUID,
    action: LifecycleAction,
    actor: Actor,
    *,
    agent_id: Optional[UUID] = None,
    force: bool = False,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    expected_status: Optional[str] = None,
    expected_version: Optional[int] = None,
    retry_on_conflict: bool = True,
    now: Optional[datetime] = None,
) -> Result[TransitionOutcome]:
    """Apply one lifecycle action under optimistic concurrency."""
    now = now or datetime.now(timezone.utc)
    attempts = 2 if retry_on_conflict and expected_version is None else 1

    try:
        actor = _verified_actor(db, actor)
    except DeskRelayError as e:
        return Result.from_error(e)

    for attempt in range(attempts):
        conversation = db.get(Conversation, conversation_id, populate_existing=True)
        if conversation is None:
            return Result.failure(f"Conversation {conversation_id} not found", "not_found")

        if expected_status is not None and conversation.status != expected_status:
            return Result.from_error(
                ConcurrencyConflict(f"Expected {expected_status}, found {conversation.status}")
            )
        if expected_version is not None and conversation.version != expected_version:
            return Result.from_error(
                ConcurrencyConflict(f"Expected version {expected_version}, found {conversation.version}")
            )

        try:
            snapshot = ConversationSnapshot.from_model(conversation)
            plan = plan_transition(
                snapshot,
                action,
                actor,
                agent_id=agent_id,
                force=force,
                reason=reason,
                reassignment_threshold=settings.reassignment_escalation_threshold,
            )
            if action == LifecycleAction.ASSIGN:
                _check_assignee(db, agent_id, conversation)
            if action in (LifecycleAction.REOPEN, LifecycleAction.REJECT_RESOLUTION):
                _check_reopen(db, conversation, action)
        except DeskRelayError as e:
            logger.info(
                f"Rejected {action.value}: {e.message}",
                extra={"context": {"conversation_id": str(conversation_id), "actor": actor.label}},
            )
            return Result.from_error(e)

        values = _field_changes(
            conversation,
            plan,
            actor,
            now,
            notes,
            timedelta(minutes=settings.sweep_resolved_timeout_minutes),
        )
        if compare_and_update(db, conversation.id, snapshot.version, values):
            break

        logger.warning(
            "Conversation changed concurrently",
            extra={
                "context": {
                    "conversation_id": str(conversation_id),
                    "action": action.value,
                    "attempt": attempt + 1,
                }
            },
        )
    else:
        return Result.from_error(ConcurrencyConflict(f"Conversation {conversation_id} changed concurrently"))

    db.refresh(conversation)
    customer = db.get(Customer, conversation.customer_id)
    outcome = TransitionOutcome(
        conversation=conversation,
        plan=plan,
        actor=actor,
        conversation_id=conversation.id,
        customer_phone=customer.phone_number if customer else None,
    )
    try:
        for effect in plan.effects_of(EffectKind.CLOSE_ASSIGNMENT):
            outcome.closed_record = _close_record(db, conversation, effect, now)
            if outcome.closed_record is not None:
                outcome.closed_record_id = outcome.closed_record.id
        for effect in plan.effects_of(EffectKind.OPEN_ASSIGNMENT):
            outcome.opened_record = _open_record(db, conversation, effect, actor, now)
            outcome.opened_record_id = outcome.opened_record.id
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Assignment record conflict on {conversation_id}: {e}")
        return Result.from_error(ConcurrencyConflict("Another assignment is already open for this conversation"))

    logger.info(
        f"Conversation {conversation.id}: {plan.from_status.value} -> {plan.to_status.value}",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "action": action.value,
                "actor": actor.label,
                "assigned_agent_id": str(plan.assigned_agent_id) if plan.assigned_agent_id else None,
            }
        },
    )
    return Result.success(outcome)


def assign(db: Session, conversation_id: UUID, agent_id: UUID, actor: Optional[Actor] = None, **kwargs):
    """Assign to an agent. From another agent's assignment this is a transfer."""
    actor = actor or Actor(id=agent_id)
    return apply_action(db, conversation_id, LifecycleAction.ASSIGN, actor, agent_id=agent_id, **kwargs)


def transfer(
    db: Session, conversation_id: UUID, to_agent_id: UUID, actor: Actor, reason: Optional[str] = None, **kwargs
):
    return apply_action(
        db,
        conversation_id,
        LifecycleAction.ASSIGN,
        actor,
        agent_id=to_agent_id,
        reason=reason or "transferred",
        expected_status=ConversationStatus.ASSIGNED.value,
        **kwargs,
    )


def release(db: Session, conversation_id: UUID, actor: Actor, reason: str = "released", **kwargs):
    return apply_action(db, conversation_id, LifecycleAction.RELEASE, actor, reason=reason, **kwargs)


def resolve(db: Session, conversation_id: UUID, actor: Actor, notes: Optional[str] = None, **kwargs):
    return apply_action(db, conversation_id, LifecycleAction.RESOLVE, actor, notes=notes, **kwargs)


def close(
    db: Session, conversation_id: UUID, actor: Actor, reason: Optional[str] = None, force: bool = False, **kwargs
):
    return apply_action(db, conversation_id, LifecycleAction.CLOSE, actor, reason=reason, force=force, **kwargs)


def reopen(db: Session, conversation_id: UUID, actor: Actor, reason: Optional[str] = None, **kwargs):
    return apply_action(db, conversation_id, LifecycleAction.REOPEN, actor, reason=reason, **kwargs)


def mark_waiting(db: Session, conversation_id: UUID, actor: Actor, **kwargs):
    return apply_action(db, conversation_id, LifecycleAction.WAIT, actor, **kwargs)


def resume_from_waiting(db: Session, conversation_id: UUID, actor: Optional[Actor] = None, **kwargs):
    return apply_action(db, conversation_id, LifecycleAction.RESUME, actor or Actor.system(), **kwargs)


def handle_resolution_confirmation(db: Session, conversation_id: UUID, confirmed: bool, **kwargs):
    """Customer answered the resolution notice: close on yes, back to the queue on no."""
    action = LifecycleAction.CONFIRM_RESOLUTION if confirmed else LifecycleAction.REJECT_RESOLUTION
    return apply_action(db, conversation_id, action, Actor.customer(), **kwargs)
