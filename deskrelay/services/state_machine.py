"""Conversation lifecycle as a pure transition table.

`plan_transition` never touches storage or the network: it checks the
transition and its guards, then returns the next state together with the
effects the caller has to carry out.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from deskrelay.services.errors import InvalidTransitionError, PermissionDeniedError, ValidationError


class ConversationStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    WAITING = "waiting"
    RESOLVED = "resolved"
    CLOSED = "closed"


ACTIVE_STATUSES = {ConversationStatus.OPEN, ConversationStatus.ASSIGNED, ConversationStatus.WAITING}


class LifecycleAction(str, Enum):
    ASSIGN = "assign"
    RELEASE = "release"
    RESOLVE = "resolve"
    CLOSE = "close"
    REOPEN = "reopen"
    WAIT = "wait"
    RESUME = "resume"
    CONFIRM_RESOLUTION = "confirm_resolution"
    REJECT_RESOLUTION = "reject_resolution"


class EffectKind(str, Enum):
    OPEN_ASSIGNMENT = "open_assignment"
    CLOSE_ASSIGNMENT = "close_assignment"
    GENERATE_SUMMARY = "generate_summary"
    SCHEDULE_ANALYSIS = "schedule_analysis"
    SEND_CUSTOMER_NOTICE = "send_customer_notice"
    START_RESOLUTION_TIMER = "start_resolution_timer"
    AUTO_ASSIGN = "auto_assign"
    PUBLISH = "publish"


# Effects applied inside the storage transaction; the rest run after commit.
DURABLE_EFFECTS = {EffectKind.OPEN_ASSIGNMENT, EffectKind.CLOSE_ASSIGNMENT, EffectKind.START_RESOLUTION_TIMER}

PRIVILEGED_ROLES = {"supervisor", "admin"}
PRIORITY_LEVELS = ["low", "medium", "high", "urgent"]

S = ConversationStatus
A = LifecycleAction

TRANSITIONS: Dict[Tuple[ConversationStatus, LifecycleAction], ConversationStatus] = {
    (S.OPEN, A.ASSIGN): S.ASSIGNED,
    (S.ASSIGNED, A.ASSIGN): S.ASSIGNED,
    (S.ASSIGNED, A.RELEASE): S.OPEN,
    (S.WAITING, A.RELEASE): S.OPEN,
    (S.OPEN, A.RESOLVE): S.RESOLVED,
    (S.ASSIGNED, A.RESOLVE): S.RESOLVED,
    (S.WAITING, A.RESOLVE): S.RESOLVED,
    (S.RESOLVED, A.CLOSE): S.CLOSED,
    (S.CLOSED, A.REOPEN): S.OPEN,
    (S.ASSIGNED, A.WAIT): S.WAITING,
    (S.WAITING, A.RESUME): S.ASSIGNED,
    (S.RESOLVED, A.CONFIRM_RESOLUTION): S.CLOSED,
    (S.RESOLVED, A.REJECT_RESOLUTION): S.OPEN,
}

# A privileged forced close may skip the resolved step.
FORCED_CLOSE_SOURCES = {S.OPEN, S.ASSIGNED, S.WAITING}


@dataclass(frozen=True)
class Actor:
    id: Any = None
    role: str = "agent"
    is_system: bool = False

    @classmethod
    def system(cls) -> "Actor":
        return cls(id=None, role="system", is_system=True)

    @classmethod
    def customer(cls) -> "Actor":
        return cls(id=None, role="customer")

    @property
    def privileged(self) -> bool:
        return self.is_system or self.role in PRIVILEGED_ROLES

    @property
    def is_agent(self) -> bool:
        return not self.is_system and self.role != "customer"

    @property
    def label(self) -> str:
        if self.is_system:
            return "system"
        if self.role == "customer":
            return "customer"
        return str(self.id)


@dataclass(frozen=True)
class ConversationSnapshot:
    id: Any
    status: ConversationStatus
    version: int
    assigned_agent_id: Any = None
    ai_enabled: bool = True
    priority: str = "medium"
    reassignment_count: int = 0

    @classmethod
    def from_model(cls, conversation) -> "ConversationSnapshot":
        return cls(
            id=conversation.id,
            status=ConversationStatus(conversation.status),
            version=conversation.version,
            assigned_agent_id=conversation.assigned_agent_id,
            ai_enabled=conversation.ai_enabled,
            priority=conversation.priority or "medium",
            reassignment_count=conversation.reassignment_count or 0,
        )


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransitionPlan:
    action: LifecycleAction
    from_status: ConversationStatus
    to_status: ConversationStatus
    assigned_agent_id: Any
    ai_enabled: bool
    effects: List[Effect] = field(default_factory=list)
    is_transfer: bool = False
    reassignment_count: Optional[int] = None
    priority: Optional[str] = None
    reason: Optional[str] = None

    def effects_of(self, kind: EffectKind) -> List[Effect]:
        return [effect for effect in self.effects if effect.kind == kind]

    def has_effect(self, kind: EffectKind) -> bool:
        return any(effect.kind == kind for effect in self.effects)

    @property
    def external_effects(self) -> List[Effect]:
        return [effect for effect in self.effects if effect.kind not in DURABLE_EFFECTS]


def can_transition(status: ConversationStatus, action: LifecycleAction, force: bool = False) -> bool:
    """Check whether the table allows `action` from `status`, ignoring actor guards."""
    if (status, action) in TRANSITIONS:
        return True
    return action == A.CLOSE and force and status in FORCED_CLOSE_SOURCES


def _require_holder_or_privileged(snapshot: ConversationSnapshot, actor: Actor, action: LifecycleAction) -> None:
    if actor.privileged:
        return
    if snapshot.assigned_agent_id is not None and actor.id == snapshot.assigned_agent_id:
        return
    raise PermissionDeniedError(f"Only the assigned agent or a supervisor can {action.value} this conversation")


def _close_assignment(reason: str, method: str, final_status: str, transferred_to=None) -> Effect:
    return Effect(
        EffectKind.CLOSE_ASSIGNMENT,
        {"reason": reason, "method": method, "final_status": final_status, "transferred_to": transferred_to},
    )


def _publish(event: str, **data) -> Effect:
    return Effect(EffectKind.PUBLISH, {"event": event, **data})


def _plan_assign(snapshot: ConversationSnapshot, actor: Actor, agent_id, reason: Optional[str]) -> TransitionPlan:
    if agent_id is None:
        raise ValidationError("assign needs an agent")

    if snapshot.status == S.OPEN:
        if not actor.privileged and actor.id != agent_id:
            raise PermissionDeniedError("Agents can only assign conversations to themselves")
        effects = [
            Effect(EffectKind.OPEN_ASSIGNMENT, {"agent_id": agent_id}),
            Effect(EffectKind.GENERATE_SUMMARY, {"agent_id": agent_id}),
            _publish("conversation_assigned", agent_id=agent_id),
        ]
        return TransitionPlan(
            action=A.ASSIGN,
            from_status=snapshot.status,
            to_status=S.ASSIGNED,
            assigned_agent_id=agent_id,
            ai_enabled=False,
            effects=effects,
            reason=reason,
        )

    # From ASSIGNED this is a transfer away from the current holder.
    if snapshot.assigned_agent_id == agent_id:
        raise InvalidTransitionError(snapshot.status.value, A.ASSIGN.value, "already assigned to this agent")
    _require_holder_or_privileged(snapshot, actor, A.ASSIGN)
    effects = [
        _close_assignment(reason or "transferred", "transfer", S.ASSIGNED.value, transferred_to=agent_id),
        Effect(EffectKind.SCHEDULE_ANALYSIS, {"agent_id": snapshot.assigned_agent_id}),
        Effect(EffectKind.OPEN_ASSIGNMENT, {"agent_id": agent_id}),
        Effect(EffectKind.GENERATE_SUMMARY, {"agent_id": agent_id}),
        _publish("conversation_transferred", from_agent_id=snapshot.assigned_agent_id, agent_id=agent_id),
    ]
    return TransitionPlan(
        action=A.ASSIGN,
        from_status=snapshot.status,
        to_status=S.ASSIGNED,
        assigned_agent_id=agent_id,
        ai_enabled=False,
        effects=effects,
        is_transfer=True,
        reason=reason or "transferred",
    )


def _plan_release(snapshot: ConversationSnapshot, actor: Actor, reason: Optional[str]) -> TransitionPlan:
    _require_holder_or_privileged(snapshot, actor, A.RELEASE)
    reason = reason or "released"
    method = "timeout" if actor.is_system else "manual"
    return TransitionPlan(
        action=A.RELEASE,
        from_status=snapshot.status,
        to_status=S.OPEN,
        assigned_agent_id=None,
        ai_enabled=True,
        effects=[
            _close_assignment(reason, method, S.OPEN.value),
            Effect(EffectKind.SCHEDULE_ANALYSIS, {"agent_id": snapshot.assigned_agent_id}),
            _publish("conversation_released", agent_id=snapshot.assigned_agent_id, reason=reason),
        ],
        reason=reason,
    )


def _plan_resolve(snapshot: ConversationSnapshot, actor: Actor, reason: Optional[str]) -> TransitionPlan:
    if snapshot.assigned_agent_id is not None:
        _require_holder_or_privileged(snapshot, actor, A.RESOLVE)
    effects = []
    if snapshot.assigned_agent_id is not None:
        method = "timeout" if actor.is_system else "resolve"
        effects.append(_close_assignment(reason or "solved", method, S.RESOLVED.value))
        effects.append(Effect(EffectKind.SCHEDULE_ANALYSIS, {"agent_id": snapshot.assigned_agent_id}))
    if not actor.is_system:
        effects.append(Effect(EffectKind.SEND_CUSTOMER_NOTICE, {"notice": "resolution_confirmation"}))
    effects.append(Effect(EffectKind.START_RESOLUTION_TIMER))
    effects.append(_publish("conversation_updated", status=S.RESOLVED.value, resolved_by=actor.label))
    return TransitionPlan(
        action=A.RESOLVE,
        from_status=snapshot.status,
        to_status=S.RESOLVED,
        assigned_agent_id=None,
        ai_enabled=True,
        effects=effects,
        reason=reason or "solved",
    )


def _plan_close(snapshot: ConversationSnapshot, actor: Actor, force: bool, reason: Optional[str]) -> TransitionPlan:
    forced = snapshot.status != S.RESOLVED
    if forced:
        if not force:
            raise InvalidTransitionError(snapshot.status.value, A.CLOSE.value, "resolve first or force")
        if not actor.privileged:
            raise PermissionDeniedError("Only supervisors and admins can force-close a conversation")
    effects = []
    if snapshot.assigned_agent_id is not None:
        method = "forced_close" if forced else "normal_close"
        effects.append(_close_assignment("conversation_closed", method, S.CLOSED.value))
        effects.append(Effect(EffectKind.SCHEDULE_ANALYSIS, {"agent_id": snapshot.assigned_agent_id}))
    effects.append(_publish("conversation_updated", status=S.CLOSED.value, closed_by=actor.label, forced=forced))
    return TransitionPlan(
        action=A.CLOSE,
        from_status=snapshot.status,
        to_status=S.CLOSED,
        assigned_agent_id=None,
        ai_enabled=False,
        effects=effects,
        reason=reason,
    )


def _plan_reopen(snapshot: ConversationSnapshot, actor: Actor, reason: Optional[str]) -> TransitionPlan:
    if not actor.privileged:
        raise PermissionDeniedError("Only supervisors and admins can reopen conversations")
    return TransitionPlan(
        action=A.REOPEN,
        from_status=snapshot.status,
        to_status=S.OPEN,
        assigned_agent_id=None,
        ai_enabled=True,
        effects=[_publish("conversation_updated", status=S.OPEN.value, reopened_by=actor.label)],
        reason=reason,
    )


def _plan_wait(snapshot: ConversationSnapshot, actor: Actor) -> TransitionPlan:
    _require_holder_or_privileged(snapshot, actor, A.WAIT)
    return TransitionPlan(
        action=A.WAIT,
        from_status=snapshot.status,
        to_status=S.WAITING,
        assigned_agent_id=snapshot.assigned_agent_id,
        ai_enabled=False,
        effects=[_publish("conversation_updated", status=S.WAITING.value)],
    )


def _plan_resume(snapshot: ConversationSnapshot) -> TransitionPlan:
    return TransitionPlan(
        action=A.RESUME,
        from_status=snapshot.status,
        to_status=S.ASSIGNED,
        assigned_agent_id=snapshot.assigned_agent_id,
        ai_enabled=False,
        effects=[_publish("conversation_updated", status=S.ASSIGNED.value)],
    )


def _plan_confirmation(snapshot: ConversationSnapshot, confirmed: bool, reassignment_threshold: int) -> TransitionPlan:
    if confirmed:
        return TransitionPlan(
            action=A.CONFIRM_RESOLUTION,
            from_status=snapshot.status,
            to_status=S.CLOSED,
            assigned_agent_id=None,
            ai_enabled=False,
            effects=[
                Effect(EffectKind.SEND_CUSTOMER_NOTICE, {"notice": "confirm_resolved"}),
                _publish("conversation_updated", status=S.CLOSED.value, confirmed_by="customer"),
            ],
        )

    reassignments = snapshot.reassignment_count + 1
    priority = None
    effects = [Effect(EffectKind.SEND_CUSTOMER_NOTICE, {"notice": "not_resolved"})]
    if reassignments >= reassignment_threshold and snapshot.priority != "urgent":
        priority = "urgent"
        effects.append(
            _publish("conversation_escalated", old_priority=snapshot.priority, new_priority="urgent")
        )
    effects.append(Effect(EffectKind.AUTO_ASSIGN))
    effects.append(_publish("conversation_updated", status=S.OPEN.value, reason="customer_not_resolved"))
    return TransitionPlan(
        action=A.REJECT_RESOLUTION,
        from_status=snapshot.status,
        to_status=S.OPEN,
        assigned_agent_id=None,
        ai_enabled=True,
        effects=effects,
        reassignment_count=reassignments,
        priority=priority,
        reason="customer_not_resolved",
    )


def plan_transition(
    snapshot: ConversationSnapshot,
    action: LifecycleAction,
    actor: Actor,
    *,
    agent_id=None,
    force: bool = False,
    reason: Optional[str] = None,
    reassignment_threshold: int = 2,
) -> TransitionPlan:
    """Plan `action` on `snapshot`. Raises InvalidTransitionError or PermissionDeniedError."""
    if not can_transition(snapshot.status, action, force=force and action == A.CLOSE):
        raise InvalidTransitionError(snapshot.status.value, action.value)

    if action == A.ASSIGN:
        return _plan_assign(snapshot, actor, agent_id, reason)
    if action == A.RELEASE:
        return _plan_release(snapshot, actor, reason)
    if action == A.RESOLVE:
        return _plan_resolve(snapshot, actor, reason)
    if action == A.CLOSE:
        return _plan_close(snapshot, actor, force, reason)
    if action == A.REOPEN:
        return _plan_reopen(snapshot, actor, reason)
    if action == A.WAIT:
        return _plan_wait(snapshot, actor)
    if action == A.RESUME:
        return _plan_resume(snapshot)
    if action == A.CONFIRM_RESOLUTION:
        return _plan_confirmation(snapshot, True, reassignment_threshold)
    if action == A.REJECT_RESOLUTION:
        return _plan_confirmation(snapshot, False, reassignment_threshold)
    raise InvalidTransitionError(snapshot.status.value, action.value)


def escalated_priority(current: str, requested: str) -> Optional[str]:
    """`requested` if it outranks `current`, else None. Priorities never go down automatically."""
    if requested not in PRIORITY_LEVELS:
        raise ValidationError(f"Unknown priority: {requested}")
    current_rank = PRIORITY_LEVELS.index(current) if current in PRIORITY_LEVELS else 1
    if PRIORITY_LEVELS.index(requested) > current_rank:
        return requested
    return None
