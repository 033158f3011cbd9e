from uuid import uuid4

import pytest

from deskrelay.services.errors import InvalidTransitionError, PermissionDeniedError, ValidationError
from deskrelay.services.state_machine import (
    Actor,
    ConversationSnapshot,
    ConversationStatus,
    EffectKind,
    LifecycleAction,
    can_transition,
    escalated_priority,
    plan_transition,
)

S = ConversationStatus
A = LifecycleAction


def _snapshot(status=S.OPEN, agent_id=None, **kwargs):
    return ConversationSnapshot(id=uuid4(), status=status, version=1, assigned_agent_id=agent_id, **kwargs)


class TestCanTransition:
    def test_table_transitions(self):
        assert can_transition(S.OPEN, A.ASSIGN)
        assert can_transition(S.ASSIGNED, A.RELEASE)
        assert can_transition(S.WAITING, A.RESUME)
        assert can_transition(S.RESOLVED, A.CLOSE)
        assert can_transition(S.CLOSED, A.REOPEN)

    def test_closed_is_terminal_except_reopen(self):
        for action in A:
            if action == A.REOPEN:
                continue
            assert not can_transition(S.CLOSED, action)

    def test_close_from_open_needs_force(self):
        assert not can_transition(S.OPEN, A.CLOSE)
        assert can_transition(S.OPEN, A.CLOSE, force=True)

    def test_forced_close_not_from_closed(self):
        assert not can_transition(S.CLOSED, A.CLOSE, force=True)


class TestPlanAssign:
    def test_self_assign_from_open(self):
        agent_id = uuid4()
        plan = plan_transition(_snapshot(), A.ASSIGN, Actor(id=agent_id), agent_id=agent_id)

        assert plan.to_status == S.ASSIGNED
        assert plan.assigned_agent_id == agent_id
        assert plan.ai_enabled is False
        assert plan.has_effect(EffectKind.OPEN_ASSIGNMENT)
        assert plan.has_effect(EffectKind.GENERATE_SUMMARY)
        assert not plan.has_effect(EffectKind.CLOSE_ASSIGNMENT)

    def test_agent_cannot_assign_someone_else(self):
        with pytest.raises(PermissionDeniedError):
            plan_transition(_snapshot(), A.ASSIGN, Actor(id=uuid4()), agent_id=uuid4())

    def test_supervisor_can_assign_someone_else(self):
        target = uuid4()
        plan = plan_transition(_snapshot(), A.ASSIGN, Actor(id=uuid4(), role="supervisor"), agent_id=target)
        assert plan.assigned_agent_id == target

    def test_assign_without_agent_is_invalid(self):
        with pytest.raises(ValidationError):
            plan_transition(_snapshot(), A.ASSIGN, Actor.system())

    def test_transfer_closes_then_opens_record(self):
        holder, target = uuid4(), uuid4()
        plan = plan_transition(_snapshot(S.ASSIGNED, holder), A.ASSIGN, Actor(id=holder), agent_id=target)

        kinds = [effect.kind for effect in plan.effects]
        assert plan.is_transfer is True
        assert kinds.index(EffectKind.CLOSE_ASSIGNMENT) < kinds.index(EffectKind.OPEN_ASSIGNMENT)
        close = plan.effects_of(EffectKind.CLOSE_ASSIGNMENT)[0]
        assert close.data["transferred_to"] == target
        assert close.data["method"] == "transfer"

    def test_transfer_keeps_reassignment_count(self):
        holder = uuid4()
        plan = plan_transition(
            _snapshot(S.ASSIGNED, holder, reassignment_count=1), A.ASSIGN, Actor(id=holder), agent_id=uuid4()
        )
        assert plan.reassignment_count is None

    def test_transfer_by_other_agent_denied(self):
        with pytest.raises(PermissionDeniedError):
            plan_transition(_snapshot(S.ASSIGNED, uuid4()), A.ASSIGN, Actor(id=uuid4()), agent_id=uuid4())

    def test_transfer_to_same_agent_invalid(self):
        holder = uuid4()
        with pytest.raises(InvalidTransitionError):
            plan_transition(_snapshot(S.ASSIGNED, holder), A.ASSIGN, Actor(id=holder), agent_id=holder)


class TestPlanRelease:
    def test_manual_release(self):
        holder = uuid4()
        plan = plan_transition(_snapshot(S.ASSIGNED, holder), A.RELEASE, Actor(id=holder))

        assert plan.to_status == S.OPEN
        assert plan.assigned_agent_id is None
        assert plan.ai_enabled is True
        assert plan.effects_of(EffectKind.CLOSE_ASSIGNMENT)[0].data["method"] == "manual"
        assert plan.has_effect(EffectKind.SCHEDULE_ANALYSIS)

    def test_system_release_is_timeout(self):
        plan = plan_transition(
            _snapshot(S.ASSIGNED, uuid4()), A.RELEASE, Actor.system(), reason="auto_timeout_inactivity"
        )
        close = plan.effects_of(EffectKind.CLOSE_ASSIGNMENT)[0]
        assert close.data["method"] == "timeout"
        assert close.data["reason"] == "auto_timeout_inactivity"

    def test_release_from_open_invalid(self):
        with pytest.raises(InvalidTransitionError):
            plan_transition(_snapshot(), A.RELEASE, Actor.system())


class TestPlanResolve:
    def test_agent_resolve_sends_notice_and_starts_timer(self):
        holder = uuid4()
        plan = plan_transition(_snapshot(S.ASSIGNED, holder), A.RESOLVE, Actor(id=holder))

        assert plan.to_status == S.RESOLVED
        assert plan.has_effect(EffectKind.SEND_CUSTOMER_NOTICE)
        assert plan.has_effect(EffectKind.START_RESOLUTION_TIMER)
        assert plan.has_effect(EffectKind.CLOSE_ASSIGNMENT)

    def test_system_resolve_skips_notice(self):
        plan = plan_transition(_snapshot(), A.RESOLVE, Actor.system())
        assert not plan.has_effect(EffectKind.SEND_CUSTOMER_NOTICE)
        assert plan.has_effect(EffectKind.START_RESOLUTION_TIMER)

    def test_timer_is_durable(self):
        plan = plan_transition(_snapshot(), A.RESOLVE, Actor.system())
        assert all(effect.kind != EffectKind.START_RESOLUTION_TIMER for effect in plan.external_effects)


class TestPlanClose:
    def test_close_resolved(self):
        plan = plan_transition(_snapshot(S.RESOLVED), A.CLOSE, Actor(id=uuid4()))
        assert plan.to_status == S.CLOSED
        assert plan.ai_enabled is False

    def test_forced_close_requires_privilege(self):
        with pytest.raises(PermissionDeniedError):
            plan_transition(_snapshot(S.ASSIGNED, uuid4()), A.CLOSE, Actor(id=uuid4()), force=True)

    def test_forced_close_by_admin_closes_record(self):
        plan = plan_transition(
            _snapshot(S.ASSIGNED, uuid4()), A.CLOSE, Actor(id=uuid4(), role="admin"), force=True
        )
        assert plan.effects_of(EffectKind.CLOSE_ASSIGNMENT)[0].data["method"] == "forced_close"

    def test_close_open_without_force_invalid(self):
        with pytest.raises(InvalidTransitionError):
            plan_transition(_snapshot(), A.CLOSE, Actor(id=uuid4(), role="admin"))


class TestPlanReopenAndWait:
    def test_reopen_needs_privilege(self):
        with pytest.raises(PermissionDeniedError):
            plan_transition(_snapshot(S.CLOSED), A.REOPEN, Actor(id=uuid4()))

    def test_supervisor_reopens(self):
        plan = plan_transition(_snapshot(S.CLOSED), A.REOPEN, Actor(id=uuid4(), role="supervisor"))
        assert plan.to_status == S.OPEN

    def test_wait_keeps_agent(self):
        holder = uuid4()
        plan = plan_transition(_snapshot(S.ASSIGNED, holder), A.WAIT, Actor(id=holder))
        assert plan.to_status == S.WAITING
        assert plan.assigned_agent_id == holder

    def test_resume_returns_to_assigned(self):
        holder = uuid4()
        plan = plan_transition(_snapshot(S.WAITING, holder), A.RESUME, Actor.system())
        assert plan.to_status == S.ASSIGNED
        assert plan.assigned_agent_id == holder


class TestResolutionConfirmation:
    def test_confirm_closes(self):
        plan = plan_transition(_snapshot(S.RESOLVED), A.CONFIRM_RESOLUTION, Actor.customer())
        assert plan.to_status == S.CLOSED

    def test_reject_reopens_and_counts(self):
        plan = plan_transition(_snapshot(S.RESOLVED), A.REJECT_RESOLUTION, Actor.customer())
        assert plan.to_status == S.OPEN
        assert plan.reassignment_count == 1
        assert plan.priority is None
        assert plan.has_effect(EffectKind.AUTO_ASSIGN)

    def test_reject_at_threshold_escalates(self):
        plan = plan_transition(
            _snapshot(S.RESOLVED, reassignment_count=1),
            A.REJECT_RESOLUTION,
            Actor.customer(),
            reassignment_threshold=2,
        )
        assert plan.priority == "urgent"

    def test_confirm_from_open_invalid(self):
        with pytest.raises(InvalidTransitionError):
            plan_transition(_snapshot(), A.CONFIRM_RESOLUTION, Actor.customer())


class TestEscalatedPriority:
    def test_only_goes_up(self):
        assert escalated_priority("medium", "high") == "high"
        assert escalated_priority("high", "medium") is None
        assert escalated_priority("urgent", "urgent") is None

    def test_unknown_priority(self):
        with pytest.raises(ValidationError):
            escalated_priority("medium", "critical")
