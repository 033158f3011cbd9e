"""Periodic pass that advances conversations idle past their status threshold.

Candidates are collected first, then each is applied with its expected
status and version as a guard. A conversation that moved in between (an
agent acted on it) no longer matches and is skipped for this cycle, so a
manual action is never overwritten and re-running the sweep is a no-op.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from deskrelay.config import Settings
from deskrelay.logging_config import get_logger
from deskrelay.models import Conversation
from deskrelay.services import lifecycle_service
from deskrelay.services.conversation_service import ensure_timezone
from deskrelay.services.side_effects import run_side_effects
from deskrelay.services.state_machine import Actor, ConversationStatus, LifecycleAction

if TYPE_CHECKING:
    from deskrelay.runtime import Runtime

logger = get_logger("timeout_sweep")


@dataclass
class SweepThresholds:
    open_minutes: int = 1440
    waiting_minutes: int = 1440
    assigned_inactivity_minutes: int = 15
    resolved_minutes: int = 1440

    @classmethod
    def from_settings(cls, settings: Settings) -> "SweepThresholds":
        return cls(
            open_minutes=settings.sweep_open_timeout_minutes,
            waiting_minutes=settings.sweep_waiting_timeout_minutes,
            assigned_inactivity_minutes=settings.sweep_assigned_inactivity_minutes,
            resolved_minutes=settings.sweep_resolved_timeout_minutes,
        )


@dataclass(frozen=True)
class StaleCandidate:
    conversation_id: UUID
    status: str
    version: int
    action: LifecycleAction
    reason: str


@dataclass
class SweepReport:
    scanned: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    actions: List[dict] = field(default_factory=list)
    outcomes: list = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "applied": self.applied,
            "skipped": self.skipped,
            "failed": self.failed,
            "actions": self.actions,
        }


def _last_activity(conversation: Conversation) -> Optional[datetime]:
    moments = [
        ensure_timezone(dt)
        for dt in (conversation.last_message_at, conversation.status_changed_at, conversation.created_at)
        if dt is not None
    ]
    return max(moments) if moments else None


def _candidate_for(conversation: Conversation, now: datetime, thresholds: SweepThresholds) -> Optional[StaleCandidate]:
    status = conversation.status

    if status == ConversationStatus.OPEN.value:
        last = _last_activity(conversation)
        if last and now - last >= timedelta(minutes=thresholds.open_minutes):
            return StaleCandidate(
                conversation.id, status, conversation.version, LifecycleAction.RESOLVE, "auto_timeout_open"
            )

    elif status == ConversationStatus.WAITING.value:
        last = _last_activity(conversation)
        if last and now - last >= timedelta(minutes=thresholds.waiting_minutes):
            return StaleCandidate(
                conversation.id, status, conversation.version, LifecycleAction.RESOLVE, "auto_timeout_waiting"
            )

    elif status == ConversationStatus.ASSIGNED.value:
        agent_activity = ensure_timezone(conversation.last_agent_message_at)
        assigned_at = ensure_timezone(conversation.assigned_at)
        candidates = [dt for dt in (agent_activity, assigned_at) if dt is not None]
        last = max(candidates) if candidates else None
        if last and now - last >= timedelta(minutes=thresholds.assigned_inactivity_minutes):
            return StaleCandidate(
                conversation.id, status, conversation.version, LifecycleAction.RELEASE, "auto_timeout_inactivity"
            )

    elif status == ConversationStatus.RESOLVED.value:
        due_at = ensure_timezone(conversation.resolution_due_at)
        resolved_at = ensure_timezone(conversation.resolved_at or conversation.status_changed_at)
        if due_at is not None:
            expired = now >= due_at
        else:
            expired = resolved_at is not None and now - resolved_at >= timedelta(minutes=thresholds.resolved_minutes)
        if expired:
            return StaleCandidate(
                conversation.id, status, conversation.version, LifecycleAction.CLOSE, "auto_timeout_resolved"
            )

    return None


def find_stale_conversations(
    db: Session,
    now: Optional[datetime] = None,
    thresholds: Optional[SweepThresholds] = None,
) -> List[StaleCandidate]:
    now = now or datetime.now(timezone.utc)
    thresholds = thresholds or SweepThresholds()

    # Coarse prefilter in SQL on the oldest cutoff per status; exact checks below.
    assigned_cutoff = now - timedelta(minutes=thresholds.assigned_inactivity_minutes)
    rows = (
        db.query(Conversation)
        .filter(
            or_(
                Conversation.status.in_(
                    [
                        ConversationStatus.OPEN.value,
                        ConversationStatus.WAITING.value,
                        ConversationStatus.RESOLVED.value,
                    ]
                ),
                (Conversation.status == ConversationStatus.ASSIGNED.value)
                & (Conversation.assigned_at <= assigned_cutoff),
            )
        )
        .all()
    )

    candidates = []
    for conversation in rows:
        candidate = _candidate_for(conversation, now, thresholds)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def run_timeout_sweep(
    db: Session,
    now: Optional[datetime] = None,
    thresholds: Optional[SweepThresholds] = None,
) -> SweepReport:
    """Apply the sweep once. Commits per conversation so one failure does not undo the others."""
    now = now or datetime.now(timezone.utc)
    report = SweepReport()
    candidates = find_stale_conversations(db, now, thresholds)
    report.scanned = len(candidates)

    for candidate in candidates:
        result = lifecycle_service.apply_action(
            db,
            candidate.conversation_id,
            candidate.action,
            Actor.system(),
            reason=candidate.reason,
            notes=f"Auto-resolved: {candidate.reason}" if candidate.action == LifecycleAction.RESOLVE else None,
            expected_status=candidate.status,
            expected_version=candidate.version,
            retry_on_conflict=False,
            now=now,
        )
        if result.ok:
            db.commit()
            report.applied += 1
            report.outcomes.append(result.value)
            report.actions.append(
                {
                    "conversation_id": str(candidate.conversation_id),
                    "action": candidate.action.value,
                    "reason": candidate.reason,
                }
            )
        elif result.error_code == "concurrency_conflict":
            db.rollback()
            report.skipped += 1
            logger.info(f"Sweep skipped {candidate.conversation_id}: {result.error}")
        else:
            db.rollback()
            report.failed += 1
            logger.warning(
                f"Sweep could not apply {candidate.action.value} to {candidate.conversation_id}: {result.error}"
            )

    if report.scanned:
        logger.info(
            "Timeout sweep finished",
            extra={"context": report.as_dict()},
        )
    return report


async def sweep_and_notify(runtime: "Runtime", now: Optional[datetime] = None) -> SweepReport:
    """One sweep pass plus the post-commit effects of every applied transition."""
    db = runtime.session_factory()
    try:
        report = run_timeout_sweep(db, now, SweepThresholds.from_settings(runtime.settings))
        for outcome in report.outcomes:
            await run_side_effects(outcome, runtime)
        return report
    finally:
        db.close()
