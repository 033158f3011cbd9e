"""Carry out the external effects of a committed lifecycle transition.

Every effect is best effort: the transition is already durable, so a failed
notice or event is logged and the remaining effects still run.
"""

from typing import TYPE_CHECKING, Optional

from deskrelay.logging_config import bind_logger, get_logger
from deskrelay.models import AssignmentRecord
from deskrelay.services import priority_service
from deskrelay.services.lifecycle_service import TransitionOutcome
from deskrelay.services.state_machine import Effect, EffectKind

if TYPE_CHECKING:
    from deskrelay.runtime import Runtime

logger = get_logger("side_effects")

CONFIRM_RESOLVED_PREFIX = "confirm_resolved_"
NOT_RESOLVED_PREFIX = "not_resolved_"


def _event_payload(outcome: TransitionOutcome, effect: Effect) -> dict:
    payload = {
        "conversation_id": str(outcome.conversation_id),
        "status": outcome.plan.to_status.value,
        "action": outcome.plan.action.value,
    }
    for key, value in effect.data.items():
        if key == "event":
            continue
        payload[key] = str(value) if value is not None and not isinstance(value, (bool, int, str)) else value
    return payload


async def _send_notice(outcome: TransitionOutcome, effect: Effect, runtime: "Runtime") -> None:
    if not outcome.customer_phone:
        logger.warning(f"No customer phone for conversation {outcome.conversation_id}, notice skipped")
        return
    notice = effect.data.get("notice")
    conversation_id = outcome.conversation_id
    if notice == "resolution_confirmation":
        await runtime.channel.send_buttons(
            outcome.customer_phone,
            runtime.settings.resolution_notice,
            [
                (f"{CONFIRM_RESOLVED_PREFIX}{conversation_id}", "Yes, resolved"),
                (f"{NOT_RESOLVED_PREFIX}{conversation_id}", "No, I need help"),
            ],
        )
    elif notice == "confirm_resolved":
        await runtime.channel.send_text(outcome.customer_phone, runtime.settings.confirm_resolved_reply)
    elif notice == "not_resolved":
        await runtime.channel.send_text(outcome.customer_phone, runtime.settings.not_resolved_reply)
    else:
        logger.warning(f"Unknown notice {notice}")


async def _generate_summary(outcome: TransitionOutcome, runtime: "Runtime") -> Optional[dict]:
    summary = await runtime.analyzer.summarize(outcome.conversation_id)
    if outcome.opened_record_id is not None:
        db = runtime.session_factory()
        try:
            record = db.get(AssignmentRecord, outcome.opened_record_id)
            if record is not None:
                record.context_summary = summary
                db.commit()
        finally:
            db.close()
    return summary


async def _auto_assign(outcome: TransitionOutcome, runtime: "Runtime") -> None:
    db = runtime.session_factory()
    try:
        result = priority_service.auto_assign(db, outcome.conversation_id)
        if not result.ok:
            db.rollback()
            return
        db.commit()
        await run_side_effects(result.value, runtime)
    finally:
        db.close()


async def run_side_effects(outcome: TransitionOutcome, runtime: "Runtime") -> TransitionOutcome:
    """Run the post-commit effects of `outcome`; returns it with the summary filled in."""
    log = bind_logger("side_effects", conversation_id=str(outcome.conversation_id))
    for effect in outcome.effects:
        try:
            if effect.kind == EffectKind.PUBLISH:
                runtime.publisher.publish(effect.data["event"], _event_payload(outcome, effect))
            elif effect.kind == EffectKind.SEND_CUSTOMER_NOTICE:
                await _send_notice(outcome, effect, runtime)
            elif effect.kind == EffectKind.GENERATE_SUMMARY:
                outcome.summary = await _generate_summary(outcome, runtime)
            elif effect.kind == EffectKind.SCHEDULE_ANALYSIS:
                if outcome.closed_record_id is not None:
                    runtime.spawn(
                        runtime.analyzer.analyze_assignment(outcome.closed_record_id),
                        name=f"analysis-{outcome.closed_record_id}",
                    )
            elif effect.kind == EffectKind.AUTO_ASSIGN:
                await _auto_assign(outcome, runtime)
        except Exception as e:
            log.error(
                f"Side effect {effect.kind.value} failed: {e}",
                exc_info=True,
                context={"effect": effect.kind.value},
            )
    return outcome
