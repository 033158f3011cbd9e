from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from deskrelay.database import get_db
from deskrelay.runtime import get_runtime
from deskrelay.services.priority_service import check_wait_time_escalation
from deskrelay.services.timeout_sweep import sweep_and_notify

router = APIRouter(prefix="/maintenance")


@router.post("/sweep")
async def run_sweep():
    """Run one auto-timeout pass now instead of waiting for the worker."""
    report = await sweep_and_notify(get_runtime())
    return report.as_dict()


@router.post("/escalation")
async def run_escalation(db: Session = Depends(get_db)):
    escalations = check_wait_time_escalation(db, publisher=get_runtime().publisher)
    db.commit()
    return {
        "escalated": len(escalations),
        "conversations": [
            {
                "conversation_id": str(escalation.conversation_id),
                "from": escalation.from_priority,
                "to": escalation.to_priority,
                "reason": escalation.reason,
            }
            for escalation in escalations
        ],
    }
