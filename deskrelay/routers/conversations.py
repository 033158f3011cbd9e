from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from deskrelay.database import get_db
from deskrelay.logging_config import get_logger
from deskrelay.models import Conversation, Customer
from deskrelay.runtime import get_runtime
from deskrelay.schemas.conversation import (
    ActorRequest,
    AssignmentList,
    AssignmentResponse,
    AssignRequest,
    CloseRequest,
    ConversationResponse,
    PriorityRequest,
    ReleaseRequest,
    ReopenRequest,
    ReplyRequest,
    ReplyResponse,
    ResolveRequest,
    TransferRequest,
    TransitionResponse,
)
from deskrelay.services import lifecycle_service, priority_service
from deskrelay.services.conversation_service import save_message
from deskrelay.services.errors import DeskRelayError
from deskrelay.services.result import Result
from deskrelay.services.side_effects import run_side_effects
from deskrelay.services.state_machine import Actor, ConversationStatus

logger = get_logger("conversations")

router = APIRouter(prefix="/conversations")

ERROR_STATUS = {
    "validation_error": 400,
    "invalid_transition": 400,
    "agent_unavailable": 400,
    "permission_denied": 403,
    "not_found": 404,
    "concurrency_conflict": 409,
}


def _raise_for(result: Result) -> None:
    status_code = ERROR_STATUS.get(result.error_code, 500)
    raise HTTPException(status_code=status_code, detail=result.error)


def _get_conversation(db: Session, conversation_id: UUID) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return conversation


async def _finish(db: Session, result: Result) -> TransitionResponse:
    if not result.ok:
        db.rollback()
        _raise_for(result)
    db.commit()

    outcome = await run_side_effects(result.value, get_runtime())
    conversation = _get_conversation(db, outcome.conversation_id)
    db.refresh(conversation)
    return TransitionResponse(
        success=True,
        conversation=ConversationResponse.model_validate(conversation),
        from_status=outcome.plan.from_status.value,
        to_status=outcome.plan.to_status.value,
        summary=outcome.summary,
    )


@router.get("/{conversation_id}", response_model=ConversationResponse)
def get_conversation(conversation_id: UUID, db: Session = Depends(get_db)):
    return ConversationResponse.model_validate(_get_conversation(db, conversation_id))


@router.get("/{conversation_id}/assignments", response_model=AssignmentList)
def get_assignments(conversation_id: UUID, db: Session = Depends(get_db)):
    _get_conversation(db, conversation_id)
    records = lifecycle_service.list_assignments(db, conversation_id)
    return AssignmentList(
        conversation_id=conversation_id,
        assignments=[AssignmentResponse.model_validate(record) for record in records],
    )


@router.post("/{conversation_id}/assign", response_model=TransitionResponse)
async def assign_conversation(conversation_id: UUID, request: AssignRequest, db: Session = Depends(get_db)):
    """Take a conversation, or assign it to `target_agent_id` (supervisors)."""
    target = request.target_agent_id or request.agent_id
    result = lifecycle_service.assign(db, conversation_id, target, actor=Actor(id=request.agent_id))
    return await _finish(db, result)


@router.post("/{conversation_id}/transfer", response_model=TransitionResponse)
async def transfer_conversation(conversation_id: UUID, request: TransferRequest, db: Session = Depends(get_db)):
    result = lifecycle_service.transfer(
        db, conversation_id, request.to_agent_id, Actor(id=request.agent_id), reason=request.reason
    )
    return await _finish(db, result)


@router.post("/{conversation_id}/release", response_model=TransitionResponse)
async def release_conversation(conversation_id: UUID, request: ReleaseRequest, db: Session = Depends(get_db)):
    result = lifecycle_service.release(db, conversation_id, Actor(id=request.agent_id), reason=request.reason)
    return await _finish(db, result)


@router.post("/{conversation_id}/resolve", response_model=TransitionResponse)
async def resolve_conversation(conversation_id: UUID, request: ResolveRequest, db: Session = Depends(get_db)):
    result = lifecycle_service.resolve(db, conversation_id, Actor(id=request.agent_id), notes=request.notes)
    return await _finish(db, result)


@router.post("/{conversation_id}/close", response_model=TransitionResponse)
async def close_conversation(conversation_id: UUID, request: CloseRequest, db: Session = Depends(get_db)):
    result = lifecycle_service.close(
        db, conversation_id, Actor(id=request.agent_id), reason=request.reason, force=request.force
    )
    return await _finish(db, result)


@router.post("/{conversation_id}/reopen", response_model=TransitionResponse)
async def reopen_conversation(conversation_id: UUID, request: ReopenRequest, db: Session = Depends(get_db)):
    result = lifecycle_service.reopen(db, conversation_id, Actor(id=request.agent_id), reason=request.reason)
    return await _finish(db, result)


@router.post("/{conversation_id}/wait", response_model=TransitionResponse)
async def wait_on_customer(conversation_id: UUID, request: ActorRequest, db: Session = Depends(get_db)):
    result = lifecycle_service.mark_waiting(db, conversation_id, Actor(id=request.agent_id))
    return await _finish(db, result)


@router.post("/{conversation_id}/priority", response_model=ConversationResponse)
async def change_priority(conversation_id: UUID, request: PriorityRequest, db: Session = Depends(get_db)):
    result = priority_service.set_priority(
        db,
        conversation_id,
        request.priority,
        Actor(id=request.agent_id),
        reason=request.reason,
        publisher=get_runtime().publisher,
    )
    if not result.ok:
        db.rollback()
        _raise_for(result)
    db.commit()
    return ConversationResponse.model_validate(_get_conversation(db, conversation_id))


@router.post("/{conversation_id}/reply", response_model=ReplyResponse)
async def agent_reply(conversation_id: UUID, request: ReplyRequest, db: Session = Depends(get_db)):
    """Send an agent's message to the customer and record it."""
    try:
        actor = lifecycle_service.actor_for_agent(db, request.agent_id)
    except DeskRelayError as e:
        _raise_for(Result.from_error(e))

    conversation = _get_conversation(db, conversation_id)
    if conversation.status not in (ConversationStatus.ASSIGNED.value, ConversationStatus.WAITING.value):
        raise HTTPException(status_code=400, detail=f"Cannot reply to a {conversation.status} conversation")
    if conversation.assigned_agent_id != actor.id and not actor.privileged:
        raise HTTPException(status_code=403, detail="Only the assigned agent can reply")

    runtime = get_runtime()
    customer = db.get(Customer, conversation.customer_id)
    sent = await runtime.channel.send_text(customer.phone_number, request.content)
    message = save_message(
        db,
        conversation,
        "agent",
        request.content,
        external_id=sent.get("message_id"),
        agent_id=actor.id,
        metadata={"delivered": bool(sent.get("ok")), "error": sent.get("error")},
    )
    db.commit()

    runtime.publisher.publish(
        "new_message",
        {
            "conversation_id": str(conversation_id),
            "message_id": str(message.id),
            "sender": "agent",
            "agent_id": str(actor.id),
            "content": request.content,
        },
    )
    if not sent.get("ok"):
        logger.warning(f"Agent reply not delivered for {conversation_id}: {sent.get('error')}")
    return ReplyResponse(
        success=True,
        message_id=message.id,
        delivered=bool(sent.get("ok")),
        error=sent.get("error"),
    )
