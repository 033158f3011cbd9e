from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ActorRequest(BaseModel):
    agent_id: UUID


class AssignRequest(ActorRequest):
    target_agent_id: Optional[UUID] = None


class TransferRequest(ActorRequest):
    to_agent_id: UUID
    reason: Optional[str] = None


class ReleaseRequest(ActorRequest):
    reason: str = "released"


class ResolveRequest(ActorRequest):
    notes: Optional[str] = None


class CloseRequest(ActorRequest):
    reason: Optional[str] = None
    force: bool = False


class ReopenRequest(ActorRequest):
    reason: Optional[str] = None


class PriorityRequest(ActorRequest):
    priority: Literal["low", "medium", "high", "urgent"]
    reason: Optional[str] = None


class ReplyRequest(ActorRequest):
    content: str


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    channel: str
    status: str
    version: int
    ai_enabled: bool
    assigned_agent_id: Optional[UUID] = None
    assigned_at: Optional[datetime] = None
    priority: str
    reassignment_count: int
    message_count: int
    created_at: datetime
    status_changed_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_due_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agent_id: UUID
    assigned_by: Optional[str] = None
    assigned_at: datetime
    released_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    release_reason: Optional[str] = None
    release_method: Optional[str] = None
    final_status: Optional[str] = None
    transferred_to: Optional[UUID] = None
    context_summary: Optional[dict] = None
    analysis_result: Optional[dict] = None


class TransitionResponse(BaseModel):
    success: bool
    conversation: ConversationResponse
    from_status: str
    to_status: str
    summary: Optional[dict] = None


class ReplyResponse(BaseModel):
    success: bool
    message_id: UUID
    delivered: bool
    error: Optional[str] = None


class AssignmentList(BaseModel):
    conversation_id: UUID
    assignments: List[AssignmentResponse]
