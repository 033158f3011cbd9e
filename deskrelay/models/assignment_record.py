import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import relationship

from deskrelay.database import Base

_OPEN_CLAUSE = text("released_at IS NULL")


class AssignmentRecord(Base):
    __tablename__ = "assignment_records"
    __table_args__ = (
        # Exactly one open assignment per conversation.
        Index(
            "uq_assignment_records_open",
            "conversation_id",
            unique=True,
            postgresql_where=_OPEN_CLAUSE,
            sqlite_where=_OPEN_CLAUSE,
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    customer_id = Column(Uuid, nullable=False)
    agent_id = Column(Uuid, ForeignKey("agents.id"), nullable=False)
    assigned_by = Column(Text)
    assigned_at = Column(DateTime(timezone=True), nullable=False)
    released_at = Column(DateTime(timezone=True))
    duration_seconds = Column(Integer)
    release_reason = Column(Text)  # solved, transferred, auto_timeout_inactivity, conversation_closed, ...
    release_method = Column(Text)  # manual, timeout, transfer, resolve, close, customer_feedback
    final_status = Column(Text)
    transferred_to = Column(Uuid)
    context_summary = Column(JSON)
    analysis_result = Column(JSON)
    analysis_error = Column(Text)

    conversation = relationship("Conversation", back_populates="assignments")
