import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import relationship

from deskrelay.database import Base

_ACTIVE_STATUS_CLAUSE = text("status IN ('open', 'assigned', 'waiting')")


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # At most one non-terminal conversation per customer.
        Index(
            "uq_conversations_customer_active",
            "customer_id",
            unique=True,
            postgresql_where=_ACTIVE_STATUS_CLAUSE,
            sqlite_where=_ACTIVE_STATUS_CLAUSE,
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False)
    channel = Column(Text, nullable=False, default="whatsapp")
    status = Column(Text, nullable=False, default="open")  # open, assigned, waiting, resolved, closed
    version = Column(Integer, nullable=False, default=1)
    ai_enabled = Column(Boolean, nullable=False, default=True)
    assigned_agent_id = Column(Uuid, ForeignKey("agents.id"))
    assigned_at = Column(DateTime(timezone=True))
    priority = Column(Text, nullable=False, default="medium")  # low, medium, high, urgent
    priority_history = Column(JSON, nullable=False, default=list)
    reassignment_count = Column(Integer, nullable=False, default=0)
    message_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    status_changed_at = Column(DateTime(timezone=True))
    last_message_at = Column(DateTime(timezone=True))
    last_customer_message_at = Column(DateTime(timezone=True))
    last_agent_message_at = Column(DateTime(timezone=True))
    resolved_at = Column(DateTime(timezone=True))
    resolved_by = Column(Text)
    resolution_notes = Column(Text)
    resolution_confirmation_sent = Column(Boolean, nullable=False, default=False)
    resolution_due_at = Column(DateTime(timezone=True))
    resolution_confirmed_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))

    customer = relationship("Customer", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
    assignments = relationship("AssignmentRecord", back_populates="conversation")
