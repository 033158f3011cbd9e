import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from deskrelay.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False)
    sender = Column(Text, nullable=False)  # customer, ai, agent, system
    agent_id = Column(Uuid)
    content = Column(Text, nullable=False)
    external_id = Column(Text)
    message_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
