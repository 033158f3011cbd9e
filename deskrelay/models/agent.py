import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, Text, Uuid

from deskrelay.database import Base


class Agent(Base):
    __tablename__ = "agents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text)
    email = Column(Text)
    role = Column(Text, nullable=False, default="agent")  # agent, supervisor, admin
    is_active = Column(Boolean, default=True)
    auto_assign = Column(Boolean, default=True)
    max_concurrent_chats = Column(Integer, default=20)
    last_activity_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True))
