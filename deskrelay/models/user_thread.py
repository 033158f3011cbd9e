import uuid

from sqlalchemy import Column, DateTime, Integer, Text, Uuid

from deskrelay.database import Base


class UserThread(Base):
    __tablename__ = "user_threads"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, unique=True)
    thread_id = Column(Text, nullable=False)
    message_count = Column(Integer, nullable=False, default=0)
    last_interaction_at = Column(DateTime(timezone=True))
    last_cleanup_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
