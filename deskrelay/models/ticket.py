import uuid

from sqlalchemy import Column, DateTime, Text, Uuid

from deskrelay.database import Base


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_number = Column(Text, nullable=False, unique=True)
    customer_phone = Column(Text, nullable=False)
    conversation_id = Column(Uuid)
    subject = Column(Text, nullable=False)
    description = Column(Text)
    category = Column(Text, default="support")
    priority = Column(Text, default="medium")
    status = Column(Text, nullable=False, default="open")
    created_at = Column(DateTime(timezone=True), nullable=False)
