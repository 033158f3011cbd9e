"""Support tickets created and looked up by the assistant through tool calls."""

from datetime import datetime, timezone
from typing import Callable, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deskrelay.logging_config import get_logger
from deskrelay.models import Ticket
from deskrelay.services.tool_dispatcher import ToolContext, ToolRegistry, ToolSpec

logger = get_logger("ticket_service")

TICKET_PREFIX = "TKT"


class CreateTicketArgs(BaseModel):
    subject: str = Field(min_length=1, max_length=200, description="Short summary of the problem")
    description: str = Field(min_length=1, description="What the customer reported")
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    category: str = Field(default="support", description="Ticket category, e.g. support, billing, delivery")


class GetTicketInformationArgs(BaseModel):
    ticket_number: Optional[str] = Field(default=None, description="Ticket number like TKT-000123")
    limit: int = Field(default=3, ge=1, le=10)


def format_ticket_number(sequence: int) -> str:
    return f"{TICKET_PREFIX}-{sequence:06d}"


def next_ticket_number(db: Session) -> str:
    count = db.query(func.count(Ticket.id)).scalar() or 0
    return format_ticket_number(count + 1)


def ticket_to_dict(ticket: Ticket) -> dict:
    return {
        "ticket_number": ticket.ticket_number,
        "subject": ticket.subject,
        "status": ticket.status,
        "priority": ticket.priority,
        "category": ticket.category,
        "created_at": ticket.created_at.isoformat() if ticket.created_at else None,
    }


def create_ticket(
    db: Session,
    customer_phone: str,
    subject: str,
    description: str,
    priority: str = "medium",
    category: str = "support",
    conversation_id=None,
) -> Ticket:
    ticket = Ticket(
        ticket_number=next_ticket_number(db),
        customer_phone=customer_phone,
        conversation_id=conversation_id,
        subject=subject,
        description=description,
        priority=priority,
        category=category,
        status="open",
        created_at=datetime.now(timezone.utc),
    )
    db.add(ticket)
    db.flush()
    logger.info(
        "Ticket created",
        extra={"context": {"ticket_number": ticket.ticket_number, "customer_phone": customer_phone}},
    )
    return ticket


def find_tickets(db: Session, customer_phone: str, ticket_number: Optional[str] = None, limit: int = 3) -> List[Ticket]:
    query = db.query(Ticket).filter(Ticket.customer_phone == customer_phone)
    if ticket_number:
        query = query.filter(Ticket.ticket_number == ticket_number.strip().upper())
    return query.order_by(Ticket.created_at.desc()).limit(limit).all()


def build_default_registry(session_factory: Callable[[], Session]) -> ToolRegistry:
    """Registry with the built-in ticket tools bound to a session factory."""

    def handle_create_ticket(args: CreateTicketArgs, context: ToolContext) -> dict:
        conversation_id = UUID(str(context.conversation_id)) if context.conversation_id else None
        db = session_factory()
        try:
            # Two tickets created at once can draw the same number; the loser retries.
            for attempt in range(2):
                try:
                    ticket = create_ticket(
                        db,
                        customer_phone=context.customer_phone or context.user_id,
                        subject=args.subject,
                        description=args.description,
                        priority=args.priority,
                        category=args.category,
                        conversation_id=conversation_id,
                    )
                    db.commit()
                    return {"ticket_number": ticket.ticket_number, "status": ticket.status}
                except IntegrityError:
                    db.rollback()
                    if attempt:
                        raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def handle_get_ticket_information(args: GetTicketInformationArgs, context: ToolContext) -> dict:
        db = session_factory()
        try:
            tickets = find_tickets(
                db,
                customer_phone=context.customer_phone or context.user_id,
                ticket_number=args.ticket_number,
                limit=args.limit,
            )
            if args.ticket_number and not tickets:
                raise LookupError(f"Ticket {args.ticket_number} not found")
            return {"tickets": [ticket_to_dict(ticket) for ticket in tickets]}
        finally:
            db.close()

    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="create_ticket",
            description="Open a support ticket for the customer and return its number.",
            args_model=CreateTicketArgs,
            handler=handle_create_ticket,
        )
    )
    registry.register(
        ToolSpec(
            name="get_ticket_information",
            description="Look up a ticket by number, or the customer's most recent tickets.",
            args_model=GetTicketInformationArgs,
            handler=handle_get_ticket_information,
        )
    )
    return registry
