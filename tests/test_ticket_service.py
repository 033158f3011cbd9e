import asyncio
import json

from deskrelay.models import Ticket
from deskrelay.services.assistant.base import ToolCall
from deskrelay.services.ticket_service import (
    build_default_registry,
    create_ticket,
    find_tickets,
    format_ticket_number,
    next_ticket_number,
)
from deskrelay.services.tool_dispatcher import ToolContext, ToolDispatcher


class TestTicketNumbers:
    def test_format(self):
        assert format_ticket_number(123) == "TKT-000123"

    def test_sequence_follows_count(self, db):
        assert next_ticket_number(db) == "TKT-000001"
        create_ticket(db, "+1555", "Late delivery", "Order 42 is late")
        db.commit()
        assert next_ticket_number(db) == "TKT-000002"


class TestFindTickets:
    def test_scoped_to_customer(self, db):
        create_ticket(db, "+1555", "Mine", "a")
        create_ticket(db, "+1666", "Theirs", "b")
        db.commit()

        tickets = find_tickets(db, "+1555")
        assert [ticket.subject for ticket in tickets] == ["Mine"]

    def test_by_number_is_case_insensitive(self, db):
        ticket = create_ticket(db, "+1555", "Mine", "a")
        db.commit()

        found = find_tickets(db, "+1555", ticket_number=ticket.ticket_number.lower())
        assert found[0].id == ticket.id


class TestTicketTools:
    def test_create_ticket_tool(self, session_factory, db, make_conversation):
        conversation = make_conversation()
        dispatcher = ToolDispatcher(build_default_registry(session_factory))
        context = ToolContext(user_id="+1555", conversation_id=str(conversation.id), customer_phone="+1555")

        invocations = asyncio.run(
            dispatcher.dispatch(
                "run_1",
                [
                    ToolCall(
                        "call_1",
                        "create_ticket",
                        json.dumps({"subject": "Broken phone", "description": "Screen cracked", "priority": "high"}),
                    )
                ],
                context,
            )
        )

        assert invocations[0].ok, invocations[0].error
        assert invocations[0].result == {"ticket_number": "TKT-000001", "status": "open"}
        stored = db.query(Ticket).one()
        assert stored.priority == "high"
        assert stored.conversation_id == conversation.id

    def test_create_ticket_rejects_bad_priority(self, session_factory):
        dispatcher = ToolDispatcher(build_default_registry(session_factory))
        invocations = asyncio.run(
            dispatcher.dispatch(
                "run_1",
                [ToolCall("call_1", "create_ticket", '{"subject": "x", "description": "y", "priority": "asap"}')],
                ToolContext(user_id="+1555"),
            )
        )
        assert invocations[0].error.startswith("Invalid arguments: priority")

    def test_unknown_ticket_number_is_an_error(self, session_factory):
        dispatcher = ToolDispatcher(build_default_registry(session_factory))
        invocations = asyncio.run(
            dispatcher.dispatch(
                "run_1",
                [ToolCall("call_1", "get_ticket_information", '{"ticket_number": "TKT-999999"}')],
                ToolContext(user_id="+1555"),
            )
        )
        assert invocations[0].error == "Tool failed: Ticket TKT-999999 not found"

    def test_recent_tickets_lookup(self, session_factory, db):
        create_ticket(db, "+1555", "First", "a")
        db.commit()
        dispatcher = ToolDispatcher(build_default_registry(session_factory))

        invocations = asyncio.run(
            dispatcher.dispatch(
                "run_1",
                [ToolCall("call_1", "get_ticket_information", "{}")],
                ToolContext(user_id="+1555", customer_phone="+1555"),
            )
        )
        assert invocations[0].result["tickets"][0]["subject"] == "First"
