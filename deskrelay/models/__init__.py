from deskrelay.models.agent import Agent
from deskrelay.models.assignment_record import AssignmentRecord
from deskrelay.models.conversation import Conversation
from deskrelay.models.customer import Customer
from deskrelay.models.message import Message
from deskrelay.models.ticket import Ticket
from deskrelay.models.user_thread import UserThread

__all__ = [
    "Agent",
    "AssignmentRecord",
    "Conversation",
    "Customer",
    "Message",
    "Ticket",
    "UserThread",
]
