from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

ACTIVE_RUN_STATUSES = {"queued", "in_progress", "cancelling"}
TERMINAL_RUN_STATUSES = {"completed", "failed", "cancelled", "expired", "incomplete"}


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str


@dataclass
class Run:
    id: str
    thread_id: str
    status: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    last_error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    @property
    def requires_action(self) -> bool:
        return self.status == "requires_action"

    @property
    def is_settled(self) -> bool:
        """Run stopped moving: finished, failed, or waiting on tool outputs."""
        return self.status in TERMINAL_RUN_STATUSES or self.requires_action


@dataclass
class ThreadMessage:
    id: str
    role: str
    content: str
    run_id: Optional[str] = None
    created_at: Optional[int] = None


class AssistantProvider(ABC):
    """Remote conversational-AI service with provider-side threads and runs."""

    @abstractmethod
    async def create_thread(self, metadata: Optional[dict] = None) -> str:
        pass

    @abstractmethod
    async def append_message(
        self, thread_id: str, content: str, role: str = "user", metadata: Optional[dict] = None
    ) -> ThreadMessage:
        pass

    @abstractmethod
    async def start_run(self, thread_id: str, instructions: Optional[str] = None) -> Run:
        pass

    @abstractmethod
    async def get_run(self, thread_id: str, run_id: str) -> Run:
        pass

    @abstractmethod
    async def list_runs(self, thread_id: str, limit: int = 10) -> List[Run]:
        pass

    @abstractmethod
    async def cancel_run(self, thread_id: str, run_id: str) -> Run:
        pass

    @abstractmethod
    async def submit_tool_outputs(self, thread_id: str, run_id: str, outputs: List[dict]) -> Run:
        pass

    @abstractmethod
    async def list_messages(
        self,
        thread_id: str,
        limit: int = 100,
        order: str = "desc",
        run_id: Optional[str] = None,
    ) -> List[ThreadMessage]:
        pass

    @abstractmethod
    async def delete_message(self, thread_id: str, message_id: str) -> None:
        pass

    @abstractmethod
    async def complete_json(self, system_prompt: str, user_prompt: str) -> dict:
        """One-shot chat completion constrained to a JSON object."""
        pass

    async def close(self) -> None:
        return None
