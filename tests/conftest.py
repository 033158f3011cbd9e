import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SWEEP_WORKER_ENABLED", "false")

from datetime import datetime, timezone
from typing import List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from deskrelay.config import Settings
from deskrelay.database import Base
from deskrelay.models import Agent, Conversation, Customer
from deskrelay.services.assistant.base import AssistantProvider, Run, ThreadMessage, ToolCall
from deskrelay.services.dedup_service import InMemoryDeduplicator
from deskrelay.services.errors import RunConflictError
from deskrelay.services.notifier import EventPublisher


class FakeAssistantProvider(AssistantProvider):
    """In-memory threads and runs.

    Every new run walks through `plan` (copied per run) one step per
    `get_run`; a step is a status string or a list of ToolCall, which puts
    the run in requires_action. A run that reaches "completed" gets an
    assistant message with the next text from `replies`.
    """

    def __init__(self, replies: Optional[List[str]] = None, plan: Optional[list] = None):
        self.replies = list(replies or [])
        self.default_reply = "Hi! How can I help you today?"
        self.plan = list(plan or ["in_progress", "completed"])
        self.next_plans: List[list] = []
        self.append_conflicts = 0
        self.json_response = {"brief_summary": "Customer needs help", "urgency": "medium"}
        self.json_error: Optional[Exception] = None
        self.json_delay = 0.0
        self.fail_delete = False

        self.threads = {}
        self.runs = {}
        self.steps = {}
        self.created_threads = []
        self.appended = []
        self.cancelled = []
        self.deleted = []
        self.tool_outputs = []
        self.json_calls = []
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def _add_message(self, thread_id: str, role: str, content: str, run_id: Optional[str] = None) -> ThreadMessage:
        message = ThreadMessage(
            id=self._next_id("msg"), role=role, content=content, run_id=run_id, created_at=self._seq
        )
        self.threads[thread_id].append(message)
        return message

    def _advance(self, run: Run) -> Run:
        steps = self.steps.get(run.id) or []
        if not steps:
            return run
        step = steps.pop(0)
        if isinstance(step, list):
            run.status = "requires_action"
            run.tool_calls = step
        else:
            run.status = step
            run.tool_calls = []
            if step == "completed":
                text = self.replies.pop(0) if self.replies else self.default_reply
                self._add_message(run.thread_id, "assistant", text, run_id=run.id)
            elif step == "failed":
                run.last_error = "server_error"
        return run

    def active_runs(self, thread_id: str) -> List[Run]:
        return [run for run in self.runs.get(thread_id, []) if run.is_active]

    async def create_thread(self, metadata: Optional[dict] = None) -> str:
        thread_id = self._next_id("thread")
        self.threads[thread_id] = []
        self.runs[thread_id] = []
        self.created_threads.append((thread_id, metadata))
        return thread_id

    async def append_message(self, thread_id, content, role="user", metadata=None) -> ThreadMessage:
        if self.append_conflicts > 0:
            self.append_conflicts -= 1
            raise RunConflictError("Can't add messages to thread while a run is active")
        self.appended.append((thread_id, content, metadata))
        return self._add_message(thread_id, role, content)

    async def start_run(self, thread_id: str, instructions: Optional[str] = None) -> Run:
        run = Run(id=self._next_id("run"), thread_id=thread_id, status="queued")
        self.runs[thread_id].append(run)
        self.steps[run.id] = list(self.next_plans.pop(0) if self.next_plans else self.plan)
        return run

    async def get_run(self, thread_id: str, run_id: str) -> Run:
        run = next(run for run in self.runs[thread_id] if run.id == run_id)
        return self._advance(run)

    async def list_runs(self, thread_id: str, limit: int = 10) -> List[Run]:
        return list(reversed(self.runs.get(thread_id, [])))[:limit]

    async def cancel_run(self, thread_id: str, run_id: str) -> Run:
        run = next(run for run in self.runs[thread_id] if run.id == run_id)
        run.status = "cancelled"
        self.steps[run_id] = []
        self.cancelled.append(run_id)
        return run

    async def submit_tool_outputs(self, thread_id: str, run_id: str, outputs: List[dict]) -> Run:
        run = next(run for run in self.runs[thread_id] if run.id == run_id)
        self.tool_outputs.append((run_id, outputs))
        run.status = "in_progress"
        run.tool_calls = []
        return run

    async def list_messages(self, thread_id, limit=100, order="desc", run_id=None) -> List[ThreadMessage]:
        messages = [m for m in self.threads[thread_id] if run_id is None or m.run_id == run_id]
        if order == "desc":
            messages = list(reversed(messages))
        return messages[:limit]

    async def delete_message(self, thread_id: str, message_id: str) -> None:
        if self.fail_delete:
            raise RunConflictError("thread busy")
        self.threads[thread_id] = [m for m in self.threads[thread_id] if m.id != message_id]
        self.deleted.append(message_id)

    async def complete_json(self, system_prompt: str, user_prompt: str) -> dict:
        self.json_calls.append(user_prompt)
        if self.json_delay:
            await asyncio.sleep(self.json_delay)
        if self.json_error is not None:
            raise self.json_error
        return dict(self.json_response)


class RecordingEventPublisher(EventPublisher):
    """Keeps published events in memory."""

    def __init__(self):
        self.events: List[Tuple[str, dict]] = []

    def publish(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [event for event, _ in self.events]


class RecordingChannel:
    """Outbound channel double; keeps every send."""

    configured = True

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent = []

    async def send(self, recipient: str, payload: dict) -> dict:
        self.sent.append((recipient, payload))
        if not self.ok:
            return {"ok": False, "error": "http_500"}
        return {"ok": True, "message_id": f"wamid.{len(self.sent)}"}

    async def send_text(self, recipient: str, text: str) -> dict:
        return await self.send(recipient, {"type": "text", "text": {"body": text}})

    async def send_buttons(self, recipient: str, text: str, buttons: list) -> dict:
        return await self.send(recipient, {"type": "interactive", "text": text, "buttons": buttons})

    def texts(self) -> List[str]:
        return [payload.get("text", {}).get("body") for _, payload in self.sent if payload["type"] == "text"]

    async def close(self) -> None:
        return None


def make_tool_call(name: str, arguments: str = "{}", call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'deskrelay.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        batch_window_seconds=0.05,
        run_poll_interval_seconds=0.0,
        run_poll_timeout_seconds=2.0,
        run_completion_timeout_seconds=2.0,
        run_lock_timeout_seconds=2.0,
        append_retry_backoff_seconds=0.0,
        sweep_worker_enabled=False,
    )


@pytest.fixture
def provider():
    return FakeAssistantProvider()


@pytest.fixture
def publisher():
    return RecordingEventPublisher()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def runtime(test_settings, session_factory, provider, publisher, channel):
    from deskrelay.runtime import build_runtime

    return build_runtime(
        test_settings,
        session_factory=session_factory,
        provider=provider,
        publisher=publisher,
        channel=channel,
        deduplicator=InMemoryDeduplicator(test_settings.dedup_ttl_seconds),
    )


@pytest.fixture
def make_agent(db):
    def _make(role: str = "agent", name: str = "Agent", **kwargs) -> Agent:
        agent = Agent(role=role, name=name, created_at=datetime.now(timezone.utc), **kwargs)
        db.add(agent)
        db.commit()
        return agent

    return _make


@pytest.fixture
def make_customer(db):
    counter = {"n": 0}

    def _make(phone: Optional[str] = None, **kwargs) -> Customer:
        counter["n"] += 1
        customer = Customer(
            phone_number=phone or f"+1555000{counter['n']:04d}",
            created_at=datetime.now(timezone.utc),
            **kwargs,
        )
        db.add(customer)
        db.commit()
        return customer

    return _make


@pytest.fixture
def make_conversation(db, make_customer):
    def _make(customer: Optional[Customer] = None, status: str = "open", **kwargs) -> Conversation:
        customer = customer or make_customer()
        now = datetime.now(timezone.utc)
        values = {
            "customer_id": customer.id,
            "channel": "whatsapp",
            "status": status,
            "version": 1,
            "ai_enabled": status in ("open", "resolved"),
            "priority": "medium",
            "priority_history": [],
            "created_at": now,
            "status_changed_at": now,
        }
        values.update(kwargs)
        conversation = Conversation(**values)
        db.add(conversation)
        db.commit()
        return conversation

    return _make


@pytest.fixture
def client(runtime, session_factory):
    from fastapi.testclient import TestClient

    from deskrelay import runtime as runtime_module
    from deskrelay.database import get_db
    from deskrelay.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    runtime_module._runtime = runtime
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        runtime_module._runtime = None
