"""One provider-side conversation thread per user, with single-flight runs.

A turn is: guard against runs already active on the thread, append the
user's text (retrying on run conflicts), start a run, wait for it to settle,
service tool calls for a bounded number of rounds, then read the reply the
run produced. Every wait is bounded; a turn that runs out of budget fails
and `respond` turns the failure into a safe reply.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deskrelay.config import Settings
from deskrelay.logging_config import get_logger
from deskrelay.models import UserThread
from deskrelay.services.assistant.base import AssistantProvider, Run
from deskrelay.services.errors import DeskRelayError, PollTimeoutError, ProviderError, RunConflictError
from deskrelay.services.notifier import EventPublisher
from deskrelay.services.polling import poll_until, retry_async
from deskrelay.services.result import Result
from deskrelay.services.tool_dispatcher import ToolContext, ToolDispatcher, ToolInvocation
from deskrelay.services.user_locks import UserLocks

logger = get_logger("thread_manager")


class ThreadState(str, Enum):
    NO_THREAD = "no_thread"
    ACTIVE = "active"
    RUN_IN_PROGRESS = "run_in_progress"
    CLEANUP = "cleanup"


BUSY_CODES = {"run_conflict", "run_lock_timeout", "rate_limited"}
TIMEOUT_CODES = {"poll_timeout", "transient_provider_error"}


@dataclass
class ThreadRecord:
    user_id: str
    thread_id: str
    message_count: int = 0
    last_cleanup_at: Optional[datetime] = None


@dataclass
class TurnContext:
    conversation_id: Optional[str] = None
    customer_phone: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class TurnReply:
    user_id: str
    thread_id: str
    run_id: str
    text: str
    tool_invocations: List[ToolInvocation] = field(default_factory=list)
    cleaned_up: bool = False


class ThreadStore(ABC):
    """Durable user -> thread mapping. Authoritative over any in-memory cache."""

    @abstractmethod
    def load(self, user_id: str) -> Optional[ThreadRecord]:
        pass

    @abstractmethod
    def save(self, record: ThreadRecord) -> ThreadRecord:
        """Persist a new mapping; returns the stored one if another writer won."""
        pass

    @abstractmethod
    def record_turn(self, user_id: str) -> int:
        """Increment the message count and return the new value."""
        pass

    @abstractmethod
    def mark_cleaned(self, user_id: str, message_count: int, cleaned_at: datetime) -> None:
        pass


def _to_record(row: UserThread) -> ThreadRecord:
    return ThreadRecord(
        user_id=row.user_id,
        thread_id=row.thread_id,
        message_count=row.message_count or 0,
        last_cleanup_at=row.last_cleanup_at,
    )


class SqlThreadStore(ThreadStore):
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def load(self, user_id: str) -> Optional[ThreadRecord]:
        db = self.session_factory()
        try:
            row = db.query(UserThread).filter(UserThread.user_id == user_id).first()
            return _to_record(row) if row else None
        finally:
            db.close()

    def save(self, record: ThreadRecord) -> ThreadRecord:
        db = self.session_factory()
        try:
            now = datetime.now(timezone.utc)
            db.add(
                UserThread(
                    user_id=record.user_id,
                    thread_id=record.thread_id,
                    message_count=record.message_count,
                    last_interaction_at=now,
                    created_at=now,
                )
            )
            db.commit()
            return record
        except IntegrityError:
            db.rollback()
            logger.warning(f"Thread mapping for {record.user_id} already exists, using stored one")
            existing = db.query(UserThread).filter(UserThread.user_id == record.user_id).first()
            return _to_record(existing)
        finally:
            db.close()

    def record_turn(self, user_id: str) -> int:
        db = self.session_factory()
        try:
            row = db.query(UserThread).filter(UserThread.user_id == user_id).first()
            if row is None:
                return 0
            row.message_count = (row.message_count or 0) + 1
            row.last_interaction_at = datetime.now(timezone.utc)
            db.commit()
            return row.message_count
        finally:
            db.close()

    def mark_cleaned(self, user_id: str, message_count: int, cleaned_at: datetime) -> None:
        db = self.session_factory()
        try:
            db.query(UserThread).filter(UserThread.user_id == user_id).update(
                {UserThread.message_count: message_count, UserThread.last_cleanup_at: cleaned_at}
            )
            db.commit()
        finally:
            db.close()


class AIThreadManager:
    def __init__(
        self,
        provider: AssistantProvider,
        store: ThreadStore,
        dispatcher: ToolDispatcher,
        publisher: Optional[EventPublisher] = None,
        *,
        cleanup_high_water: int = 15,
        cleanup_low_water: int = 10,
        poll_interval_seconds: float = 1.0,
        poll_timeout_seconds: float = 15.0,
        completion_timeout_seconds: float = 60.0,
        lock_timeout_seconds: float = 120.0,
        append_max_attempts: int = 3,
        append_retry_backoff_seconds: float = 2.0,
        max_tool_iterations: int = 3,
        fallback_reply: str = "Sorry, something went wrong.",
        busy_reply: Optional[str] = None,
        timeout_reply: Optional[str] = None,
        config_error_reply: Optional[str] = None,
        sleep_func=asyncio.sleep,
    ):
        if cleanup_low_water >= cleanup_high_water:
            raise ValueError("cleanup_low_water must be below cleanup_high_water")
        self.provider = provider
        self.store = store
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.cleanup_high_water = cleanup_high_water
        self.cleanup_low_water = cleanup_low_water
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self.completion_timeout_seconds = completion_timeout_seconds
        self.lock_timeout_seconds = lock_timeout_seconds
        self.append_max_attempts = append_max_attempts
        self.append_retry_backoff_seconds = append_retry_backoff_seconds
        self.max_tool_iterations = max_tool_iterations
        self.fallback_reply = fallback_reply
        self.busy_reply = busy_reply or fallback_reply
        self.timeout_reply = timeout_reply or fallback_reply
        self.config_error_reply = config_error_reply or fallback_reply
        self._sleep = sleep_func

        self._threads: Dict[str, str] = {}
        self._locks = UserLocks()
        # Only transient states (run in progress, cleanup); idle users have no entry.
        self._states: Dict[str, ThreadState] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        provider: AssistantProvider,
        store: ThreadStore,
        dispatcher: ToolDispatcher,
        publisher: Optional[EventPublisher] = None,
    ) -> "AIThreadManager":
        return cls(
            provider,
            store,
            dispatcher,
            publisher,
            cleanup_high_water=settings.thread_cleanup_high_water,
            cleanup_low_water=settings.thread_cleanup_low_water,
            poll_interval_seconds=settings.run_poll_interval_seconds,
            poll_timeout_seconds=settings.run_poll_timeout_seconds,
            completion_timeout_seconds=settings.run_completion_timeout_seconds,
            lock_timeout_seconds=settings.run_lock_timeout_seconds,
            append_max_attempts=settings.append_max_attempts,
            append_retry_backoff_seconds=settings.append_retry_backoff_seconds,
            max_tool_iterations=settings.max_tool_iterations,
            fallback_reply=settings.fallback_reply,
            busy_reply=settings.busy_reply,
            timeout_reply=settings.timeout_reply,
            config_error_reply=settings.config_error_reply,
        )

    def thread_state(self, user_id: str) -> ThreadState:
        state = self._states.get(user_id)
        if state is not None:
            return state
        if user_id in self._threads or self.store.load(user_id) is not None:
            return ThreadState.ACTIVE
        return ThreadState.NO_THREAD

    def forget(self, user_id: str) -> None:
        """Drop the cached mapping; the next turn recovers it from the store."""
        self._threads.pop(user_id, None)

    async def get_or_create_thread(self, user_id: str) -> str:
        thread_id = self._threads.get(user_id)
        if thread_id:
            return thread_id

        record = self.store.load(user_id)
        if record is None:
            thread_id = await self.provider.create_thread(metadata={"user_id": user_id})
            record = self.store.save(ThreadRecord(user_id=user_id, thread_id=thread_id))
            logger.info(
                "Thread created",
                extra={"context": {"user_id": user_id, "thread_id": record.thread_id}},
            )
        self._threads[user_id] = record.thread_id
        return record.thread_id

    async def run_turn(self, user_id: str, text: str, context: Optional[TurnContext] = None) -> Result[TurnReply]:
        """Run one turn for the user. Concurrent calls for the same user queue up."""
        context = context or TurnContext()
        try:
            async with self._locks.hold(user_id, timeout=self.lock_timeout_seconds):
                return await self._locked_turn(user_id, text, context)
        except asyncio.TimeoutError:
            logger.warning(f"Run lock wait timed out for {user_id}")
            return Result.failure("Another turn for this user is still running", "run_lock_timeout")

    async def _locked_turn(self, user_id: str, text: str, context: TurnContext) -> Result[TurnReply]:
        self._publish_typing("ai_typing_start", user_id, context)
        try:
            self._states[user_id] = ThreadState.RUN_IN_PROGRESS
            reply = await self._execute_turn(user_id, text, context)
            return Result.success(reply)
        except DeskRelayError as e:
            logger.error(
                f"Turn failed: {e.message}",
                extra={"context": {"user_id": user_id, "error_code": e.code}},
            )
            return Result.from_error(e)
        except Exception as e:
            logger.error(f"Unexpected error during turn for {user_id}: {e}", exc_info=True)
            return Result.failure(str(e), "unexpected_error")
        finally:
            self._states.pop(user_id, None)
            self._publish_typing("ai_typing_end", user_id, context)

    async def respond(self, user_id: str, text: str, context: Optional[TurnContext] = None) -> str:
        """Reply text for the user; failures become a user-safe message."""
        result = await self.run_turn(user_id, text, context)
        if result.ok:
            return result.value.text
        return self.fallback_for(result.error_code)

    def fallback_for(self, error_code: Optional[str]) -> str:
        if error_code in BUSY_CODES:
            return self.busy_reply
        if error_code in TIMEOUT_CODES:
            return self.timeout_reply
        if error_code == "config_error":
            return self.config_error_reply
        return self.fallback_reply

    async def _execute_turn(self, user_id: str, text: str, context: TurnContext) -> TurnReply:
        thread_id = await self.get_or_create_thread(user_id)
        await self._ensure_no_active_run(thread_id)
        await self._append_message(thread_id, text, user_id, context)

        instructions = None
        if context.customer_phone:
            instructions = f"The customer's WhatsApp phone number is: {context.customer_phone}."
        run = await self.provider.start_run(thread_id, instructions=instructions)
        run = await self._wait_for_run(thread_id, run)

        invocations: List[ToolInvocation] = []
        tool_context = ToolContext(
            user_id=user_id,
            conversation_id=context.conversation_id,
            customer_phone=context.customer_phone or user_id,
            run_id=run.id,
        )
        iterations = 0
        while run.requires_action:
            if iterations >= self.max_tool_iterations:
                await self._cancel_quietly(thread_id, run.id)
                raise ProviderError(
                    f"Run {run.id} still requires action after {iterations} tool rounds",
                    code="tool_loop_exhausted",
                )
            iterations += 1
            batch = await self.dispatcher.dispatch(run.id, run.tool_calls, tool_context)
            invocations.extend(batch)
            run = await self.provider.submit_tool_outputs(thread_id, run.id, [inv.as_output() for inv in batch])
            run = await self._wait_for_run(thread_id, run)

        if run.status != "completed":
            raise ProviderError(f"Run {run.id} ended as {run.status}: {run.last_error or 'no details'}")

        reply_text = await self._fetch_reply(thread_id, run.id)
        cleaned_up = await self._record_turn(user_id, thread_id)
        return TurnReply(
            user_id=user_id,
            thread_id=thread_id,
            run_id=run.id,
            text=reply_text,
            tool_invocations=invocations,
            cleaned_up=cleaned_up,
        )

    async def _ensure_no_active_run(self, thread_id: str) -> None:
        runs = await self.provider.list_runs(thread_id)
        active = [run for run in runs if run.is_active]
        if not active:
            return

        for run in active:
            if run.status == "cancelling":
                continue
            try:
                await self.provider.cancel_run(thread_id, run.id)
            except DeskRelayError as e:
                logger.warning(f"Could not cancel run {run.id}: {e.message}")

        logger.info(
            "Waiting for active runs to settle",
            extra={"context": {"thread_id": thread_id, "runs": [run.id for run in active]}},
        )
        await poll_until(
            lambda: self.provider.list_runs(thread_id),
            lambda runs: not any(run.is_active for run in runs),
            interval_seconds=self.poll_interval_seconds,
            timeout_seconds=self.poll_timeout_seconds,
            description=f"active runs on {thread_id}",
            sleep_func=self._sleep,
        )

    async def _append_message(self, thread_id: str, text: str, user_id: str, context: TurnContext) -> None:
        metadata = {"user_id": user_id, **{key: str(value) for key, value in context.metadata.items()}}

        async def on_conflict(exc: BaseException, attempt: int) -> None:
            await self._ensure_no_active_run(thread_id)

        await retry_async(
            lambda: self.provider.append_message(thread_id, text, metadata=metadata),
            attempts=self.append_max_attempts,
            retry_on=(RunConflictError,),
            backoff_seconds=self.append_retry_backoff_seconds,
            on_retry=on_conflict,
            sleep_func=self._sleep,
        )

    async def _wait_for_run(self, thread_id: str, run: Run) -> Run:
        if run.is_settled:
            return run
        try:
            return await poll_until(
                lambda: self.provider.get_run(thread_id, run.id),
                lambda current: current.is_settled,
                interval_seconds=self.poll_interval_seconds,
                timeout_seconds=self.completion_timeout_seconds,
                description=f"run {run.id}",
                sleep_func=self._sleep,
            )
        except PollTimeoutError:
            await self._cancel_quietly(thread_id, run.id)
            raise

    async def _cancel_quietly(self, thread_id: str, run_id: str) -> None:
        try:
            await self.provider.cancel_run(thread_id, run_id)
        except DeskRelayError as e:
            logger.warning(f"Cancel of run {run_id} failed: {e.message}")

    async def _fetch_reply(self, thread_id: str, run_id: str) -> str:
        messages = await self.provider.list_messages(thread_id, limit=20, order="desc", run_id=run_id)
        for message in messages:
            if message.role == "assistant" and message.run_id == run_id and message.content:
                return message.content
        raise ProviderError(f"Run {run_id} completed without an assistant reply", code="empty_reply")

    async def _record_turn(self, user_id: str, thread_id: str) -> bool:
        """Count the turn and trim the thread once it reaches the high-water mark."""
        count = self.store.record_turn(user_id)
        if count < self.cleanup_high_water:
            return False

        self._states[user_id] = ThreadState.CLEANUP
        try:
            messages = await self.provider.list_messages(thread_id, limit=100, order="desc")
            stale = messages[self.cleanup_low_water :]
            for message in stale:
                await self.provider.delete_message(thread_id, message.id)
        except DeskRelayError as e:
            # Count stays above the mark so the next turn tries again.
            logger.warning(f"Thread cleanup failed for {user_id}: {e.message}")
            return False

        self.store.mark_cleaned(user_id, self.cleanup_low_water, datetime.now(timezone.utc))
        logger.info(
            "Thread trimmed",
            extra={"context": {"user_id": user_id, "thread_id": thread_id, "deleted": len(stale)}},
        )
        return True

    def _publish_typing(self, event: str, user_id: str, context: TurnContext) -> None:
        if self.publisher is None or not context.conversation_id:
            return
        self.publisher.publish(event, {"conversation_id": context.conversation_id, "user_id": user_id})
