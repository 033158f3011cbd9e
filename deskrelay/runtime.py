"""Process-wide service graph.

Built once by `init_runtime` at startup and torn down by `shutdown_runtime`.
Tests build their own with fakes passed as overrides.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Coroutine, Optional, Set

from sqlalchemy.orm import Session

from deskrelay.config import Settings, get_settings
from deskrelay.database import SessionLocal
from deskrelay.logging_config import get_logger
from deskrelay.services.analysis_service import ConversationAnalyzer
from deskrelay.services.assistant import AssistantProvider, OpenAIAssistantProvider
from deskrelay.services.batch_queue import FlushedBatch, MessageBatchQueue, build_batch_store
from deskrelay.services.dedup_service import Deduplicator, build_deduplicator
from deskrelay.services.ingestion_service import process_batch
from deskrelay.services.notifier import EventPublisher, build_publisher
from deskrelay.services.thread_manager import AIThreadManager, SqlThreadStore
from deskrelay.services.ticket_service import build_default_registry
from deskrelay.services.tool_dispatcher import ToolDispatcher
from deskrelay.services.whatsapp_service import WhatsAppService

logger = get_logger("runtime")


@dataclass
class Runtime:
    settings: Settings
    session_factory: Callable[[], Session]
    deduplicator: Deduplicator
    publisher: EventPublisher
    channel: WhatsAppService
    analyzer: ConversationAnalyzer
    provider: AssistantProvider
    dispatcher: ToolDispatcher
    thread_manager: AIThreadManager
    batch_queue: Optional[MessageBatchQueue] = None
    background_tasks: Set[asyncio.Task] = field(default_factory=set)

    async def handle_batch(self, batch: FlushedBatch):
        return await process_batch(batch, self)

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Run a coroutine in the background, tracked until it finishes."""
        task = asyncio.create_task(coro, name=name)
        self.background_tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self.background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {exc}",
                exc_info=exc,
            )

    async def drain(self) -> None:
        """Wait for background tasks, including ones spawned while waiting."""
        while self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)

    async def close(self) -> None:
        if self.batch_queue is not None:
            await self.batch_queue.shutdown(drain=False)
            try:
                await self.batch_queue.store.close()
            except Exception as e:
                logger.warning(f"Closing batch store failed: {e}")
        for task in list(self.background_tasks):
            task.cancel()
        if self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)
        for name, closer in (
            ("provider", self.provider.close),
            ("channel", self.channel.close),
            ("publisher", self.publisher.close),
            ("deduplicator", self.deduplicator.close),
        ):
            try:
                await closer()
            except Exception as e:
                logger.warning(f"Closing {name} failed: {e}")


_runtime: Optional[Runtime] = None


def build_runtime(settings: Optional[Settings] = None, **overrides) -> Runtime:
    """Wire the services. Raises FatalConfigError when the provider lacks credentials."""
    settings = settings or get_settings()
    session_factory = overrides.get("session_factory") or SessionLocal

    if "provider" in overrides:
        provider = overrides["provider"]
    else:
        provider = OpenAIAssistantProvider(
            api_key=settings.openai_api_key,
            assistant_id=settings.openai_assistant_id,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.openai_timeout_seconds,
            analysis_model=settings.analysis_model,
        )

    publisher = overrides.get("publisher") or build_publisher(settings.events_webhook_url)
    channel = overrides.get("channel") or WhatsAppService(
        settings.whatsapp_api_token,
        settings.whatsapp_phone_number_id,
        settings.whatsapp_api_version,
    )
    deduplicator = overrides.get("deduplicator") or build_deduplicator(settings)
    dispatcher = overrides.get("dispatcher") or ToolDispatcher(
        build_default_registry(session_factory),
        timeout_seconds=settings.tool_timeout_seconds,
    )
    thread_manager = overrides.get("thread_manager") or AIThreadManager.from_settings(
        settings,
        provider,
        SqlThreadStore(session_factory),
        dispatcher,
        publisher,
    )
    analyzer = overrides.get("analyzer") or ConversationAnalyzer(provider, session_factory)

    runtime = Runtime(
        settings=settings,
        session_factory=session_factory,
        deduplicator=deduplicator,
        publisher=publisher,
        channel=channel,
        analyzer=analyzer,
        provider=provider,
        dispatcher=dispatcher,
        thread_manager=thread_manager,
    )
    runtime.batch_queue = overrides.get("batch_queue") or MessageBatchQueue(
        runtime.handle_batch,
        window_seconds=settings.batch_window_seconds,
        separator=settings.batch_separator,
        store=overrides.get("batch_store") or build_batch_store(settings),
    )
    return runtime


def init_runtime(settings: Optional[Settings] = None, **overrides) -> Runtime:
    global _runtime
    _runtime = build_runtime(settings, **overrides)
    logger.info(
        "Runtime initialized",
        extra={
            "context": {
                "dedup": _runtime.deduplicator.stats().get("backend"),
                "batch_store": _runtime.batch_queue.store.stats().get("backend"),
                "channel_configured": _runtime.channel.configured,
            }
        },
    )
    return _runtime


def is_initialized() -> bool:
    return _runtime is not None


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("Runtime not initialized")
    return _runtime


async def shutdown_runtime() -> None:
    global _runtime
    if _runtime is None:
        return
    runtime, _runtime = _runtime, None
    await runtime.close()
    logger.info("Runtime shut down")
