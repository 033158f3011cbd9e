"""Per-user debounce queue for bursty inbound text.

Every message is appended to the user's buffer in a `BatchStore` and stamped
as the user's latest token, then arms a quiet-period timer. When a timer
fires it only flushes if its token is still the latest one; the buffer is
drained before the handler runs, so input arriving mid-flush starts a fresh
batch instead of joining the one in flight. With the Redis store the buffer
and the latest token are shared, so a burst spread over several instances
is still answered once.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import redis.asyncio as redis_async

from deskrelay.config import Settings
from deskrelay.logging_config import get_logger
from deskrelay.services.user_locks import UserLocks

logger = get_logger("batch_queue")


@dataclass
class BatchPart:
    text: str
    message_id: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "text": self.text,
                "message_id": self.message_id,
                "received_at": self.received_at.isoformat(),
                "metadata": self.metadata,
            },
            ensure_ascii=False,
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> "BatchPart":
        data = json.loads(raw)
        return cls(
            text=data.get("text") or "",
            message_id=data.get("message_id"),
            received_at=datetime.fromisoformat(data["received_at"]),
            metadata=data.get("metadata") or {},
        )


@dataclass
class FlushedBatch:
    user_id: str
    text: str
    parts: List[BatchPart]

    @property
    def message_ids(self) -> List[str]:
        return [part.message_id for part in self.parts if part.message_id]


BatchHandler = Callable[[FlushedBatch], Awaitable[Any]]


class BatchStore(ABC):
    """Where pending parts wait for their quiet period to end."""

    @abstractmethod
    async def push(self, user_id: str, part: BatchPart, token: str) -> int:
        """Append a part and make `token` the user's latest. Returns the buffered count."""
        pass

    @abstractmethod
    async def is_latest(self, user_id: str, token: str) -> bool:
        pass

    @abstractmethod
    async def drain(self, user_id: str) -> List[BatchPart]:
        """Remove and return the user's buffered parts in arrival order."""
        pass

    async def discard(self, user_id: str) -> None:
        return None

    async def close(self) -> None:
        return None

    def stats(self) -> dict:
        return {}


class InMemoryBatchStore(BatchStore):
    def __init__(self, max_parts: int = 20):
        self.max_parts = max_parts
        self._parts: Dict[str, List[BatchPart]] = {}
        self._latest: Dict[str, str] = {}

    async def push(self, user_id: str, part: BatchPart, token: str) -> int:
        parts = self._parts.setdefault(user_id, [])
        parts.append(part)
        del parts[: -self.max_parts]
        self._latest[user_id] = token
        return len(parts)

    async def is_latest(self, user_id: str, token: str) -> bool:
        return self._latest.get(user_id) == token

    async def drain(self, user_id: str) -> List[BatchPart]:
        self._latest.pop(user_id, None)
        return self._parts.pop(user_id, [])

    async def discard(self, user_id: str) -> None:
        await self.drain(user_id)

    def stats(self) -> dict:
        return {"backend": "memory", "buffered_users": len(self._parts)}


class RedisBatchStore(BatchStore):
    """Shared buffer: a capped list per user plus a last-token key, both expiring."""

    def __init__(self, redis_client, ttl_seconds: int = 60, max_parts: int = 20, key_prefix: str = "deskrelay:batch"):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.max_parts = max_parts
        self.key_prefix = key_prefix

    def _buffer_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:{user_id}"

    def _token_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:{user_id}:last"

    async def push(self, user_id: str, part: BatchPart, token: str) -> int:
        key = self._buffer_key(user_id)
        size = await self.redis_client.rpush(key, part.to_json())
        await self.redis_client.ltrim(key, -self.max_parts, -1)
        await self.redis_client.expire(key, self.ttl_seconds)
        await self.redis_client.set(self._token_key(user_id), token, ex=self.ttl_seconds)
        return min(int(size), self.max_parts)

    async def is_latest(self, user_id: str, token: str) -> bool:
        return await self.redis_client.get(self._token_key(user_id)) == token

    async def drain(self, user_id: str) -> List[BatchPart]:
        # LPOP with a count is atomic; parts pushed afterwards stay for the next batch.
        raw = await self.redis_client.lpop(self._buffer_key(user_id), self.max_parts) or []
        parts = []
        for item in raw:
            try:
                parts.append(BatchPart.from_json(item))
            except (ValueError, KeyError) as e:
                logger.warning(f"Dropping malformed buffered message for {user_id}: {e}")
        return parts

    async def close(self) -> None:
        await self.redis_client.aclose()

    def stats(self) -> dict:
        return {"backend": "redis", "ttl_seconds": self.ttl_seconds, "max_parts": self.max_parts}


def build_batch_store(settings: Settings, redis_client=None) -> BatchStore:
    if settings.batch_backend == "redis":
        if redis_client is None:
            redis_client = redis_async.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=settings.redis_socket_timeout_seconds,
                socket_timeout=settings.redis_socket_timeout_seconds,
            )
        return RedisBatchStore(redis_client, settings.batch_buffer_ttl_seconds, settings.batch_max_parts)
    return InMemoryBatchStore(settings.batch_max_parts)


class MessageBatchQueue:
    def __init__(
        self,
        handler: BatchHandler,
        window_seconds: float = 2.0,
        separator: str = "\n\n",
        store: Optional[BatchStore] = None,
    ):
        self.handler = handler
        self.window_seconds = window_seconds
        self.separator = separator
        self.store = store or InMemoryBatchStore()
        self._timers: Dict[str, asyncio.Task] = {}
        self._enqueue_locks = UserLocks()
        self._flush_locks = UserLocks()
        self._flush_tasks: set[asyncio.Task] = set()

    async def enqueue(
        self,
        user_id: str,
        text: str,
        message_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> int:
        """Buffer a message and (re)arm the user's quiet-period timer."""
        part = BatchPart(text=text, message_id=message_id, metadata=metadata or {})
        token = uuid4().hex
        async with self._enqueue_locks.hold(user_id):
            try:
                size = await self.store.push(user_id, part, token)
            except Exception as e:
                logger.warning(f"Batch buffer unavailable, flushing message alone: {e}")
                self._track(asyncio.create_task(self._flush(user_id, [part])))
                return 1

            timer = self._timers.pop(user_id, None)
            if timer is not None:
                timer.cancel()
            self._timers[user_id] = asyncio.create_task(self._fire_after_window(user_id, token))

        logger.debug(
            "Message queued",
            extra={"context": {"user_id": user_id, "queue_size": size}},
        )
        return size

    def _track(self, task: asyncio.Task) -> None:
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _fire_after_window(self, user_id: str, token: str) -> None:
        try:
            await asyncio.sleep(self.window_seconds)
        except asyncio.CancelledError:
            return

        # Detach before any await so a new message cannot cancel the flush.
        task = asyncio.current_task()
        if self._timers.get(user_id) is task:
            del self._timers[user_id]
        if task is not None:
            self._track(task)

        try:
            if not await self.store.is_latest(user_id, token):
                return
        except Exception as e:
            logger.warning(f"Batch token check failed, flushing anyway: {e}")

        parts = await self._drain(user_id)
        if parts:
            await self._flush(user_id, parts)

    async def _drain(self, user_id: str) -> List[BatchPart]:
        try:
            return await self.store.drain(user_id)
        except Exception as e:
            logger.warning(f"Batch buffer drain failed for {user_id}: {e}")
            return []

    async def _flush(self, user_id: str, parts: List[BatchPart]) -> None:
        texts = [part.text for part in parts if part.text]
        flushed = FlushedBatch(user_id=user_id, text=self.separator.join(texts), parts=list(parts))
        async with self._flush_locks.hold(user_id):
            logger.info(
                "Flushing batch",
                extra={"context": {"user_id": user_id, "parts": len(parts)}},
            )
            try:
                await self.handler(flushed)
            except Exception as exc:
                logger.error(
                    "Batch handler failed",
                    exc_info=True,
                    extra={"context": {"user_id": user_id, "error": str(exc)}},
                )

    async def flush_now(self, user_id: str) -> bool:
        """Flush a user's pending batch immediately, skipping the rest of the window."""
        timer = self._timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()
        parts = await self._drain(user_id)
        if not parts:
            return False
        await self._flush(user_id, parts)
        return True

    def pending_users(self) -> List[str]:
        return list(self._timers.keys())

    def stats(self) -> dict:
        return {
            "active_batches": len(self._timers),
            "flushes_in_progress": len(self._flush_tasks),
            "store": self.store.stats(),
        }

    async def shutdown(self, drain: bool = False) -> None:
        """Cancel pending timers; with `drain`, flush what is pending first.

        Without `drain` the in-process buffer is dropped. A shared buffer is
        left to expire, since another instance's timer may still own it.
        """
        if drain:
            for user_id in list(self._timers.keys()):
                await self.flush_now(user_id)
        for user_id, timer in list(self._timers.items()):
            timer.cancel()
            try:
                await self.store.discard(user_id)
            except Exception as e:
                logger.warning(f"Discarding buffer for {user_id} failed: {e}")
        self._timers.clear()
        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)
