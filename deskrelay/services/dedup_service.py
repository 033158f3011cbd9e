"""Inbound message deduplication.

The delivery channel is at-least-once: the same message id can arrive again
when the webhook ack is slow. A receipt is kept for a TTL window; its presence
alone means "already handled".
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import redis.asyncio as redis_async

from deskrelay.config import Settings
from deskrelay.logging_config import get_logger

logger = get_logger("dedup_service")


class Deduplicator(ABC):
    """Process-wide receipt cache. Implementations must make `claim` atomic."""

    @abstractmethod
    async def seen(self, message_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_seen(self, message_id: str) -> None:
        pass

    @abstractmethod
    async def claim(self, message_id: str) -> bool:
        """Check-and-insert. True only for the first caller within the TTL."""
        pass

    async def purge_expired(self) -> int:
        return 0

    async def close(self) -> None:
        return None

    def stats(self) -> dict:
        return {}


class InMemoryDeduplicator(Deduplicator):
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _alive(self, message_id: str, now: float) -> bool:
        expires_at = self._expiry.get(message_id)
        if expires_at is None:
            return False
        if expires_at <= now:
            del self._expiry[message_id]
            return False
        return True

    async def seen(self, message_id: str) -> bool:
        with self._lock:
            return self._alive(message_id, self._clock())

    async def mark_seen(self, message_id: str) -> None:
        with self._lock:
            self._expiry[message_id] = self._clock() + self.ttl_seconds

    async def claim(self, message_id: str) -> bool:
        with self._lock:
            now = self._clock()
            if self._alive(message_id, now):
                return False
            self._expiry[message_id] = now + self.ttl_seconds
            return True

    async def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [message_id for message_id, expires_at in self._expiry.items() if expires_at <= now]
            for message_id in expired:
                del self._expiry[message_id]
        if expired:
            logger.info(f"Purged {len(expired)} expired message receipts")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._expiry.clear()

    def stats(self) -> dict:
        with self._lock:
            return {"backend": "memory", "receipts": len(self._expiry), "ttl_seconds": self.ttl_seconds}


class RedisDeduplicator(Deduplicator):
    """Shared receipt store for multi-instance deployments (SET NX EX)."""

    def __init__(self, redis_client, ttl_seconds: float, key_prefix: str = "deskrelay:dedup"):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, message_id: str) -> str:
        return f"{self.key_prefix}:{message_id}"

    def _ttl_ms(self) -> int:
        return max(1, int(self.ttl_seconds * 1000))

    async def seen(self, message_id: str) -> bool:
        try:
            return bool(await self.redis_client.exists(self._key(message_id)))
        except Exception as e:
            logger.warning(f"Dedup redis unavailable, treating as unseen: {e}")
            return False

    async def mark_seen(self, message_id: str) -> None:
        try:
            await self.redis_client.set(self._key(message_id), "1", px=self._ttl_ms())
        except Exception as e:
            logger.warning(f"Dedup redis unavailable, receipt not stored: {e}")

    async def claim(self, message_id: str) -> bool:
        try:
            was_set = await self.redis_client.set(self._key(message_id), "1", px=self._ttl_ms(), nx=True)
            return bool(was_set)
        except Exception as e:
            logger.warning(f"Dedup redis unavailable, accepting message: {e}")
            return True

    async def close(self) -> None:
        await self.redis_client.aclose()

    def stats(self) -> dict:
        return {"backend": "redis", "ttl_seconds": self.ttl_seconds}


def build_deduplicator(settings: Settings, redis_client=None) -> Deduplicator:
    if settings.dedup_backend == "redis":
        if redis_client is None:
            redis_client = redis_async.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=settings.redis_socket_timeout_seconds,
                socket_timeout=settings.redis_socket_timeout_seconds,
            )
        return RedisDeduplicator(redis_client, settings.dedup_ttl_seconds)
    return InMemoryDeduplicator(settings.dedup_ttl_seconds)


def build_message_key(message_id: Optional[str], sender: Optional[str], timestamp: Optional[int]) -> Optional[str]:
    """Receipt key for a delivery; falls back to sender+timestamp when the id is missing."""
    if message_id:
        return message_id.strip()
    if sender and timestamp is not None:
        return f"{sender}:{timestamp}"
    return None
