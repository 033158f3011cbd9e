"""Realtime event sink for connected operator UIs.

Publishing is fire-and-forget: it never blocks the caller, never raises and
is never retried.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from deskrelay.logging_config import get_logger

logger = get_logger("notifier")


class EventPublisher(ABC):
    @abstractmethod
    def publish(self, event: str, payload: dict) -> None:
        pass

    async def close(self) -> None:
        return None


class LogEventPublisher(EventPublisher):
    """Writes events to the log only. Used when no sink URL is configured."""

    def publish(self, event: str, payload: dict) -> None:
        logger.info(f"Event {event}", extra={"context": {"event": event, "payload": payload}})


class HttpEventPublisher(EventPublisher):
    """POSTs `{event, payload}` to a webhook, one background task per event."""

    def __init__(self, url: str, timeout_seconds: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._tasks: set[asyncio.Task] = set()

    def publish(self, event: str, payload: dict) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running loop, dropping event {event}")
            return
        task = loop.create_task(self._send(event, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, event: str, payload: dict) -> None:
        try:
            response = await self._client.post(self.url, json={"event": event, "payload": payload})
            if response.status_code >= 400:
                logger.warning(f"Event sink rejected {event}: {response.status_code}")
        except Exception as e:
            logger.warning(f"Event sink unavailable for {event}: {e}")

    async def close(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._client.aclose()


def build_publisher(events_webhook_url: Optional[str]) -> EventPublisher:
    if events_webhook_url:
        return HttpEventPublisher(events_webhook_url)
    return LogEventPublisher()
