"""Bounded waiting helpers shared by everything that waits on the provider."""

import asyncio
import time
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from deskrelay.logging_config import get_logger
from deskrelay.services.errors import PollTimeoutError

logger = get_logger("polling")

T = TypeVar("T")


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    done: Callable[[T], bool],
    *,
    interval_seconds: float,
    timeout_seconds: float,
    max_attempts: Optional[int] = None,
    description: str = "operation",
    sleep_func=asyncio.sleep,
    clock=time.monotonic,
) -> T:
    """Call `fetch` every `interval_seconds` until `done(value)` holds.

    Raises PollTimeoutError once `timeout_seconds` elapsed or `max_attempts`
    fetches were made without the predicate becoming true.
    """
    if max_attempts is None and interval_seconds > 0:
        max_attempts = max(1, int(timeout_seconds / interval_seconds))
    deadline = clock() + timeout_seconds
    attempts = 0

    while True:
        await sleep_func(interval_seconds)
        value = await fetch()
        attempts += 1
        if done(value):
            return value
        if (max_attempts is not None and attempts >= max_attempts) or clock() >= deadline:
            logger.warning(
                "Poll budget exhausted",
                extra={"context": {"description": description, "attempts": attempts}},
            )
            raise PollTimeoutError(f"Timed out waiting for {description} after {attempts} checks")


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    retry_on: Tuple[Type[BaseException], ...],
    backoff_seconds: float = 0.0,
    on_retry: Optional[Callable[[BaseException, int], Awaitable[None]]] = None,
    sleep_func=asyncio.sleep,
) -> T:
    """Run `func` up to `attempts` times, retrying only on `retry_on` errors."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.info(
                "Retrying after transient failure",
                extra={"context": {"attempt": attempt, "error": str(exc)}},
            )
            if backoff_seconds:
                await sleep_func(backoff_seconds * attempt)
            if on_retry is not None:
                await on_retry(exc, attempt)
