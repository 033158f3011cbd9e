import asyncio

import pytest

from deskrelay.services.errors import PollTimeoutError, RunConflictError
from deskrelay.services.polling import poll_until, retry_async


async def _no_sleep(_seconds):
    return None


class TestPollUntil:
    def test_returns_first_matching_value(self):
        values = iter(["queued", "in_progress", "completed"])

        async def fetch():
            return next(values)

        result = asyncio.run(
            poll_until(
                fetch,
                lambda status: status == "completed",
                interval_seconds=1.0,
                timeout_seconds=10.0,
                sleep_func=_no_sleep,
            )
        )
        assert result == "completed"

    def test_times_out_after_attempt_budget(self):
        calls = []

        async def fetch():
            calls.append(1)
            return "in_progress"

        with pytest.raises(PollTimeoutError):
            asyncio.run(
                poll_until(
                    fetch,
                    lambda status: status == "completed",
                    interval_seconds=1.0,
                    timeout_seconds=5.0,
                    sleep_func=_no_sleep,
                )
            )
        assert len(calls) == 5


class TestRetryAsync:
    def test_retries_listed_errors(self):
        attempts = []

        async def func():
            attempts.append(1)
            if len(attempts) < 3:
                raise RunConflictError("busy")
            return "ok"

        result = asyncio.run(
            retry_async(func, attempts=3, retry_on=(RunConflictError,), backoff_seconds=1.0, sleep_func=_no_sleep)
        )
        assert result == "ok"
        assert len(attempts) == 3

    def test_gives_up_after_attempts(self):
        async def func():
            raise RunConflictError("busy")

        with pytest.raises(RunConflictError):
            asyncio.run(retry_async(func, attempts=2, retry_on=(RunConflictError,), sleep_func=_no_sleep))

    def test_other_errors_propagate_immediately(self):
        attempts = []

        async def func():
            attempts.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            asyncio.run(retry_async(func, attempts=3, retry_on=(RunConflictError,), sleep_func=_no_sleep))
        assert len(attempts) == 1

    def test_on_retry_called_between_attempts(self):
        seen = []

        async def func():
            if not seen:
                raise RunConflictError("busy")
            return "ok"

        async def on_retry(exc, attempt):
            seen.append(attempt)

        asyncio.run(retry_async(func, attempts=2, retry_on=(RunConflictError,), on_retry=on_retry))
        assert seen == [1]
