import asyncio

import pytest

from deskrelay.services.user_locks import UserLocks


class TestUserLocks:
    def test_lock_is_dropped_after_release(self):
        locks = UserLocks()

        async def scenario():
            async with locks.hold("+1555"):
                held = locks.locked("+1555")
            return held

        assert asyncio.run(scenario()) is True
        assert "+1555" not in locks
        assert len(locks) == 0

    def test_lock_survives_while_someone_waits(self):
        locks = UserLocks()
        order = []

        async def worker(name, delay):
            async with locks.hold("+1555"):
                order.append(f"{name}-in")
                await asyncio.sleep(delay)
                order.append(f"{name}-out")

        async def scenario():
            first = asyncio.create_task(worker("a", 0.05))
            await asyncio.sleep(0)
            second = asyncio.create_task(worker("b", 0.0))
            await asyncio.sleep(0.01)
            waiting = "+1555" in locks
            await asyncio.gather(first, second)
            return waiting

        assert asyncio.run(scenario()) is True
        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    def test_timed_out_waiter_leaves_no_entry_behind(self):
        locks = UserLocks()

        async def scenario():
            async with locks.hold("+1555"):
                with pytest.raises(asyncio.TimeoutError):
                    async with locks.hold("+1555", timeout=0.02):
                        pass
                return len(locks)

        assert asyncio.run(scenario()) == 1
        assert len(locks) == 0

    def test_users_do_not_share_a_lock(self):
        locks = UserLocks()

        async def scenario():
            async with locks.hold("+1555"):
                async with locks.hold("+1666", timeout=0.05):
                    return len(locks)

        assert asyncio.run(scenario()) == 2
