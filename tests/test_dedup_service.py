import asyncio
from unittest.mock import AsyncMock

from deskrelay.config import Settings
from deskrelay.services.dedup_service import (
    InMemoryDeduplicator,
    RedisDeduplicator,
    build_deduplicator,
    build_message_key,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestInMemoryDeduplicator:
    def test_first_claim_wins(self):
        dedup = InMemoryDeduplicator(ttl_seconds=300)

        async def scenario():
            return await dedup.claim("wamid.1"), await dedup.claim("wamid.1")

        first, second = asyncio.run(scenario())
        assert first is True
        assert second is False

    def test_receipt_expires_after_ttl(self):
        clock = FakeClock()
        dedup = InMemoryDeduplicator(ttl_seconds=300, clock=clock)

        async def scenario():
            await dedup.mark_seen("wamid.1")
            clock.now += 299
            inside = await dedup.seen("wamid.1")
            clock.now += 2
            outside = await dedup.seen("wamid.1")
            return inside, outside

        inside, outside = asyncio.run(scenario())
        assert inside is True
        assert outside is False

    def test_purge_drops_only_expired(self):
        clock = FakeClock()
        dedup = InMemoryDeduplicator(ttl_seconds=10, clock=clock)

        async def scenario():
            await dedup.mark_seen("old")
            clock.now += 8
            await dedup.mark_seen("new")
            clock.now += 5
            return await dedup.purge_expired()

        assert asyncio.run(scenario()) == 1
        assert dedup.stats()["receipts"] == 1

    def test_concurrent_claims_accept_once(self):
        dedup = InMemoryDeduplicator(ttl_seconds=300)

        async def scenario():
            return await asyncio.gather(*(dedup.claim("wamid.same") for _ in range(10)))

        results = asyncio.run(scenario())
        assert results.count(True) == 1


class TestRedisDeduplicator:
    def test_claim_uses_set_nx_with_ttl(self):
        client = AsyncMock()
        client.set.return_value = True
        dedup = RedisDeduplicator(client, ttl_seconds=300)

        assert asyncio.run(dedup.claim("wamid.1")) is True
        client.set.assert_awaited_once_with("deskrelay:dedup:wamid.1", "1", px=300000, nx=True)

    def test_existing_key_is_duplicate(self):
        client = AsyncMock()
        client.set.return_value = None
        dedup = RedisDeduplicator(client, ttl_seconds=300)

        assert asyncio.run(dedup.claim("wamid.1")) is False

    def test_redis_failure_accepts(self):
        client = AsyncMock()
        client.set.side_effect = ConnectionError("redis down")
        dedup = RedisDeduplicator(client, ttl_seconds=300)

        assert asyncio.run(dedup.claim("wamid.1")) is True


class TestBuildDeduplicator:
    def test_memory_by_default(self):
        dedup = build_deduplicator(Settings(database_url="sqlite://"))
        assert isinstance(dedup, InMemoryDeduplicator)
        assert dedup.ttl_seconds == 300

    def test_redis_backend(self):
        dedup = build_deduplicator(Settings(database_url="sqlite://", dedup_backend="redis"), redis_client=AsyncMock())
        assert isinstance(dedup, RedisDeduplicator)


class TestBuildMessageKey:
    def test_prefers_message_id(self):
        assert build_message_key(" wamid.1 ", "+15550001", 1700000000) == "wamid.1"

    def test_falls_back_to_sender_and_timestamp(self):
        assert build_message_key(None, "+15550001", 1700000000) == "+15550001:1700000000"

    def test_no_key_without_id_or_timestamp(self):
        assert build_message_key(None, "+15550001", None) is None
