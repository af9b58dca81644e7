"""
Tests for grant stores and the session context.
"""

from unittest.mock import AsyncMock

import pytest

from storefront.services.sessions import (
    SESSION_ID_KEY,
    InMemoryGrantStore,
    RedisGrantStore,
    SessionContext,
)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestInMemoryGrantStore:
    """Tests for the process-local grant store."""

    @pytest.mark.asyncio
    async def test_set_get_take(self):
        store = InMemoryGrantStore(ttl_seconds=60)

        await store.set("sid", "A")

        assert await store.get("sid") == "A"
        assert await store.take("sid") == "A"
        assert await store.take("sid") is None
        assert await store.get("sid") is None

    @pytest.mark.asyncio
    async def test_set_overwrites(self):
        """At most one grant per session: the latest wins."""
        store = InMemoryGrantStore(ttl_seconds=60)

        await store.set("sid", "A")
        await store.set("sid", "B")

        assert await store.take("sid") == "B"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_expired_grant_cannot_be_taken(self):
        clock = FakeClock()
        store = InMemoryGrantStore(ttl_seconds=60, clock=clock)
        await store.set("sid", "A")

        clock.now = 60

        assert await store.take("sid") is None

    @pytest.mark.asyncio
    async def test_expired_grants_purged_on_set(self):
        clock = FakeClock()
        store = InMemoryGrantStore(ttl_seconds=60, clock=clock)
        await store.set("old", "A")
        clock.now = 120

        await store.set("new", "B")

        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_capacity_evicts_oldest_grant(self):
        store = InMemoryGrantStore(ttl_seconds=60, max_entries=2)
        await store.set("first", "A")
        await store.set("second", "B")

        await store.set("third", "C")

        assert len(store) == 2
        assert await store.get("first") is None
        assert await store.get("second") == "B"
        assert await store.get("third") == "C"

    @pytest.mark.asyncio
    async def test_replacing_grant_refreshes_its_age(self):
        store = InMemoryGrantStore(ttl_seconds=60, max_entries=2)
        await store.set("first", "A")
        await store.set("second", "B")
        await store.set("first", "C")

        await store.set("third", "D")

        assert await store.get("first") == "C"
        assert await store.get("second") is None


class TestRedisGrantStore:
    """Tests for the Redis grant store against a mocked client."""

    @pytest.mark.asyncio
    async def test_set_uses_ttl_and_prefix(self):
        client = AsyncMock()
        store = RedisGrantStore(client, ttl_seconds=300)

        await store.set("sid", "A")

        client.set.assert_awaited_once_with("storefront:grant:sid", "A", ex=300)

    @pytest.mark.asyncio
    async def test_take_uses_getdel(self):
        """Redemption is a single atomic GETDEL."""
        client = AsyncMock()
        client.getdel.return_value = b"A"
        store = RedisGrantStore(client, ttl_seconds=300)

        assert await store.take("sid") == "A"
        client.getdel.assert_awaited_once_with("storefront:grant:sid")

    @pytest.mark.asyncio
    async def test_take_missing_is_none(self):
        client = AsyncMock()
        client.getdel.return_value = None
        store = RedisGrantStore(client, ttl_seconds=300)

        assert await store.take("sid") is None

    @pytest.mark.asyncio
    async def test_delete_and_close(self):
        client = AsyncMock()
        store = RedisGrantStore(client, ttl_seconds=300)

        await store.delete("sid")
        await store.close()

        client.delete.assert_awaited_once_with("storefront:grant:sid")
        client.aclose.assert_awaited_once()


class TestSessionContext:
    """Tests for SessionContext."""

    @pytest.mark.asyncio
    async def test_no_session_id_means_no_grant(self, grant_store: InMemoryGrantStore):
        session = SessionContext(grant_store, {})

        assert await session.get_grant() is None
        assert await session.take_grant() is None

    @pytest.mark.asyncio
    async def test_set_grant_assigns_opaque_session_id(self, grant_store: InMemoryGrantStore):
        """Only an opaque id is written to the cookie session."""
        cookie: dict = {}
        session = SessionContext(grant_store, cookie)

        await session.set_grant("A")

        assert set(cookie) == {SESSION_ID_KEY}
        assert cookie[SESSION_ID_KEY] != "A"
        assert await session.get_grant() == "A"

    @pytest.mark.asyncio
    async def test_session_id_is_stable(self, grant_store: InMemoryGrantStore):
        cookie: dict = {}
        session = SessionContext(grant_store, cookie)

        await session.set_grant("A")
        first = cookie[SESSION_ID_KEY]
        await session.set_grant("B")

        assert cookie[SESSION_ID_KEY] == first
        assert await session.get_grant() == "B"

    @pytest.mark.asyncio
    async def test_take_grant_is_single_use(self, session: SessionContext):
        await session.set_grant("A")

        assert await session.take_grant() == "A"
        assert await session.take_grant() is None

    @pytest.mark.asyncio
    async def test_clear_grant(self, session: SessionContext):
        await session.set_grant("A")
        await session.clear_grant()
        assert await session.get_grant() is None

    @pytest.mark.asyncio
    async def test_replayed_cookie_does_not_restore_grant(
        self, grant_store: InMemoryGrantStore
    ):
        """A copy of the cookie taken before redemption is worthless afterwards."""
        cookie: dict = {}
        session = SessionContext(grant_store, cookie)
        await session.set_grant("A")
        replayed = SessionContext(grant_store, dict(cookie))

        assert await session.take_grant() == "A"
        assert await replayed.take_grant() is None
