"""
Session Grants - Server-side storage for single-use download grants.

The signed session cookie carries only an opaque session id. The grant
itself (the authorized product id) lives in a GrantStore, so a replayed
cookie cannot resurrect a grant that was already redeemed.
"""

import secrets
import time
from collections.abc import Callable, MutableMapping
from typing import Any, Protocol

from redis.asyncio import Redis
from structlog import get_logger

logger = get_logger(__name__)

SESSION_ID_KEY = "sid"


class GrantStore(Protocol):
    """Storage for at most one grant per session id."""

    async def get(self, session_id: str) -> str | None:
        """Return the live grant for a session, if any."""
        ...

    async def set(self, session_id: str, product_id: str) -> None:
        """Store a grant, replacing any previous one."""
        ...

    async def delete(self, session_id: str) -> None:
        """Drop the grant for a session."""
        ...

    async def take(self, session_id: str) -> str | None:
        """Atomically read and remove the grant for a session."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


class InMemoryGrantStore:
    """
    Process-local grant store for single-worker deployments.

    Operations never yield to the event loop, so take() is atomic with
    respect to other requests in the same process. At most max_entries
    grants are held; once full, the oldest grant is evicted. Use the
    redis backend when running more than one worker.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._grants: dict[str, tuple[str, float]] = {}

    async def get(self, session_id: str) -> str | None:
        entry = self._grants.get(session_id)
        if entry is None:
            return None
        product_id, expires_at = entry
        if self._clock() >= expires_at:
            self._grants.pop(session_id, None)
            return None
        return product_id

    async def set(self, session_id: str, product_id: str) -> None:
        self._purge_expired()
        # Re-insert so dict order stays oldest-first
        self._grants.pop(session_id, None)
        while len(self._grants) >= self.max_entries:
            evicted = next(iter(self._grants))
            del self._grants[evicted]
            logger.warning("download_grant_evicted", max_entries=self.max_entries)
        self._grants[session_id] = (product_id, self._clock() + self.ttl_seconds)

    async def delete(self, session_id: str) -> None:
        self._grants.pop(session_id, None)

    async def take(self, session_id: str) -> str | None:
        entry = self._grants.pop(session_id, None)
        if entry is None:
            return None
        product_id, expires_at = entry
        if self._clock() >= expires_at:
            return None
        return product_id

    async def close(self) -> None:
        self._grants.clear()

    def __len__(self) -> int:
        return len(self._grants)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [sid for sid, (_, expires_at) in self._grants.items() if now >= expires_at]
        for sid in expired:
            del self._grants[sid]


class RedisGrantStore:
    """
    Grant store shared by every worker process through Redis.

    take() uses GETDEL (Redis 6.2+) so two concurrent redemptions of the
    same grant cannot both succeed.
    """

    def __init__(
        self,
        client: Redis,
        ttl_seconds: int,
        key_prefix: str = "storefront:grant:",
    ) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int) -> "RedisGrantStore":
        """Create a store with its own connection pool."""
        return cls(Redis.from_url(redis_url, decode_responses=True), ttl_seconds)

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    async def get(self, session_id: str) -> str | None:
        value = await self.client.get(self._key(session_id))
        return _as_text(value)

    async def set(self, session_id: str, product_id: str) -> None:
        await self.client.set(self._key(session_id), product_id, ex=self.ttl_seconds)

    async def delete(self, session_id: str) -> None:
        await self.client.delete(self._key(session_id))

    async def take(self, session_id: str) -> str | None:
        value = await self.client.getdel(self._key(session_id))
        return _as_text(value)

    async def close(self) -> None:
        await self.client.aclose()


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class SessionContext:
    """
    Narrow view of one client session: its download grant and nothing else.

    Args:
        store: Backend holding grants
        session: The cookie-backed session mapping (request.session)
    """

    def __init__(self, store: GrantStore, session: MutableMapping[str, Any]) -> None:
        self._store = store
        self._session = session

    @property
    def session_id(self) -> str | None:
        value = self._session.get(SESSION_ID_KEY)
        return value if isinstance(value, str) and value else None

    def _ensure_session_id(self) -> str:
        session_id = self.session_id
        if session_id is None:
            session_id = secrets.token_urlsafe(32)
            self._session[SESSION_ID_KEY] = session_id
        return session_id

    async def get_grant(self) -> str | None:
        """Product id this session may download, if any."""
        session_id = self.session_id
        if session_id is None:
            return None
        return await self._store.get(session_id)

    async def set_grant(self, product_id: str) -> None:
        """Authorize one download of product_id, replacing any previous grant."""
        session_id = self._ensure_session_id()
        await self._store.set(session_id, product_id)
        logger.info("download_grant_issued", product_id=product_id)

    async def clear_grant(self) -> None:
        session_id = self.session_id
        if session_id is not None:
            await self._store.delete(session_id)

    async def take_grant(self) -> str | None:
        """Remove and return the grant in one step."""
        session_id = self.session_id
        if session_id is None:
            return None
        return await self._store.take(session_id)
