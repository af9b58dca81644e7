"""
Database Session Management - Async SQLAlchemy engine and session factory.

SQLite files get their parent directory created before the engine is
first used.
"""

from pathlib import Path
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storefront.db.models import Base


def sqlite_database_path(database_url: str) -> Path | None:
    """Return the on-disk path of a file-backed SQLite URL, else None."""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return None
    if not url.database or url.database == ":memory:":
        return None
    return Path(url.database)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for the ledger database.

    Pool sizing options only apply to server databases; SQLite uses the
    driver's default pool.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if make_url(database_url).get_backend_name() != "sqlite":
        kwargs.update(pool_size=5, max_overflow=5, pool_pre_ping=True)
    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine, database_url: str) -> None:
    """
    Create missing tables, and the SQLite parent directory when needed.

    Existing tables are left untouched.

    Raises:
        OSError: If the database directory cannot be created
        SQLAlchemyError: If the database cannot be opened
    """
    db_path = sqlite_database_path(database_url)
    if db_path is not None:
        db_path.parent.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
