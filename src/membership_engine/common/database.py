"""Async database manager for Membership-Engine (single-DB)."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from membership_engine.common.config import MembershipSettings, get_settings
from membership_engine.common.models import Base

# Import all model modules so Base.metadata is complete for create_all().
import membership_engine.accounts.models  # noqa: F401
import membership_engine.billing.models  # noqa: F401


def upsert_statement(session: AsyncSession, table: Any):
    """Return a dialect-specific INSERT supporting ``on_conflict_do_update``.

    Idempotent writes in the billing engine are keyed on stable provider ids,
    so they need a real database-level upsert rather than read-then-insert.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"Upserts are not supported on dialect {dialect!r}")


class DatabaseManager:
    """Manages a single async database engine."""

    def __init__(self, settings: MembershipSettings | None = None):
        self._settings = settings or get_settings()
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        url = self._settings.db_url
        kwargs: dict[str, Any] = {"echo": False}
        if url.startswith("sqlite"):
            # Bounded wait on the SQLite write lock.
            kwargs["connect_args"] = {"timeout": 15}
        else:
            kwargs["pool_pre_ping"] = True
            kwargs["pool_timeout"] = 15
        self.engine = create_async_engine(url, **kwargs)
        self._session_factory = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        if self.engine is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None
