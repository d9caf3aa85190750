import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .errors import Unavailable
from .models import Base

logger = logging.getLogger(__name__)


class Database:
    """Process-scoped engine and session factory with explicit lifecycle."""

    def __init__(self, url: str, *, pool_size: int = 10, echo: bool = False):
        self.url = url
        self.pool_size = pool_size
        self.echo = echo
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise Unavailable()
        return self._engine

    async def init(self, *, create_tables: bool = False) -> None:
        if self._engine is not None:
            return
        kwargs: dict = {"echo": self.echo, "pool_pre_ping": True}
        if not self.url.startswith("sqlite"):
            kwargs.update(
                pool_size=self.pool_size,
                max_overflow=self.pool_size,
                pool_timeout=30,
                pool_recycle=1800,
            )
        self._engine = create_async_engine(self.url, **kwargs)
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)  # important
        if create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Database pool initialised (%s)", self._engine.url.render_as_string(hide_password=True))

    async def shutdown(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.info("Database pool closed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise Unavailable()
        async with self._sessionmaker() as session:
            yield session
