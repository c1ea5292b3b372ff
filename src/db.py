"""Storage collaborator: async SQLAlchemy engine with a liveness probe.

Only the health reporter depends on this module.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)


class Database:
    """Lazily connected database handle.

    Args:
        url: SQLAlchemy async URL, e.g. ``postgresql+asyncpg://...``.
    """

    def __init__(self, url: str) -> None:
        if not url:
            raise ValueError("Database URL is required")
        self._url = url
        self._engine: AsyncEngine | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self._url, pool_pre_ping=True)
        return self._engine

    async def ping(self) -> float:
        """Run a trivial query and return its latency in milliseconds."""
        start = time.monotonic()
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return round((time.monotonic() - start) * 1000, 2)

    async def dispose(self) -> None:
        """Release pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info("Database engine disposed")
