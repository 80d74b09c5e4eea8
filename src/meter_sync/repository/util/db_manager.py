import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from meter_sync.repository.model.reading_model import Base

logger = logging.getLogger("SQLiteQueueDBManager")


class SQLiteQueueDBManager:
    """Owns the async SQLite engine and session factory of the reading queue."""

    def __init__(self, db_path: str, echo: bool = False):
        self.db_path = db_path
        self.echo = echo

        db_file = Path(db_path)
        try:
            db_file.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            logger.error(f"[SQLite] Cannot create directory {db_file.parent}: {e}")
            raise

        self.async_engine: AsyncEngine = create_async_engine(
            f"sqlite+aiosqlite:///{db_path}",
            echo=echo,
            pool_pre_ping=True,
        )

        @event.listens_for(self.async_engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, _):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()
            logger.debug("[SQLite] PRAGMA settings applied")

        self._session_factory = async_sessionmaker(
            self.async_engine,
            expire_on_commit=False,
            autoflush=False,
            autocommit=False,
        )

        logger.info(f"[SQLite] Queue engine initialized at {db_path}")

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            yield session

    async def init_database(self) -> None:
        """Create all tables if not exist."""
        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("[SQLite] Schema initialized")

    def get_file_size(self) -> int:
        p = Path(self.db_path)
        return p.stat().st_size if p.exists() else 0

    async def close_engine(self):
        logger.info("[SQLite] Closing async engine")
        await self.async_engine.dispose()
