import logging
import time
from threading import Lock

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from pathgate.models.base import Base

logger = logging.getLogger(__name__)

SLOW_QUERY_SECONDS = 0.5

_cursor_starts: dict[int, float] = {}
_cursor_lock = Lock()


def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    with _cursor_lock:
        _cursor_starts[id(cursor)] = time.perf_counter()


def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    with _cursor_lock:
        start = _cursor_starts.pop(id(cursor), None)
    if start is not None:
        elapsed = time.perf_counter() - start
        if elapsed >= SLOW_QUERY_SECONDS:
            logger.warning("Slow query (%.3fs): %s", elapsed, statement.splitlines()[0][:120])


def create_session_factory(database_url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(database_url, pool_pre_ping=True)
    event.listen(engine.sync_engine, "before_cursor_execute", _before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", _after_cursor_execute)
    return engine, async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def initialize_database(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured (%s tables)", len(Base.metadata.tables))
