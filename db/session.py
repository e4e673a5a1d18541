from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bot.config import BotConfig
from db.models import Base


log = logging.getLogger("qutie.db")

MAX_REDACT_COLLECTION_ITEMS = 20


def _redact_sql_parameters(parameters: object, *, _depth: int = 0) -> object:
    # State payloads carry user ids; SQL debug logs only ever show value shapes.
    if _depth >= 4:
        return "<max-depth>"
    if parameters is None:
        return None
    if isinstance(parameters, dict):
        items = list(parameters.items())
        out: dict[str, object] = {
            str(key): _redact_sql_parameters(value, _depth=_depth + 1)
            for key, value in items[:MAX_REDACT_COLLECTION_ITEMS]
        }
        if len(items) > MAX_REDACT_COLLECTION_ITEMS:
            out["..."] = f"+{len(items) - MAX_REDACT_COLLECTION_ITEMS} more"
        return out
    if isinstance(parameters, (list, tuple)):
        redacted = [
            _redact_sql_parameters(value, _depth=_depth + 1)
            for value in list(parameters)[:MAX_REDACT_COLLECTION_ITEMS]
        ]
        if len(parameters) > MAX_REDACT_COLLECTION_ITEMS:
            redacted.append(f"... +{len(parameters) - MAX_REDACT_COLLECTION_ITEMS} more")
        return redacted
    return f"<{parameters.__class__.__name__}>"


class SessionManager:
    def __init__(self, config: BotConfig):
        self._engine = create_async_engine(
            config.database_url,
            echo=config.db_echo,
            pool_pre_ping=True,
        )
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        self._install_sql_logging()

    @property
    def engine(self):
        return self._engine

    def _install_sql_logging(self) -> None:
        @event.listens_for(self._engine.sync_engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if not log.isEnabledFor(logging.DEBUG):
                return
            context._query_started_at = time.perf_counter()
            log.debug("[to-db] SQL=%s params=%s", statement, _redact_sql_parameters(parameters))

        @event.listens_for(self._engine.sync_engine, "after_cursor_execute")
        def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if not log.isEnabledFor(logging.DEBUG):
                return
            started_at = getattr(context, "_query_started_at", None)
            if isinstance(started_at, (int, float)):
                elapsed_ms = (time.perf_counter() - started_at) * 1000
                log.debug("[from-db] rows=%s took=%.2fms", cursor.rowcount, elapsed_ms)

    async def create_schema(self) -> None:
        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def dispose(self) -> None:
        await self._engine.dispose()
