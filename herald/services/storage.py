"""
Persistence backends for the local notification store.
The store only ever loads or saves the whole collection, so a backend is a
small load/save interface plus the last-prune bookkeeping.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from herald.crud.cached_notification import crud_cached_notification
from herald.db.session import (
    create_session_factory,
    create_store_engine,
    init_models,
    session_scope,
)
from herald.schemas.cached import LocalCachedNotification
from herald.utils.datetime import ensure_utc

logger = logging.getLogger(__name__)

LAST_PRUNE_KEY = "last_prune_at"


class NotificationStorage(Protocol):
    async def load(self) -> list[LocalCachedNotification]: ...

    async def save(self, items: Sequence[LocalCachedNotification]) -> None: ...

    async def get_last_prune(self) -> datetime | None: ...

    async def set_last_prune(self, when: datetime) -> None: ...


class MemoryStorage:
    """Process-local backend; nothing survives a restart."""

    def __init__(self, items: Sequence[LocalCachedNotification] | None = None) -> None:
        self._items: list[LocalCachedNotification] = list(items or [])
        self._last_prune: datetime | None = None

    async def load(self) -> list[LocalCachedNotification]:
        return list(self._items)

    async def save(self, items: Sequence[LocalCachedNotification]) -> None:
        self._items = list(items)

    async def get_last_prune(self) -> datetime | None:
        return self._last_prune

    async def set_last_prune(self, when: datetime) -> None:
        self._last_prune = when


class SqlStorage:
    """Durable backend on SQLAlchemy async (SQLite via aiosqlite by default)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    async def connect(cls, url: str | None = None) -> SqlStorage:
        engine = create_store_engine(url)
        await init_models(engine)
        logger.info("Local notification cache ready: %s", engine.url.render_as_string(hide_password=True))
        return cls(create_session_factory(engine), engine)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def load(self) -> list[LocalCachedNotification]:
        async with session_scope(self._session_factory) as db:
            return await crud_cached_notification.list_ordered(db)

    async def save(self, items: Sequence[LocalCachedNotification]) -> None:
        async with session_scope(self._session_factory) as db:
            await crud_cached_notification.replace_all(db, items=items)

    async def get_last_prune(self) -> datetime | None:
        async with session_scope(self._session_factory) as db:
            value = await crud_cached_notification.get_state(db, key=LAST_PRUNE_KEY)
        if value is None:
            return None
        return ensure_utc(datetime.fromisoformat(value))

    async def set_last_prune(self, when: datetime) -> None:
        async with session_scope(self._session_factory) as db:
            await crud_cached_notification.set_state(
                db, key=LAST_PRUNE_KEY, value=when.isoformat()
            )
