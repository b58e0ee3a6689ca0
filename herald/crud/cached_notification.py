"""
Cached notification CRUD operations.
The cache is always written as a whole, inside one transaction.
"""
from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from herald.models.cached_notification import CachedNotification
from herald.models.store_state import StoreState
from herald.schemas.cached import LocalCachedNotification


class CRUDCachedNotification:

    async def list_ordered(self, db: AsyncSession) -> list[LocalCachedNotification]:
        result = await db.execute(
            select(CachedNotification).order_by(CachedNotification.position.asc())
        )
        return [self._to_schema(row) for row in result.scalars().all()]

    async def replace_all(
        self, db: AsyncSession, *, items: Sequence[LocalCachedNotification]
    ) -> None:
        """Swap the stored collection for ``items``, keeping their order."""
        await db.execute(delete(CachedNotification))
        db.add_all(
            [self._to_model(item, position) for position, item in enumerate(items)]
        )
        await db.flush()

    async def get_state(self, db: AsyncSession, *, key: str) -> str | None:
        row = await db.get(StoreState, key)
        return row.value if row is not None else None

    async def set_state(self, db: AsyncSession, *, key: str, value: str) -> None:
        row = await db.get(StoreState, key)
        if row is None:
            db.add(StoreState(key=key, value=value))
        else:
            row.value = value
        await db.flush()

    @staticmethod
    def _to_model(item: LocalCachedNotification, position: int) -> CachedNotification:
        return CachedNotification(
            id=item.id,
            position=position,
            title=item.title,
            message=item.message,
            type=item.type,
            category=item.category,
            priority=item.priority,
            is_read=item.is_read,
            read_at=item.read_at,
            created_at=item.created_at,
            is_fallback=item.is_fallback,
            source=item.source,
            meta=item.metadata or None,
        )

    @staticmethod
    def _to_schema(row: CachedNotification) -> LocalCachedNotification:
        return LocalCachedNotification(
            id=row.id,
            title=row.title,
            message=row.message,
            type=row.type,
            category=row.category,
            priority=row.priority,
            is_read=row.is_read,
            read_at=row.read_at,
            created_at=row.created_at,
            is_fallback=row.is_fallback,
            source=row.source,
            metadata=row.meta or {},
        )


crud_cached_notification = CRUDCachedNotification()
