"""
Local notification store.
A bounded, newest-first, self-pruning cache of notifications used as the
offline fallback and as the source for local statistics and export.

Every mutation builds the next collection, persists it through the storage
backend and only then swaps it in, all under one lock. A failed save leaves
the store exactly as it was, and an append racing a prune is serialized
behind it rather than lost.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from herald.core.config import settings
from herald.core.exceptions import ImportValidationError
from herald.schemas.cached import (
    EXPORT_FORMAT_VERSION,
    ExportPayload,
    LocalCachedNotification,
    LocalNotificationCreate,
    NotificationStats,
)
from herald.services.storage import MemoryStorage, NotificationStorage
from herald.utils.datetime import Clock, one_month_before, utc_now

logger = logging.getLogger(__name__)


class LocalNotificationStore:

    def __init__(
        self,
        storage: NotificationStorage | None = None,
        *,
        max_notifications: int | None = None,
        clock: Clock = utc_now,
        local_id_prefix: str | None = None,
    ) -> None:
        self._storage: NotificationStorage = storage or MemoryStorage()
        self.max_notifications = max_notifications or settings.LOCAL_STORE_MAX_NOTIFICATIONS
        self._clock = clock
        self._local_id_prefix = local_id_prefix or settings.LOCAL_ID_PREFIX
        self._items: list[LocalCachedNotification] = []
        self._loaded = False
        self._lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def open(self) -> None:
        """Load the persisted collection. Safe to call more than once."""
        async with self._lock:
            await self._ensure_loaded()

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._items = await self._storage.load()
            self._loaded = True

    async def _commit(self, items: list[LocalCachedNotification]) -> None:
        await self._storage.save(items)
        self._items = items

    def new_local_id(self) -> str:
        return f"{self._local_id_prefix}{uuid.uuid4().hex}"

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def all(self) -> list[LocalCachedNotification]:
        async with self._lock:
            await self._ensure_loaded()
            return list(self._items)

    async def get(self, notification_id: str) -> LocalCachedNotification | None:
        async with self._lock:
            await self._ensure_loaded()
            return self._find(notification_id)

    async def unread_count(self) -> int:
        items = await self.all()
        return sum(1 for item in items if not item.is_read)

    async def by_type(self, type: str) -> list[LocalCachedNotification]:
        return [item for item in await self.all() if item.type == type]

    async def by_category(self, category: str) -> list[LocalCachedNotification]:
        return [item for item in await self.all() if item.category == category]

    async def recent(self, limit: int = 10) -> list[LocalCachedNotification]:
        return (await self.all())[:limit]

    async def stats(self) -> NotificationStats:
        return NotificationStats.from_items(await self.all())

    def _find(self, notification_id: str) -> LocalCachedNotification | None:
        for item in self._items:
            if item.id == notification_id:
                return item
        return None

    # ── Writes ────────────────────────────────────────────────────────────────

    async def append(
        self, notification: LocalNotificationCreate | Mapping[str, Any]
    ) -> LocalCachedNotification:
        """Add a new unread entry at the head, then enforce the size bound."""
        if not isinstance(notification, LocalNotificationCreate):
            notification = LocalNotificationCreate.model_validate(notification)
        async with self._lock:
            await self._ensure_loaded()
            entry = LocalCachedNotification(
                id=self.new_local_id(),
                created_at=self._clock(),
                **notification.model_dump(),
            )
            await self._commit([entry, *self._items][: self.max_notifications])
        logger.debug("Local notification added: %s", entry.title)
        return entry

    async def upsert_many(self, items: Iterable[LocalCachedNotification]) -> None:
        """
        Merge server-side entries into the cache by id.
        A cached entry that is already read stays read.
        """
        incoming = list(items)
        if not incoming:
            return
        async with self._lock:
            await self._ensure_loaded()
            merged: dict[str, LocalCachedNotification] = {item.id: item for item in self._items}
            for item in incoming:
                existing = merged.get(item.id)
                if existing is not None and existing.is_read and not item.is_read:
                    item = item.model_copy(
                        update={"is_read": True, "read_at": existing.read_at}
                    )
                merged[item.id] = item
            ordered = sorted(merged.values(), key=lambda n: n.created_at, reverse=True)
            await self._commit(ordered[: self.max_notifications])

    async def mark_read(self, notification_id: str) -> LocalCachedNotification | None:
        """
        Mark one entry read. ``read_at`` is set on the first call only.
        Returns the entry, or None when the id is unknown.
        """
        async with self._lock:
            await self._ensure_loaded()
            item = self._find(notification_id)
            if item is None:
                return None
            if item.is_read:
                return item
            updated = item.model_copy(update={"is_read": True, "read_at": self._clock()})
            await self._commit(
                [updated if n.id == notification_id else n for n in self._items]
            )
            return updated

    async def mark_all_read(self) -> int:
        async with self._lock:
            await self._ensure_loaded()
            now = self._clock()
            changed = 0
            items: list[LocalCachedNotification] = []
            for item in self._items:
                if item.is_read:
                    items.append(item)
                    continue
                items.append(item.model_copy(update={"is_read": True, "read_at": now}))
                changed += 1
            if changed:
                await self._commit(items)
            return changed

    async def delete(self, notification_id: str) -> bool:
        async with self._lock:
            await self._ensure_loaded()
            remaining = [item for item in self._items if item.id != notification_id]
            if len(remaining) == len(self._items):
                return False
            await self._commit(remaining)
            return True

    async def clear(self) -> None:
        async with self._lock:
            await self._commit([])
            self._loaded = True
        logger.info("Local notification store cleared")

    # ── Export / import ───────────────────────────────────────────────────────

    async def export(self) -> str:
        items = await self.all()
        payload = ExportPayload(
            notifications=items,
            exported_at=self._clock(),
            version=EXPORT_FORMAT_VERSION,
        )
        return json.dumps(payload.model_dump(mode="json", by_alias=True), indent=2)

    async def import_(self, payload: str | bytes | Mapping[str, Any]) -> int:
        """
        Replace the collection with an exported payload and return the number
        of entries kept after the size bound.
        The payload is validated in full first; a malformed payload raises
        ImportValidationError and the store is left untouched.
        """
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError as exc:
                raise ImportValidationError(f"Import payload is not valid JSON: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise ImportValidationError("Import payload must be a JSON object")
        if "notifications" not in payload:
            raise ImportValidationError("Import payload has no 'notifications' field")
        try:
            parsed = ExportPayload.model_validate(payload)
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise ImportValidationError(
                f"Invalid import payload at '{location}': {first['msg']}"
            ) from exc

        kept = parsed.notifications[: self.max_notifications]
        async with self._lock:
            await self._commit(kept)
            self._loaded = True
        logger.info(
            "Imported %d local notifications (%d in payload)", len(kept), len(parsed.notifications)
        )
        return len(kept)

    # ── Retention ─────────────────────────────────────────────────────────────

    async def prune(self) -> int:
        """
        Drop entries older than one month and keep only the newest
        ``max_notifications``. Returns the number of entries removed.
        """
        async with self._lock:
            await self._ensure_loaded()
            return await self._prune_locked()

    async def _prune_locked(self) -> int:
        cutoff = one_month_before(self._clock())
        recent = [item for item in self._items if item.created_at > cutoff]
        kept = sorted(recent, key=lambda n: n.created_at, reverse=True)[: self.max_notifications]
        before = len(self._items)
        if kept != self._items:
            await self._commit(kept)
        logger.info("Local notification prune: %d -> %d", before, len(kept))
        return before - len(kept)

    async def check_and_prune(self) -> bool:
        """
        Prune when the last prune is more than a month old or never happened.
        Returns True when a prune ran.
        """
        async with self._lock:
            await self._ensure_loaded()
            now = self._clock()
            last = await self._storage.get_last_prune()
            if last is not None and last >= one_month_before(now):
                return False
            await self._prune_locked()
            await self._storage.set_last_prune(now)
            return True
