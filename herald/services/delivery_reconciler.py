"""
Per-user read/mutate path over the delivery endpoint.

The view comes from one of three sources, tried in order:

* primary: the user's delivery rows, fully mutable
* degraded: the canonical notification feed, filtered on the client to
  targets it can evaluate, as read-only fallback entries
* local: the local notification store

Mutations always try the server first. When the server write fails the
change is applied to the local store so the view stays responsive offline,
and is replayed against the server on the next successful primary load.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from herald.clients.content_api import ContentApiClient
from herald.core.config import settings
from herald.core.exceptions import (
    ApiError,
    ItemNotFoundError,
    NotMutableError,
    TargetSpecError,
)
from herald.schemas.cached import (
    LocalCachedNotification,
    MutationOutcome,
    NotificationStats,
    ViewMode,
)
from herald.schemas.delivery import Delivery
from herald.schemas.notification import Notification
from herald.schemas.pagination import PaginatedResponse
from herald.services.local_store import LocalNotificationStore
from herald.utils.datetime import Clock, isoformat_z, utc_now

logger = logging.getLogger(__name__)

NotificationPage = PaginatedResponse[LocalCachedNotification]


class DeliveryReconciler:

    def __init__(
        self,
        api: ContentApiClient,
        store: LocalNotificationStore,
        user_id: int,
        *,
        page_size: int | None = None,
        clock: Clock = utc_now,
        fallback_id_prefix: str | None = None,
        local_id_prefix: str | None = None,
    ) -> None:
        self._api = api
        self._store = store
        self.user_id = user_id
        self._clock = clock
        self._fallback_prefix = fallback_id_prefix or settings.FALLBACK_ID_PREFIX
        self._local_prefix = local_id_prefix or settings.LOCAL_ID_PREFIX
        self._page = 1
        self._page_size = page_size or settings.DEFAULT_PAGE_SIZE
        self._mode: ViewMode = "local"
        self._view: list[LocalCachedNotification] = []
        self._item_locks: dict[str, asyncio.Lock] = {}
        self._lock_waiters: Counter[str] = Counter()
        # offline mutations not yet accepted by the server
        self._pending_reads: dict[str, datetime] = {}
        self._pending_deletes: set[str] = set()

    # ── View ──────────────────────────────────────────────────────────────────

    @property
    def mode(self) -> ViewMode:
        return self._mode

    @property
    def items(self) -> list[LocalCachedNotification]:
        return list(self._view)

    @property
    def unread_count(self) -> int:
        return sum(1 for item in self._view if not item.is_read)

    @property
    def pending_sync(self) -> int:
        """Offline mutations still waiting to be replayed against the server."""
        return len(self._pending_reads) + len(self._pending_deletes)

    def stats(self) -> NotificationStats:
        return NotificationStats.from_items(self._view)

    async def load(self, page: int = 1, page_size: int | None = None) -> NotificationPage:
        """
        Load one page of the user's notifications.
        Never raises for API failures; the returned ``mode`` says which
        source answered.
        """
        self._page = max(page, 1)
        if page_size is not None:
            self._page_size = page_size

        try:
            result = await self._load_primary()
        except ApiError as exc:
            logger.warning(
                "Delivery feed unavailable for user %s (%s); using notification feed",
                self.user_id,
                exc.detail,
            )
        else:
            return self._show(result)

        try:
            result = await self._load_degraded()
        except ApiError as exc:
            logger.warning(
                "Notification feed unavailable for user %s (%s); using local store",
                self.user_id,
                exc.detail,
            )
        else:
            return self._show(result)

        return self._show(await self._load_local())

    async def refresh(self) -> NotificationPage:
        return await self.load(self._page, self._page_size)

    def _show(self, page: NotificationPage) -> NotificationPage:
        self._mode = page.mode
        self._view = list(page.items)
        return page

    async def _load_primary(self) -> NotificationPage:
        response = await self._api.get(
            "/deliveries",
            {
                "user": self.user_id,
                "page": self._page,
                "pageSize": self._page_size,
                "sort": "createdAt:desc",
                "populate": "notification",
            },
        )
        fetched: list[LocalCachedNotification] = []
        for row in response.items():
            try:
                fetched.append(self._from_delivery(Delivery.model_validate(row)))
            except (ValidationError, TargetSpecError) as exc:
                logger.warning("Skipping malformed delivery %s: %s", row.get("id"), exc)

        items = await self._apply_pending(fetched)

        try:
            await self._store.upsert_many(items)
        except Exception:
            logger.warning("Could not mirror deliveries into the local store", exc_info=True)

        total = PaginatedResponse.total_from_meta(response.meta, len(fetched))
        return NotificationPage(
            items=items,
            total=max(total - (len(fetched) - len(items)), 0),
            page=self._page,
            size=self._page_size,
            mode="primary",
        )

    async def _apply_pending(
        self, fetched: list[LocalCachedNotification]
    ) -> list[LocalCachedNotification]:
        """
        Replay offline mutations against the freshly loaded rows and overlay
        them, so a read never reverts and a deleted item never comes back.
        Cached entries already read count as pending reads too.
        """
        try:
            cached = {item.id: item for item in await self._store.all()}
        except Exception:
            logger.warning("Could not read local read state", exc_info=True)
            cached = {}

        items: list[LocalCachedNotification] = []
        for item in fetched:
            if item.id in self._pending_deletes:
                deleted = await self._replay(
                    self._api.delete(f"/deliveries/{item.id}"), item.id, "delete"
                )
                if deleted:
                    self._pending_deletes.discard(item.id)
                continue

            local = cached.get(item.id)
            read_at = self._pending_reads.get(item.id)
            if read_at is None and local is not None and local.is_read:
                read_at = local.read_at or self._clock()
            if item.is_read or read_at is None:
                self._pending_reads.pop(item.id, None)
                items.append(item)
                continue

            body = {"isRead": True, "readAt": isoformat_z(read_at)}
            synced = await self._replay(
                self._api.put(f"/deliveries/{item.id}", body), item.id, "mark-read"
            )
            if synced:
                self._pending_reads.pop(item.id, None)
            else:
                self._pending_reads[item.id] = read_at
            items.append(self._read_copy(item, read_at))
        return items

    async def _replay(self, write: Awaitable[Any], item_id: str, action: str) -> bool:
        try:
            await asyncio.shield(write)
        except ApiError as exc:
            logger.warning("Pending %s of %s still not synced (%s)", action, item_id, exc.detail)
            return False
        logger.info("Replayed pending %s of %s", action, item_id)
        return True

    async def _load_degraded(self) -> NotificationPage:
        response = await self._api.get(
            "/notifications",
            {"page": self._page, "pageSize": self._page_size, "sort": "createdAt:desc"},
        )
        items: list[LocalCachedNotification] = []
        for row in response.items():
            try:
                notification = Notification.model_validate(row)
            except (ValidationError, TargetSpecError) as exc:
                logger.warning("Skipping malformed notification %s: %s", row.get("id"), exc)
                continue
            target = notification.target
            # unknown, active and role-based audiences cannot be decided here
            if target is not None and target.client_evaluable and target.includes(self.user_id):
                items.append(self._from_notification(notification))

        return NotificationPage(
            items=items, total=len(items), page=self._page, size=self._page_size, mode="degraded"
        )

    async def _load_local(self) -> NotificationPage:
        cached = await self._store.all()
        start = (self._page - 1) * self._page_size
        return NotificationPage(
            items=cached[start : start + self._page_size],
            total=len(cached),
            page=self._page,
            size=self._page_size,
            mode="local",
        )

    def _from_delivery(self, delivery: Delivery) -> LocalCachedNotification:
        notification = delivery.notification
        created_at = delivery.created_at or (notification.created_at if notification else None)
        data = {
            "id": str(delivery.id),
            "is_read": delivery.is_read,
            "read_at": delivery.read_at,
            "created_at": created_at or self._clock(),
            "source": "delivery",
            "metadata": {"notificationId": delivery.notification_id},
        }
        if notification is not None:
            data.update(
                title=notification.title,
                message=notification.message,
                type=notification.type,
                category=notification.category,
                priority=notification.priority,
            )
        return LocalCachedNotification.model_validate(data)

    def _from_notification(self, notification: Notification) -> LocalCachedNotification:
        return LocalCachedNotification(
            id=f"{self._fallback_prefix}{notification.id}",
            title=notification.title,
            message=notification.message,
            type=notification.type,
            category=notification.category,
            priority=notification.priority,
            created_at=notification.created_at or self._clock(),
            is_fallback=True,
            source="notification_feed",
            metadata={"notificationId": notification.id},
        )

    # ── Mutations ─────────────────────────────────────────────────────────────

    async def mark_read(self, item_id: str) -> MutationOutcome:
        return await self._mark_read(item_id, refresh=True)

    async def mark_all_read(self) -> dict[str, MutationOutcome]:
        """Mark every unread, mutable item of the view; refresh once at the end."""
        targets = [item.id for item in self._view if not item.is_read and not item.is_fallback]
        outcomes: dict[str, MutationOutcome] = {}
        for item_id in targets:
            outcomes[item_id] = await self._mark_read(item_id, refresh=False)
        if "synced" in outcomes.values():
            await self.refresh()
        return outcomes

    async def delete(self, item_id: str) -> MutationOutcome:
        async with self._item_lock(item_id):
            item = await self._mutable_item(item_id, "deleted")

            if item.id.startswith(self._local_prefix):
                await self._store.delete(item_id)
                self._drop(item_id)
                return "local_only"

            try:
                await asyncio.shield(self._api.delete(f"/deliveries/{item_id}"))
            except ApiError as exc:
                logger.warning("Delete of %s not synced (%s); applied locally", item_id, exc.detail)
                self._pending_deletes.add(item_id)
                self._pending_reads.pop(item_id, None)
                await self._store.delete(item_id)
                self._drop(item_id)
                return "local_only"

            self._pending_deletes.discard(item_id)
            self._pending_reads.pop(item_id, None)
            await self._store.delete(item_id)
            self._drop(item_id)
        await self.refresh()
        return "synced"

    async def _mark_read(self, item_id: str, *, refresh: bool) -> MutationOutcome:
        async with self._item_lock(item_id):
            item = await self._mutable_item(item_id, "marked as read")
            if item.is_read:
                return "already_applied"

            if item.id.startswith(self._local_prefix):
                self._replace(await self._store.mark_read(item_id) or self._read_copy(item))
                return "local_only"

            read_at = self._clock()
            try:
                await asyncio.shield(
                    self._api.put(
                        f"/deliveries/{item_id}",
                        {"isRead": True, "readAt": isoformat_z(read_at)},
                    )
                )
            except ApiError as exc:
                logger.warning(
                    "Mark-read of %s not synced (%s); applied locally", item_id, exc.detail
                )
                updated = await self._store.mark_read(item_id) or self._read_copy(item, read_at)
                self._pending_reads[item_id] = updated.read_at or read_at
                self._replace(updated)
                return "local_only"

            self._pending_reads.pop(item_id, None)
            await self._store.mark_read(item_id)
            self._replace(self._read_copy(item, read_at))

        if refresh:
            await self.refresh()
        return "synced"

    @asynccontextmanager
    async def _item_lock(self, item_id: str) -> AsyncIterator[None]:
        """Serialize mutations of one item; drop the lock once nobody holds or awaits it."""
        lock = self._item_locks.setdefault(item_id, asyncio.Lock())
        self._lock_waiters[item_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_waiters[item_id] -= 1
            if not self._lock_waiters[item_id]:
                del self._lock_waiters[item_id]
                del self._item_locks[item_id]

    async def _mutable_item(self, item_id: str, action: str) -> LocalCachedNotification:
        if item_id.startswith(self._fallback_prefix):
            raise NotMutableError(item_id, action)
        item = self._find(item_id) or await self._store.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        if item.is_fallback:
            raise NotMutableError(item_id, action)
        return item

    def _find(self, item_id: str) -> LocalCachedNotification | None:
        for item in self._view:
            if item.id == item_id:
                return item
        return None

    def _read_copy(
        self, item: LocalCachedNotification, read_at: datetime | None = None
    ) -> LocalCachedNotification:
        return item.model_copy(update={"is_read": True, "read_at": read_at or self._clock()})

    def _replace(self, updated: LocalCachedNotification) -> None:
        self._view = [updated if item.id == updated.id else item for item in self._view]

    def _drop(self, item_id: str) -> None:
        self._view = [item for item in self._view if item.id != item_id]
