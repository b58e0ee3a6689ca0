"""
Canonical notification creation and per-recipient delivery fan-out.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from herald.clients.content_api import ContentApiClient
from herald.core.exceptions import ApiError, CanonicalCreateError
from herald.schemas.delivery import Delivery, DeliveryCreate
from herald.schemas.fanout import DeliveryStats, FailedRecipient, FanoutResult
from herald.schemas.notification import Notification, NotificationDraft
from herald.services.target_resolver import unique_ids
from herald.utils.datetime import isoformat_z

logger = logging.getLogger(__name__)


def delivery_key(notification_id: int, user_id: int) -> str:
    return f"delivery:{notification_id}:{user_id}"


class FanoutCreator:
    """
    Creates the canonical notification once, then one delivery row per
    recipient, concurrently. Delivery failures are collected, never raised.
    """

    def __init__(self, api: ContentApiClient) -> None:
        self._api = api

    async def create(self, draft: NotificationDraft, recipients: Iterable[int]) -> FanoutResult:
        notification = await self._create_canonical(draft)
        return await self._fan_out(notification, unique_ids(recipients))

    async def retry_failed(
        self,
        previous: FanoutResult | Notification,
        user_ids: Iterable[int] | None = None,
    ) -> FanoutResult:
        """
        Create deliveries only for recipients that still have none.

        ``user_ids`` defaults to the failed set of ``previous``. Recipients that
        already have a delivery row are reported as succeeded. When the
        existence lookup itself fails the ApiError propagates.
        """
        if isinstance(previous, FanoutResult):
            notification = previous.notification
            targets = unique_ids(previous.retryable_user_ids if user_ids is None else user_ids)
        else:
            notification = previous
            targets = unique_ids(user_ids or [])
        if not targets:
            return FanoutResult(notification=notification)

        existing = await self._existing_deliveries(notification.id, targets)
        missing = [user_id for user_id in targets if user_id not in existing]
        logger.info(
            "Retrying fan-out for notification %s: %d missing, %d already delivered",
            notification.id,
            len(missing),
            len(targets) - len(missing),
        )
        result = await self._fan_out(notification, missing)
        already = [user_id for user_id in targets if user_id in existing]
        return FanoutResult(
            notification=notification,
            succeeded=already + result.succeeded,
            failed=result.failed,
            delivery_ids={**{uid: existing[uid] for uid in already}, **result.delivery_ids},
        )

    async def mark_delivered(
        self, result: FanoutResult, user_ids: Iterable[int], *, when: datetime
    ) -> list[int]:
        """
        Flag the delivery rows of ``user_ids`` as delivered.
        Returns the users whose row was updated; failures are logged only.
        """
        targets = [uid for uid in unique_ids(user_ids) if uid in result.delivery_ids]
        if not targets:
            return []
        body = {"isDelivered": True, "deliveredAt": isoformat_z(when)}
        batch = asyncio.gather(
            *(self._api.put(f"/deliveries/{result.delivery_ids[uid]}", body) for uid in targets),
            return_exceptions=True,
        )
        outcomes = await asyncio.shield(batch)

        updated: list[int] = []
        for user_id, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(
                    "Could not mark delivery of notification %s to user %s as delivered: %s",
                    result.notification.id,
                    user_id,
                    outcome,
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                updated.append(user_id)
        return updated

    async def delivery_stats(self, notification_id: int | None = None) -> DeliveryStats:
        """Sent, delivered and read totals over the deliveries of one or all notifications."""
        params: dict[str, Any] = {}
        if notification_id is not None:
            params["notification"] = notification_id
        rows = await self._api.get_all("/deliveries", params)
        deliveries = [Delivery.model_validate(row) for row in rows]
        return DeliveryStats(
            total_sent=len(deliveries),
            total_delivered=sum(1 for d in deliveries if d.is_delivered),
            total_read=sum(1 for d in deliveries if d.is_read),
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _create_canonical(self, draft: NotificationDraft) -> Notification:
        try:
            response = await asyncio.shield(self._api.post("/notifications", draft.to_wire()))
        except ApiError as exc:
            logger.error("Canonical notification create failed: %s", exc.detail)
            raise CanonicalCreateError(
                f"Could not create notification '{draft.title}': {exc.detail}", cause=exc
            ) from exc

        created = response.data if isinstance(response.data, dict) else {}
        if created.get("id") is None:
            raise CanonicalCreateError("Notification create response carried no id")
        try:
            return Notification.model_validate(
                {
                    **draft.model_dump(),
                    "id": created["id"],
                    "created_at": created.get("createdAt"),
                }
            )
        except ValidationError as exc:
            raise CanonicalCreateError(
                "Notification create response was malformed", cause=exc
            ) from exc

    async def _fan_out(self, notification: Notification, user_ids: list[int]) -> FanoutResult:
        if not user_ids:
            return FanoutResult(notification=notification)

        batch = asyncio.gather(
            *(self._create_delivery(notification.id, user_id) for user_id in user_ids),
            return_exceptions=True,
        )
        # issued writes run to completion even if the caller goes away
        outcomes = await asyncio.shield(batch)

        succeeded: list[int] = []
        failed: list[FailedRecipient] = []
        delivery_ids: dict[int, int] = {}
        for user_id, outcome in zip(user_ids, outcomes):
            if isinstance(outcome, ApiError):
                failed.append(
                    FailedRecipient(
                        user_id=user_id, error=outcome.detail, status_code=outcome.status_code
                    )
                )
            elif isinstance(outcome, Exception):
                failed.append(FailedRecipient(user_id=user_id, error=str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                succeeded.append(user_id)
                if outcome is not None:
                    delivery_ids[user_id] = outcome

        for failure in failed:
            logger.warning(
                "Delivery create failed: notification=%s user=%s error=%s",
                notification.id,
                failure.user_id,
                failure.error,
            )
        logger.info(
            "Fan-out for notification %s: %d delivered, %d failed",
            notification.id,
            len(succeeded),
            len(failed),
        )
        return FanoutResult(
            notification=notification,
            succeeded=succeeded,
            failed=failed,
            delivery_ids=delivery_ids,
        )

    async def _create_delivery(self, notification_id: int, user_id: int) -> int | None:
        body = DeliveryCreate(user_id=user_id, notification_id=notification_id)
        response = await self._api.post(
            "/deliveries",
            body.to_wire(),
            headers={"Idempotency-Key": delivery_key(notification_id, user_id)},
        )
        created = response.data if isinstance(response.data, dict) else {}
        row_id = created.get("id")
        return row_id if isinstance(row_id, int) else None

    async def _existing_deliveries(
        self, notification_id: int, user_ids: list[int]
    ) -> dict[int, int]:
        rows = await self._api.get_all(
            "/deliveries", {"notification": notification_id, "user": user_ids}
        )
        deliveries = [Delivery.model_validate(row) for row in rows]
        return {d.user_id: d.id for d in deliveries if d.notification_id == notification_id}
