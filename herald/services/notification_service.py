"""
Notify facade.
Resolves the audience, creates the canonical notification with its deliveries,
then pushes to the resolved recipients.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from herald.clients.content_api import ContentApiClient
from herald.clients.push_sender import PushSender
from herald.schemas.fanout import DeliveryStats, NotifyResult
from herald.schemas.notification import NotificationDraft
from herald.schemas.target import SpecificTarget
from herald.services.fanout_service import FanoutCreator
from herald.services.push_dispatcher import PushDispatcher
from herald.services.target_resolver import TargetResolver, unique_ids
from herald.utils.datetime import Clock, utc_now

logger = logging.getLogger(__name__)


class NotificationService:

    def __init__(
        self,
        *,
        resolver: TargetResolver,
        creator: FanoutCreator,
        dispatcher: PushDispatcher,
        clock: Clock = utc_now,
    ) -> None:
        self._resolver = resolver
        self._creator = creator
        self._dispatcher = dispatcher
        self._clock = clock

    async def notify(self, draft: NotificationDraft | Mapping[str, Any]) -> NotifyResult:
        """
        Send one notification to its audience.

        ResolutionError and CanonicalCreateError propagate, and in both cases
        no delivery exists. Delivery and push failures are reported in the
        result instead. Deliveries whose recipient was reached by push are
        flagged as delivered.
        """
        if not isinstance(draft, NotificationDraft):
            draft = NotificationDraft.model_validate(draft)

        recipients = await self._resolver.resolve(draft.target)
        logger.info(
            "Notifying %d recipients (%s): %s", len(recipients), draft.target.kind, draft.title
        )
        fanout = await self._creator.create(draft, recipients)
        push = await self._dispatcher.dispatch(
            recipients,
            draft.title,
            draft.message,
            notification_id=fanout.notification.id,
        )
        delivered = await self._creator.mark_delivered(
            fanout, push.reached_user_ids, when=self._clock()
        )
        return NotifyResult(recipients=recipients, fanout=fanout, push=push, delivered=delivered)

    async def delivery_stats(self, notification_id: int | None = None) -> DeliveryStats:
        return await self._creator.delivery_stats(notification_id)

    # ── Convenience notifiers ─────────────────────────────────────────────────

    async def notify_login_success(self, user_id: int) -> NotifyResult:
        now = self._clock()
        return await self.notify(
            NotificationDraft(
                title="Signed in",
                message=f"You signed in successfully at {now:%H:%M:%S} UTC",
                type="success",
                priority="low",
                target=SpecificTarget(user_ids=(user_id,)),
                metadata={"event": "login_success"},
            )
        )

    async def notify_login_failed(self, email: str, ip: str | None = None) -> NotifyResult | None:
        """Warn the account owner about a failed sign-in. Unknown emails are ignored."""
        user = await self._resolver.find_user_by_email(email)
        if user is None:
            logger.info("Failed sign-in for unknown account; nothing to notify")
            return None
        now = self._clock()
        return await self.notify(
            NotificationDraft(
                title="Suspicious sign-in attempt",
                message=(
                    f"A failed sign-in to your account was detected from "
                    f"{ip or 'an unknown location'} at {now:%Y-%m-%d %H:%M:%S} UTC"
                ),
                type="error",
                priority="high",
                target=SpecificTarget(user_ids=(user.id,)),
                metadata={"event": "login_failed", "ip": ip},
            )
        )

    async def notify_module_change(
        self,
        module_name: str,
        action: str,
        involved_user_ids: Iterable[int],
        changed_by: int,
    ) -> NotifyResult | None:
        # the user who made the change is not notified about it
        recipients = [uid for uid in unique_ids(involved_user_ids) if uid != changed_by]
        if not recipients:
            return None
        return await self.notify(
            NotificationDraft(
                title=f"Change in {module_name}",
                message=f'Action "{action}" was performed in module {module_name}',
                type="info",
                priority="medium",
                target=SpecificTarget(user_ids=tuple(recipients)),
                metadata={"module_name": module_name, "action": action, "changed_by": changed_by},
            )
        )


def build_notification_service(
    api: ContentApiClient,
    sender: PushSender | None = None,
    *,
    clock: Clock = utc_now,
) -> NotificationService:
    return NotificationService(
        resolver=TargetResolver(api),
        creator=FanoutCreator(api),
        dispatcher=PushDispatcher(api, sender),
        clock=clock,
    )
