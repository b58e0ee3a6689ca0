"""
Best-effort push dispatch.
Failures here are logged and reported, never raised to the notify caller.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from collections.abc import Iterable

from pydantic import ValidationError

from herald.clients.content_api import ContentApiClient
from herald.clients.push_sender import PushSender, build_push_sender
from herald.core.config import settings
from herald.core.exceptions import ApiError
from herald.schemas.fanout import DispatchReport, FailedPush
from herald.schemas.push_token import PushToken
from herald.services.target_resolver import unique_ids

logger = logging.getLogger(__name__)


class PushDispatcher:

    def __init__(
        self,
        api: ContentApiClient,
        sender: PushSender | None = None,
        *,
        remembered_keys: int | None = None,
    ) -> None:
        self._api = api
        self._sender = sender or build_push_sender()
        # keys of successful sends, oldest first; bounded
        self._sent_keys: OrderedDict[str, None] = OrderedDict()
        self._max_keys = remembered_keys or settings.PUSH_REMEMBERED_KEYS

    async def active_tokens(self, user_ids: Iterable[int]) -> list[PushToken]:
        rows = await self._api.get_all(
            "/push-tokens", {"user": list(user_ids), "isActive": "true"}
        )
        tokens = [PushToken.model_validate(row) for row in rows]
        return [t for t in tokens if t.is_active]

    async def dispatch(
        self,
        user_ids: Iterable[int],
        title: str,
        message: str,
        *,
        notification_id: int | None = None,
    ) -> DispatchReport:
        recipients = unique_ids(user_ids)
        if not recipients:
            return DispatchReport()

        try:
            tokens = await self.active_tokens(recipients)
        except (ApiError, ValidationError) as exc:
            logger.warning("Push token lookup failed for %d users: %s", len(recipients), exc)
            return DispatchReport(error=str(exc))

        # ad-hoc pushes get a one-off key and are not remembered
        scope = str(notification_id) if notification_id is not None else uuid.uuid4().hex
        pending: list[tuple[PushToken, str]] = []
        skipped = 0
        for token in tokens:
            key = f"push:{scope}:{token.token}"
            if key in self._sent_keys:
                skipped += 1
                continue
            pending.append((token, key))

        outcomes = await asyncio.gather(
            *(
                self._sender.send(token, title, message, idempotency_key=key)
                for token, key in pending
            ),
            return_exceptions=True,
        )

        report = DispatchReport(tokens=len(tokens), skipped=skipped)
        for (token, key), outcome in zip(pending, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("Push to %s device failed: %s", token.device_type, outcome)
                report.failed.append(FailedPush(token=token.token, error=str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                report.sent.append(token.token)
                if token.user_id not in report.reached_user_ids:
                    report.reached_user_ids.append(token.user_id)
                if notification_id is not None:
                    self._remember(key)

        logger.info(
            "Push dispatch: %d tokens, %d sent, %d failed, %d skipped",
            report.tokens,
            len(report.sent),
            len(report.failed),
            report.skipped,
        )
        return report

    def _remember(self, key: str) -> None:
        self._sent_keys[key] = None
        while len(self._sent_keys) > self._max_keys:
            self._sent_keys.popitem(last=False)
