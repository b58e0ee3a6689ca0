"""
Push channel adapters.
A sender delivers one message to one device token; retries are the caller's call.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from herald.core.config import settings
from herald.core.exceptions import ApiError
from herald.schemas.push_token import PushToken

logger = logging.getLogger(__name__)


class PushSender(Protocol):
    async def send(
        self,
        token: PushToken,
        title: str,
        message: str,
        *,
        idempotency_key: str,
    ) -> None: ...


class LoggingPushSender:
    """Records the push instead of sending it. Used when no gateway is configured."""

    async def send(
        self,
        token: PushToken,
        title: str,
        message: str,
        *,
        idempotency_key: str,
    ) -> None:
        logger.info(
            "Push (not sent, no gateway): device_type=%s user_id=%s title=%r key=%s",
            token.device_type,
            token.user_id,
            title,
            idempotency_key,
        )


class WebhookPushSender:
    """POSTs each push to an HTTP gateway, keyed for duplicate suppression."""

    def __init__(
        self,
        gateway_url: str,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._gateway_url = gateway_url
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.PUSH_TIMEOUT_SECONDS),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(
        self,
        token: PushToken,
        title: str,
        message: str,
        *,
        idempotency_key: str,
    ) -> None:
        payload: dict[str, Any] = {
            "token": token.token,
            "deviceType": token.device_type,
            "title": title,
            "message": message,
        }
        try:
            response = await self._client.post(
                self._gateway_url,
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.HTTPError as exc:
            raise ApiError(f"Push gateway unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise ApiError(
                f"Push gateway returned {response.status_code}",
                status_code=response.status_code,
            )


def build_push_sender() -> PushSender:
    if settings.PUSH_GATEWAY_URL:
        return WebhookPushSender(settings.PUSH_GATEWAY_URL)
    return LoggingPushSender()
