"""
Push token subscription management.
One active token per (user, device type); re-subscribing updates the row in place.
"""
from __future__ import annotations

import logging

from herald.clients.content_api import ContentApiClient
from herald.schemas.push_token import PushToken, PushTokenWrite

logger = logging.getLogger(__name__)


class PushTokenRegistry:

    def __init__(self, api: ContentApiClient) -> None:
        self._api = api

    async def subscribe(self, user_id: int, token: str, device_type: str) -> PushToken:
        write = PushTokenWrite(user_id=user_id, token=token, device_type=device_type)
        existing = await self._tokens_for(user_id, device_type)
        if existing:
            response = await self._api.put(f"/push-tokens/{existing[0].id}", write.to_wire())
            logger.info("Push token refreshed: user=%s device_type=%s", user_id, device_type)
        else:
            response = await self._api.post("/push-tokens", write.to_wire())
            logger.info("Push token registered: user=%s device_type=%s", user_id, device_type)
        return PushToken.model_validate(response.data)

    async def unsubscribe(self, user_id: int, device_type: str) -> int:
        """Deactivate every token of the user for ``device_type``."""
        tokens = await self._tokens_for(user_id, device_type)
        for token in tokens:
            await self._api.put(f"/push-tokens/{token.id}", {"isActive": False})
        if tokens:
            logger.info(
                "Push tokens deactivated: user=%s device_type=%s count=%d",
                user_id,
                device_type,
                len(tokens),
            )
        return len(tokens)

    async def _tokens_for(self, user_id: int, device_type: str) -> list[PushToken]:
        rows = await self._api.get_all(
            "/push-tokens", {"user": user_id, "deviceType": device_type}
        )
        return [PushToken.model_validate(row) for row in rows]
