"""
Recipient resolution.
Turns a TargetSpec into the concrete list of user ids to notify. Nothing is
cached: every call re-queries the users endpoint.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from herald.clients.content_api import ContentApiClient
from herald.core.exceptions import ApiError, ResolutionError
from herald.schemas.delivery import RecipientUser
from herald.schemas.target import (
    ActiveTarget,
    AllTarget,
    RoleBasedTarget,
    SpecificTarget,
    TargetSpec,
)

logger = logging.getLogger(__name__)


def unique_ids(ids: Iterable[int]) -> list[int]:
    """Drop repeated ids, keeping the first occurrence of each."""
    seen: set[int] = set()
    result: list[int] = []
    for user_id in ids:
        if user_id not in seen:
            seen.add(user_id)
            result.append(user_id)
    return result


class TargetResolver:

    def __init__(self, api: ContentApiClient) -> None:
        self._api = api

    async def resolve(self, target: TargetSpec) -> list[int]:
        if isinstance(target, SpecificTarget):
            return unique_ids(target.user_ids)
        if isinstance(target, RoleBasedTarget):
            if not target.role_ids:
                return []
            users = await self._users({"populate": "role"})
            wanted = set(target.role_ids)
            return unique_ids(u.id for u in users if u.role_id in wanted)
        if isinstance(target, ActiveTarget):
            users = await self._users({"confirmed": "true", "blocked": "false"})
            # the filter is re-applied in case the backend ignores it
            return unique_ids(u.id for u in users if u.is_active)
        if isinstance(target, AllTarget):
            return unique_ids(u.id for u in await self._users(None))
        raise ResolutionError(f"Unsupported target kind: {type(target).__name__}")

    async def find_user_by_email(self, email: str) -> RecipientUser | None:
        users = await self._users({"email": email})
        return users[0] if users else None

    async def _users(self, params: Mapping[str, Any] | None) -> list[RecipientUser]:
        try:
            response = await self._api.get("/users", params)
            return [RecipientUser.model_validate(row) for row in response.items()]
        except ApiError as exc:
            logger.warning("Recipient lookup failed: %s", exc.detail)
            raise ResolutionError(f"Could not resolve recipients: {exc.detail}", cause=exc) from exc
        except ValidationError as exc:
            raise ResolutionError("Users endpoint returned malformed records", cause=exc) from exc
