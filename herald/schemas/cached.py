"""
Client-side cached notification schemas and the export/import envelope.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator

from herald.schemas.base import WireModel
from herald.utils.datetime import ensure_utc

EXPORT_FORMAT_VERSION = "1.0"

MutationOutcome = Literal["synced", "local_only", "already_applied"]
ViewMode = Literal["primary", "degraded", "local"]


class LocalCachedNotification(WireModel):
    """
    One entry of the client-side view.

    ``is_fallback`` entries were rebuilt from the canonical feed and have no
    delivery row: they can be shown but never marked read or deleted.
    """

    id: str = Field(min_length=1)
    title: str = "Notification"
    message: str = ""
    type: str = "info"
    category: str = "general"
    priority: str = "medium"
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime
    is_fallback: bool = False
    source: str = "system"
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_read_flag(cls, data: Any) -> Any:
        # older exports stored the flag as "read"
        if isinstance(data, Mapping) and "read" in data and "isRead" not in data and "is_read" not in data:
            data = dict(data)
            data["is_read"] = data.pop("read")
        return data

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("created_at", "read_at")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class LocalNotificationCreate(WireModel):
    title: str = "Notification"
    message: str = ""
    type: str = "info"
    category: str = "system"
    priority: str = "medium"
    source: str = "system"
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExportPayload(WireModel):
    notifications: list[LocalCachedNotification]
    exported_at: datetime | None = None
    version: str = EXPORT_FORMAT_VERSION

    @field_validator("notifications")
    @classmethod
    def unique_ids(cls, v: list[LocalCachedNotification]) -> list[LocalCachedNotification]:
        seen: set[str] = set()
        for item in v:
            if item.id in seen:
                raise ValueError(f"duplicate notification id '{item.id}'")
            seen.add(item.id)
        return v


class NotificationStats(WireModel):
    total: int
    unread: int
    read: int
    by_type: dict[str, int]
    by_category: dict[str, int]

    @classmethod
    def from_items(cls, items: list[LocalCachedNotification]) -> NotificationStats:
        by_type: dict[str, int] = {}
        by_category: dict[str, int] = {}
        unread = 0
        for item in items:
            by_type[item.type] = by_type.get(item.type, 0) + 1
            by_category[item.category] = by_category.get(item.category, 0) + 1
            if not item.is_read:
                unread += 1
        return cls(
            total=len(items),
            unread=unread,
            read=len(items) - unread,
            by_type=by_type,
            by_category=by_category,
        )
