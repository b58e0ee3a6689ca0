"""
Per-recipient delivery and recipient user schemas.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import model_validator

from herald.schemas.base import WireModel, relation_id
from herald.schemas.notification import Notification


class Delivery(WireModel):
    id: int
    user_id: int
    notification_id: int
    is_read: bool = False
    read_at: datetime | None = None
    is_delivered: bool = False
    delivered_at: datetime | None = None
    created_at: datetime | None = None
    notification: Notification | None = None

    @model_validator(mode="before")
    @classmethod
    def unpack_relations(cls, data: Any) -> Any:
        """Accept ``user``/``notification`` relations as ids or populated objects."""
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        if "user" in data and data.get("userId") is None and data.get("user_id") is None:
            data["user_id"] = relation_id(data.pop("user"))
        notification = data.get("notification")
        if notification is not None and not isinstance(notification, Mapping):
            data.pop("notification")
            data.setdefault("notification_id", notification)
        elif isinstance(notification, Mapping):
            if data.get("notificationId") is None and data.get("notification_id") is None:
                data["notification_id"] = notification.get("id")
        # read state is derived from read_at as well as the flag
        read_at = data.get("readAt", data.get("read_at"))
        if read_at:
            data["is_read"] = True
            data.pop("isRead", None)
        return data


class DeliveryCreate(WireModel):
    user_id: int
    notification_id: int
    is_read: bool = False
    is_delivered: bool = False


class RecipientUser(WireModel):
    """The slice of a user record needed for recipient resolution."""

    id: int
    email: str | None = None
    confirmed: bool = False
    blocked: bool = False
    role_id: int | None = None

    @model_validator(mode="before")
    @classmethod
    def unpack_role(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "role" in data:
            data = dict(data)
            data.setdefault("role_id", relation_id(data.pop("role")))
        return data

    @property
    def is_active(self) -> bool:
        return self.confirmed and not self.blocked
