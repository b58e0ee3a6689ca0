"""
Canonical notification schemas.
NotificationDraft is what callers submit; Notification is the server-owned record.
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator

from herald.schemas.base import WireModel
from herald.schemas.target import AllTarget, TargetSpec, normalize_target_spec

NotificationType = Literal["info", "success", "warning", "error", "system"]
NotificationCategory = Literal["general", "maintenance", "update", "security", "promotion"]
NotificationPriority = Literal["low", "medium", "high", "urgent"]

_CANONICAL_TYPES = frozenset({"info", "success", "warning", "error", "system"})

# Event types raised by application code, folded into the canonical set
_EVENT_TYPE_MAP: dict[str, str] = {
    "login_success": "success",
    "login_failed": "error",
    "module_updated": "info",
    "data_changed": "info",
    "approval_needed": "warning",
    "admin_announcement": "system",
    "system_maintenance": "system",
    "policy_update": "info",
}

_TARGET_FIELDS = frozenset(
    {
        "target",
        "target_users",
        "targetUsers",
        "recipient_type",
        "target_user_ids",
        "targetUserIds",
        "recipient_ids",
        "target_roles",
        "targetRoles",
        "role_ids",
    }
)

# Fields that name an audience kind; id lists alone do not
_AUDIENCE_FIELDS = ("target", "target_users", "targetUsers", "recipient_type")


def canonical_type(value: Any) -> str:
    if isinstance(value, str) and value in _CANONICAL_TYPES:
        return value
    if isinstance(value, str):
        return _EVENT_TYPE_MAP.get(value, "info")
    return "info"


def _names_audience(data: Mapping[str, Any]) -> bool:
    return any(data.get(name) is not None for name in _AUDIENCE_FIELDS)


def _with_target(data: Any, *, default_all: bool = True) -> Any:
    """
    Replace whatever targeting fields ``data`` carries with a canonical ``target``.
    Without ``default_all`` a payload naming no audience gets ``target=None``.
    """
    if not isinstance(data, Mapping):
        return data
    cleaned = {k: v for k, v in data.items() if k not in _TARGET_FIELDS}
    if not default_all and not _names_audience(data):
        cleaned["target"] = None
        return cleaned
    target = data.get("target")
    cleaned["target"] = normalize_target_spec(data if target is None else target)
    return cleaned


# ── Create ────────────────────────────────────────────────────────────────────

class NotificationDraft(WireModel):
    title: str = Field(min_length=1, max_length=255)
    message: str = ""
    type: NotificationType = "info"
    category: NotificationCategory = "general"
    priority: NotificationPriority = "medium"
    target: TargetSpec = Field(default_factory=AllTarget)
    scheduled_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def normalize_legacy_fields(cls, data: Any) -> Any:
        return _with_target(data)

    @field_validator("type", mode="before")
    @classmethod
    def map_event_type(cls, v: Any) -> str:
        return canonical_type(v)

    @field_validator("category", "priority", mode="before")
    @classmethod
    def default_when_missing(cls, v: Any, info: Any) -> Any:
        if v is None or v == "":
            return "general" if info.field_name == "category" else "medium"
        return v

    def to_wire(self) -> dict[str, Any]:
        """Body for ``POST /notifications``."""
        body: dict[str, Any] = {
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "category": self.category,
            "priority": self.priority,
            "isActive": self.is_active,
            **self.target.to_wire(),
        }
        if self.scheduled_at is not None:
            body["scheduledAt"] = self.scheduled_at.isoformat()
        if self.expires_at is not None:
            body["expiresAt"] = self.expires_at.isoformat()
        if self.metadata:
            body["metadata"] = self.metadata
        return body


# ── Read ──────────────────────────────────────────────────────────────────────

class Notification(WireModel):
    id: int
    title: str = "Untitled"
    message: str = ""
    type: NotificationType = "info"
    category: NotificationCategory = "general"
    priority: NotificationPriority = "medium"
    # None when the stored record names no audience
    target: TargetSpec | None = None
    scheduled_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize_legacy_fields(cls, data: Any) -> Any:
        return _with_target(data, default_all=False)

    @field_validator("type", mode="before")
    @classmethod
    def map_event_type(cls, v: Any) -> str:
        return canonical_type(v)

    @field_validator("category", "priority", mode="before")
    @classmethod
    def default_when_missing(cls, v: Any, info: Any) -> Any:
        if v is None or v == "":
            return "general" if info.field_name == "category" else "medium"
        return v

    @field_validator("title", "message", mode="before")
    @classmethod
    def default_text(cls, v: Any, info: Any) -> Any:
        if v is None or v == "":
            return "Untitled" if info.field_name == "title" else ""
        return v
