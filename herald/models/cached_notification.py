"""
Cached notification ORM model.
One row per entry of the offline view; ``position`` preserves the exact order.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from herald.db.base import Base


class CachedNotification(Base):
    __tablename__ = "cached_notifications"

    id: Mapped[str] = mapped_column(String(120), primary_key=True)
    position: Mapped[int]
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String(50), default="info")
    category: Mapped[str] = mapped_column(String(50), default="general")
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    is_read: Mapped[bool] = mapped_column(default=False)
    read_at: Mapped[datetime | None]
    created_at: Mapped[datetime]
    is_fallback: Mapped[bool] = mapped_column(default=False)
    source: Mapped[str] = mapped_column(String(100), default="system")
    meta: Mapped[dict[str, Any] | None]

    __table_args__ = (
        Index("ix_cached_notifications_position", "position"),
        Index("ix_cached_notifications_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<CachedNotification id={self.id} position={self.position} is_read={self.is_read}>"
