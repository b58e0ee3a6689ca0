"""
Generic paginated page schema.
Wraps one page of the notification view together with its pagination metadata.
"""
from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, computed_field

from herald.schemas.cached import ViewMode

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """
    Generic page wrapper.
    Provides items, total count, current page, page size, total pages and the
    source the items were read from.
    """

    items: list[T]
    total: int
    page: int
    size: int
    mode: ViewMode = "primary"

    @computed_field  # type: ignore[misc]
    @property
    def pages(self) -> int:
        if self.size == 0:
            return 0
        return math.ceil(self.total / self.size)

    @staticmethod
    def total_from_meta(meta: Mapping[str, Any] | None, default: int) -> int:
        """Read ``meta.pagination.total`` as returned by the content API."""
        pagination = (meta or {}).get("pagination") or {}
        total = pagination.get("total")
        return total if isinstance(total, int) else default
