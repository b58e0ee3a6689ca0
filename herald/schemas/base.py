"""
Shared pydantic configuration for records exchanged with the content API.
Attributes are snake_case in Python and camelCase on the wire.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def relation_id(value: Any) -> Any:
    """
    Collapse a relation that may arrive populated (``{"id": 3, ...}``) or as a
    bare id into the bare id.
    """
    if isinstance(value, Mapping):
        return value.get("id")
    return value
