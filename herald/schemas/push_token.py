"""
Push token registry schemas.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import Field, model_validator

from herald.schemas.base import WireModel, relation_id


class PushToken(WireModel):
    id: int
    user_id: int
    token: str
    device_type: str
    is_active: bool = True

    @model_validator(mode="before")
    @classmethod
    def unpack_user(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "user" in data:
            data = dict(data)
            data.setdefault("user_id", relation_id(data.pop("user")))
        return data


class PushTokenWrite(WireModel):
    user_id: int
    token: str = Field(min_length=1)
    device_type: str = Field(min_length=1, max_length=50)
    is_active: bool = True
