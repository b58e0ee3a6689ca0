"""
Recipient targeting schemas.
A TargetSpec is a tagged union; legacy payload shapes are folded into it once,
by normalize_target_spec, at the API boundary.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from herald.core.exceptions import TargetSpecError


# ── Variants ──────────────────────────────────────────────────────────────────

class _TargetBase(BaseModel):
    """
    Common behaviour for every targeting variant.

    Each concrete variant must declare ``client_evaluable``: whether a client
    holding only the user's own id can decide membership without guessing.
    """

    model_config = ConfigDict(frozen=True)

    client_evaluable: ClassVar[bool]

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        if "client_evaluable" not in cls.__dict__:
            raise TypeError(f"{cls.__name__} must declare client_evaluable")

    def includes(self, user_id: int) -> bool:
        raise TargetSpecError(
            f"'{self.kind}' targets cannot be evaluated on the client"  # type: ignore[attr-defined]
        )

    def to_wire(self) -> dict[str, Any]:
        return {"targetUsers": self.kind}  # type: ignore[attr-defined]


class AllTarget(_TargetBase):
    kind: Literal["all"] = "all"

    client_evaluable: ClassVar[bool] = True

    def includes(self, user_id: int) -> bool:
        return True


class ActiveTarget(_TargetBase):
    """Users that are confirmed and not blocked."""

    kind: Literal["active"] = "active"

    client_evaluable: ClassVar[bool] = False


class RoleBasedTarget(_TargetBase):
    kind: Literal["role_based"] = "role_based"
    role_ids: tuple[int, ...] = ()

    client_evaluable: ClassVar[bool] = False

    def to_wire(self) -> dict[str, Any]:
        return {"targetUsers": self.kind, "targetRoles": list(self.role_ids)}


class SpecificTarget(_TargetBase):
    kind: Literal["specific"] = "specific"
    user_ids: tuple[int, ...] = ()

    client_evaluable: ClassVar[bool] = True

    def includes(self, user_id: int) -> bool:
        return user_id in self.user_ids

    def to_wire(self) -> dict[str, Any]:
        return {"targetUsers": self.kind, "targetUserIds": list(self.user_ids)}


TargetSpec = Annotated[
    Union[AllTarget, ActiveTarget, RoleBasedTarget, SpecificTarget],
    Field(discriminator="kind"),
]

_target_adapter: TypeAdapter[Any] = TypeAdapter(TargetSpec)


# ── Normalization ─────────────────────────────────────────────────────────────

# Values accepted under target_users / targetUsers
_TARGET_USERS_KINDS = frozenset({"all", "active", "role_based", "specific"})

# Values accepted under the older recipient_type field
_RECIPIENT_TYPE_KINDS: dict[str, str] = {
    "all": "all",
    "active": "active",
    "role": "role_based",
    "role_based": "role_based",
    "specific_users": "specific",
    "specific": "specific",
}

_USER_ID_FIELDS = ("target_user_ids", "targetUserIds", "recipient_ids", "user_ids")
_ROLE_ID_FIELDS = ("target_roles", "targetRoles", "role_ids")


def _first_present(raw: Mapping[str, Any], fields: tuple[str, ...]) -> Any:
    for name in fields:
        value = raw.get(name)
        if value is not None:
            return value
    return None


def _coerce_ids(values: Any, field: str) -> tuple[int, ...]:
    if values is None:
        return ()
    if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple, set, frozenset)):
        raise TargetSpecError(f"{field} must be a list of ids")
    ids: list[int] = []
    for value in values:
        if isinstance(value, Mapping):
            value = value.get("id")
        if isinstance(value, bool):
            raise TargetSpecError(f"{field} contains a non-numeric id: {value!r}")
        try:
            ids.append(int(value))
        except (TypeError, ValueError):
            raise TargetSpecError(f"{field} contains a non-numeric id: {value!r}") from None
    return tuple(ids)


def _resolve_kind(raw: Mapping[str, Any]) -> str:
    target_users = raw.get("target_users", raw.get("targetUsers"))
    if target_users is not None:
        if target_users not in _TARGET_USERS_KINDS:
            raise TargetSpecError(f"Unknown target_users value: {target_users!r}")
        return target_users

    recipient_type = raw.get("recipient_type")
    if recipient_type is not None:
        kind = _RECIPIENT_TYPE_KINDS.get(recipient_type)
        if kind is None:
            raise TargetSpecError(f"Unknown recipient_type value: {recipient_type!r}")
        return kind

    return "all"


def normalize_target_spec(raw: Mapping[str, Any] | _TargetBase | None) -> TargetSpec:
    """
    Fold any accepted targeting payload into a canonical TargetSpec.

    Accepts an existing variant, a canonical ``{"kind": ...}`` mapping, or a
    legacy mapping using ``target_users``/``recipient_type`` with their id
    lists. ``target_users`` takes precedence over ``recipient_type``; a payload
    naming neither targets everyone.
    """
    if raw is None:
        return AllTarget()
    if isinstance(raw, _TargetBase):
        return raw  # type: ignore[return-value]
    if not isinstance(raw, Mapping):
        raise TargetSpecError(f"Unsupported target payload: {type(raw).__name__}")

    if "kind" in raw:
        try:
            return _target_adapter.validate_python(dict(raw))
        except ValidationError as exc:
            raise TargetSpecError(f"Invalid target spec: {exc.errors()[0]['msg']}") from exc

    kind = _resolve_kind(raw)
    if kind == "all":
        return AllTarget()
    if kind == "active":
        return ActiveTarget()
    if kind == "role_based":
        return RoleBasedTarget(
            role_ids=_coerce_ids(_first_present(raw, _ROLE_ID_FIELDS), "role_ids")
        )
    return SpecificTarget(
        user_ids=_coerce_ids(_first_present(raw, _USER_ID_FIELDS), "user_ids")
    )
