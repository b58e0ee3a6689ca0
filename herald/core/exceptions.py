"""
Exception hierarchy for Herald.
All library-level errors are defined here so callers can tell recoverable
conditions (offline, degraded) from the ones that must abort an operation.
"""
from __future__ import annotations

from typing import Any


# ── Base ──────────────────────────────────────────────────────────────────────

class HeraldException(Exception):
    """Base exception for all Herald domain errors."""

    def __init__(self, detail: str, error_code: str | None = None) -> None:
        self.detail = detail
        self.error_code = error_code or "HERALD_ERROR"
        super().__init__(detail)


# ── Transport ─────────────────────────────────────────────────────────────────

class ApiError(HeraldException):
    """
    The content API answered with a non-2xx status, or could not be reached.
    ``status_code`` is None for transport failures and timeouts.
    """

    def __init__(
        self,
        detail: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(detail, error_code or "API_ERROR")

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None


class NotFoundException(ApiError):
    def __init__(self, resource: str, resource_id: Any | None = None) -> None:
        detail = f"{resource} not found"
        if resource_id is not None:
            detail = f"{resource} with id '{resource_id}' not found"
        super().__init__(detail, status_code=404, error_code="NOT_FOUND")


# ── Targeting and fan-out ─────────────────────────────────────────────────────

class TargetSpecError(HeraldException):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, "INVALID_TARGET")


class ResolutionError(HeraldException):
    """Recipient lookup failed; the notify operation must not create anything."""

    def __init__(self, detail: str, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(detail, "RESOLUTION_FAILED")


class CanonicalCreateError(HeraldException):
    def __init__(self, detail: str, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(detail, "CANONICAL_CREATE_FAILED")


# ── Read-side mutations ───────────────────────────────────────────────────────

class NotMutableError(HeraldException):
    """
    Raised for reconstructed (fallback) items, which have no delivery row
    behind them. Never used for network failures.
    """

    def __init__(self, item_id: str, action: str) -> None:
        self.item_id = item_id
        self.action = action
        super().__init__(
            f"Notification '{item_id}' cannot be {action}: it was reconstructed "
            "from the notification feed and has no delivery record",
            "NOT_MUTABLE_IN_FALLBACK_MODE",
        )


class ItemNotFoundError(HeraldException):
    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Notification '{item_id}' is not in the current view", "ITEM_NOT_FOUND")


# ── Local store ───────────────────────────────────────────────────────────────

class ImportValidationError(HeraldException):
    def __init__(self, detail: str) -> None:
        super().__init__(detail, "INVALID_IMPORT_PAYLOAD")
