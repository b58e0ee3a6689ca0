"""
Result types for fan-out, push dispatch and the combined notify operation.
"""
from __future__ import annotations

from pydantic import BaseModel, Field, computed_field

from herald.schemas.notification import Notification


class FailedRecipient(BaseModel):
    user_id: int
    error: str
    status_code: int | None = None


class FanoutResult(BaseModel):
    """
    Outcome of fanning one canonical notification out to its recipients.
    ``failed`` holds the exact set a caller may retry with
    ``FanoutCreator.retry_failed``.
    """

    notification: Notification
    succeeded: list[int] = Field(default_factory=list)
    failed: list[FailedRecipient] = Field(default_factory=list)
    # delivery row id per recipient, where the row id is known
    delivery_ids: dict[int, int] = Field(default_factory=dict)

    @computed_field  # type: ignore[misc]
    @property
    def retryable_user_ids(self) -> list[int]:
        return [f.user_id for f in self.failed]

    @property
    def is_complete(self) -> bool:
        return not self.failed


class FailedPush(BaseModel):
    token: str
    error: str


class DispatchReport(BaseModel):
    tokens: int = 0
    sent: list[str] = Field(default_factory=list)
    failed: list[FailedPush] = Field(default_factory=list)
    skipped: int = 0
    error: str | None = None
    reached_user_ids: list[int] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed


class NotifyResult(BaseModel):
    recipients: list[int]
    fanout: FanoutResult
    push: DispatchReport
    delivered: list[int] = Field(default_factory=list)


class DeliveryStats(BaseModel):
    """Delivery and read ratios over a set of delivery rows, in percent."""

    total_sent: int = 0
    total_delivered: int = 0
    total_read: int = 0

    @computed_field  # type: ignore[misc]
    @property
    def delivery_rate(self) -> float:
        if not self.total_sent:
            return 0.0
        return round(self.total_delivered / self.total_sent * 100, 2)

    @computed_field  # type: ignore[misc]
    @property
    def read_rate(self) -> float:
        if not self.total_sent:
            return 0.0
        return round(self.total_read / self.total_sent * 100, 2)
