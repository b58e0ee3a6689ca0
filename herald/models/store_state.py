"""
Key/value bookkeeping for the offline cache (e.g. when it was last pruned).
"""
from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from herald.db.base import Base


class StoreState(Base):
    __tablename__ = "store_state"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<StoreState key={self.key}>"
