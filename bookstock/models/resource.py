# bookstock/models/resource.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from bookstock.db.base import Base
from bookstock.db.types import UTCDateTime
from bookstock.models.enums import PricingStrategy, ResourceKind


class Resource(Base):
    """
    可预订资源。

    - kind=POOL 的资源永不写台账，容量由其 single 汇总
    - pricing_strategy 仅对 POOL 有意义（默认 LOWEST）
    - low_stock_threshold 为空时回落到全局 LOW_STOCK_THRESHOLD
    """

    __tablename__ = "resources"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    kind: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=ResourceKind.SIMPLE.value, index=True
    )

    tracks_stock: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    allow_backorders: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    low_stock_threshold: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)

    pricing_strategy: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=PricingStrategy.LOWEST.value
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )

    @property
    def is_pool(self) -> bool:
        return self.kind == ResourceKind.POOL

    @property
    def is_booking(self) -> bool:
        return self.kind == ResourceKind.BOOKING

    def __repr__(self) -> str:
        return f"<Resource id={self.id} kind={self.kind} name={self.name!r} tracks={self.tracks_stock}>"
