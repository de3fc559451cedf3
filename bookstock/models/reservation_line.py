# bookstock/models/reservation_line.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from bookstock.db.base import Base
from bookstock.db.types import UTCDateTime


class ReservationLine(Base):
    """
    购物车行：

    - resource_id: 用户请求的资源（pool 或 simple/booking）
    - allocated_single_id: resource 为 pool 时实际分配的 single；不可用时为空
    - selected_price_id: 实际计价所用的价格（可能是 pool 的兜底价）
    - unit_amount / line_price / line_subtotal: 不可用时全部置空
    """

    __tablename__ = "reservation_lines"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    cart_ref: Mapped[str] = mapped_column(sa.String(128), nullable=False, index=True)

    resource_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    allocated_single_id: Mapped[int | None] = mapped_column(
        sa.Integer, sa.ForeignKey("resources.id", ondelete="SET NULL"), nullable=True
    )
    selected_price_id: Mapped[int | None] = mapped_column(
        sa.Integer, sa.ForeignKey("resource_prices.id", ondelete="SET NULL"), nullable=True
    )

    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    window_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    window_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    currency: Mapped[str | None] = mapped_column(sa.String(3), nullable=True)
    unit_amount: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    line_price: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    line_subtotal: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def consumed_resource_id(self) -> int | None:
        """真正占用库存的资源：pool 行取分配的 single，否则取自身。"""
        if self.allocated_single_id is not None:
            return self.allocated_single_id
        return self.resource_id

    def mark_unavailable(self) -> None:
        self.allocated_single_id = None
        self.selected_price_id = None
        self.unit_amount = None
        self.line_price = None
        self.line_subtotal = None

    def __repr__(self) -> str:
        return (
            f"<ReservationLine id={self.id} cart={self.cart_ref} res={self.resource_id} "
            f"single={self.allocated_single_id} qty={self.quantity} "
            f"window=[{self.window_start},{self.window_end}) subtotal={self.line_subtotal}>"
        )
