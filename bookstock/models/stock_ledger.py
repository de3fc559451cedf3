# bookstock/models/stock_ledger.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from bookstock.db.base import Base
from bookstock.db.types import UTCDateTime
from bookstock.models.enums import StockKind, StockStatus
from bookstock.models.ref import Ref


class StockLedger(Base):
    """
    库存台账（只追加；CLAIM 只允许 PENDING → COMPLETED）

    - INCREASE / DECREASE 无窗口：永久库存
    - CLAIM 成对写入：DECREASE(-q, COMPLETED, paired_claim_id) + CLAIM(+q, PENDING)
      配对 DECREASE 仅作历史，不计入容量
    - window_end 过期的 PENDING CLAIM 在查询时惰性排除
    """

    __tablename__ = "stock_ledger"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    resource_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )

    kind: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=StockStatus.COMPLETED.value
    )

    window_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    window_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    ref_type: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    ref_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)

    paired_claim_id: Mapped[int | None] = mapped_column(
        sa.Integer, sa.ForeignKey("stock_ledger.id", ondelete="SET NULL"), nullable=True
    )

    note: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        sa.Index("ix_ledger_resource_kind_status", "resource_id", "kind", "status"),
        sa.Index("ix_ledger_ref", "ref_type", "ref_id"),
        sa.Index("ix_ledger_window_end", "window_end"),
    )

    @property
    def ref(self) -> Ref | None:
        if self.ref_type is None or self.ref_id is None:
            return None
        return Ref(self.ref_type, self.ref_id)

    @property
    def is_pending_claim(self) -> bool:
        return self.kind == StockKind.CLAIM and self.status == StockStatus.PENDING

    def __repr__(self) -> str:
        return (
            f"<Ledger {self.kind} res={self.resource_id} qty={self.quantity} status={self.status} "
            f"window=[{self.window_start},{self.window_end}) ref={self.ref_type}:{self.ref_id}>"
        )
