# bookstock/models/resource_price.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from bookstock.db.base import Base
from bookstock.db.types import UTCDateTime


class ResourcePrice(Base):
    """
    资源价格（最小货币单位，整数）。

    - 同一资源多价格时必须恰好一个 is_default
    - sale_amount 在 [sale_start, sale_end) 内生效；两端可空表示无界
    """

    __tablename__ = "resource_prices"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    resource_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )

    amount: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    currency: Mapped[str] = mapped_column(sa.String(3), nullable=False)
    is_default: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)

    sale_amount: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    sale_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    sale_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ResourcePrice id={self.id} resource={self.resource_id} {self.amount} {self.currency} "
            f"default={self.is_default} sale={self.sale_amount}>"
        )
