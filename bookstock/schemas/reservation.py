# bookstock/schemas/reservation.py
from __future__ import annotations

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from bookstock.models.enums import LineState


# ========= 通用基类 =========
class _Base(BaseModel):
    """允许 ORM / dataclass 输出、忽略多余字段"""

    model_config = ConfigDict(from_attributes=True, extra="ignore")


# ========= 出参 =========
class AvailabilityOut(_Base):
    resource_id: int
    available: bool
    max_quantity: int


class PoolClaimOut(_Base):
    pool_id: int
    reference: str
    allocated_resource_ids: List[int]


class ReleaseOut(_Base):
    released_count: int


class QuoteOut(_Base):
    resource_id: int
    unit_amount: int
    line_price: Optional[int] = None
    currency: str
    allocated_single_id: Optional[int] = None


class LineEvaluationOut(_Base):
    line_id: int
    state: LineState
    price: Optional[int] = None
    subtotal: Optional[int] = None
    currency: Optional[str] = None


class DayAvailabilityOut(_Base):
    day: date
    min_available: int
    max_available: int


class SingleAvailabilityOut(_Base):
    resource_id: int
    name: str
    kind: str
    tracks_stock: bool
    available: int
