# bookstock/core/windows.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from bookstock.core.clock import as_utc
from bookstock.core.errors import InvalidWindow

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class TimeWindow:
    """
    半开区间 [start, end)。

    - start / end 均可为 None，表示该侧无界
    - 两侧都给出时必须 start < end
    """

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self) -> None:
        s = as_utc(self.start) if self.start is not None else None
        e = as_utc(self.end) if self.end is not None else None
        if s is not None and e is not None and s >= e:
            raise InvalidWindow(s, e)
        object.__setattr__(self, "start", s)
        object.__setattr__(self, "end", e)

    @property
    def is_bounded(self) -> bool:
        return self.start is not None and self.end is not None

    def overlaps(self, other: "TimeWindow") -> bool:
        return overlaps(self.start, self.end, other.start, other.end)

    def contains(self, at: datetime) -> bool:
        at = as_utc(at)
        if self.start is not None and at < self.start:
            return False
        if self.end is not None and at >= self.end:
            return False
        return True

    def seconds(self) -> int:
        if not self.is_bounded:
            raise InvalidWindow(self.start, self.end, message="window is not bounded")
        return int((self.end - self.start).total_seconds())

    def days(self) -> Decimal:
        """精确的小数天数（不取整）。"""
        if not self.is_bounded:
            raise InvalidWindow(self.start, self.end, message="window is not bounded")
        delta = self.end - self.start
        micros = (delta.days * SECONDS_PER_DAY + delta.seconds) * 1_000_000 + delta.microseconds
        return Decimal(micros) / Decimal(SECONDS_PER_DAY * 1_000_000)

    @classmethod
    def of(cls, start: Optional[datetime], end: Optional[datetime]) -> Optional["TimeWindow"]:
        """两侧都为 None → None（无窗口请求）。"""
        if start is None and end is None:
            return None
        return cls(start, end)


def overlaps(
    a_start: Optional[datetime],
    a_end: Optional[datetime],
    b_start: Optional[datetime],
    b_end: Optional[datetime],
) -> bool:
    """
    [a1,a2) 与 [b1,b2) 相交 ⇔ a1 < b2 且 b1 < a2。

    None 视为无界；背靠背（a2 == b1）不相交。
    """
    if a_start is not None and b_end is not None and not (as_utc(a_start) < as_utc(b_end)):
        return False
    if b_start is not None and a_end is not None and not (as_utc(b_start) < as_utc(a_end)):
        return False
    return True


def require_window(start: Optional[datetime], end: Optional[datetime]) -> TimeWindow:
    if start is None or end is None:
        raise InvalidWindow(start, end, message="both window bounds are required")
    return TimeWindow(start, end)
