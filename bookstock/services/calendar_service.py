# bookstock/services/calendar_service.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.clock import UTC, Clock, SystemClock
from bookstock.core.config import get_settings
from bookstock.core.errors import InvalidWindow, NotAPool
from bookstock.core.windows import TimeWindow
from bookstock.models.resource import Resource
from bookstock.services.availability_service import (
    UNLIMITED,
    AvailabilityService,
    counts_toward_pool,
)
from bookstock.services.resource_repo import pool_members


@dataclass(frozen=True)
class DayAvailability:
    day: date
    min_available: int
    max_available: int


@dataclass
class AvailabilityCalendar:
    resource_id: int
    days: Dict[date, DayAvailability] = field(default_factory=dict)

    @property
    def min_available(self) -> int:
        if not self.days:
            return UNLIMITED
        return min(d.min_available for d in self.days.values())

    @property
    def max_available(self) -> int:
        if not self.days:
            return UNLIMITED
        return max(d.max_available for d in self.days.values())


@dataclass(frozen=True)
class AvailablePeriod:
    start: date
    end: date
    min_available: int

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


def day_window(day: date) -> TimeWindow:
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return TimeWindow(start, start + timedelta(days=1))


class CalendarService:
    """
    按天的可用量日历（UTC 日界）。

    每天在"日初 + 当天内所有 CLAIM 起止时刻"上取样，给出当天最小 / 最大可用量；
    池按可计入的 single 逐日求和。
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        availability: Optional[AvailabilityService] = None,
        default_days: Optional[int] = None,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.availability = availability or AvailabilityService(self.clock)
        self.ledger = self.availability.ledger
        if default_days is None:
            default_days = get_settings().CALENDAR_DEFAULT_DAYS
        self.default_days = int(default_days)

    async def calendar(
        self,
        session: AsyncSession,
        resource: Resource,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> AvailabilityCalendar:
        first = start or self.clock.now().date()
        last = end or first + timedelta(days=self.default_days)
        if last < first:
            raise InvalidWindow(
                datetime.combine(first, time.min, tzinfo=UTC),
                datetime.combine(last, time.min, tzinfo=UTC),
            )

        cal = AvailabilityCalendar(resource_id=resource.id)
        if resource.is_pool:
            singles = [m for m in await pool_members(session, resource.id) if counts_toward_pool(m)]
            per_single = [await self._single_days(session, s, first, last) for s in singles]
            day = first
            while day <= last:
                lo = sum(d[day][0] for d in per_single)
                hi = sum(d[day][1] for d in per_single)
                cal.days[day] = DayAvailability(day, lo, hi)
                day += timedelta(days=1)
            return cal

        if not resource.tracks_stock:
            return cal

        for day, (lo, hi) in (await self._single_days(session, resource, first, last)).items():
            cal.days[day] = DayAvailability(day, lo, hi)
        return cal

    async def _single_days(
        self, session: AsyncSession, single: Resource, first: date, last: date
    ) -> Dict[date, tuple[int, int]]:
        cap = await self.ledger.capacity(session, single.id)
        claims = await self.ledger.active_claims(session, single.id)
        spans = [TimeWindow(c.window_start, c.window_end) for c in claims]
        qtys = [int(c.quantity) for c in claims]

        out: Dict[date, tuple[int, int]] = {}
        day = first
        while day <= last:
            dw = day_window(day)
            samples = {dw.start}
            for w in spans:
                for t in (w.start, w.end):
                    if t is not None and dw.contains(t):
                        samples.add(t)
            values: List[int] = []
            for t in samples:
                active = sum(q for w, q in zip(spans, qtys) if w.contains(t))
                values.append(max(cap - active, 0))
            out[day] = (min(values), max(values))
            day += timedelta(days=1)
        return out

    async def pool_available_periods(
        self,
        session: AsyncSession,
        pool: Resource,
        start: date,
        end: date,
        *,
        quantity: int = 1,
        min_consecutive_days: int = 1,
    ) -> List[AvailablePeriod]:
        """连续若干天（每天整天窗口内）池可用量 >= quantity 的区段。"""
        if not pool.is_pool:
            raise NotAPool(pool.id)

        periods: List[AvailablePeriod] = []
        run_start: Optional[date] = None
        run_min = UNLIMITED
        day = start
        while day <= end + timedelta(days=1):
            ok = False
            avail = 0
            if day <= end:
                avail = await self.availability.pool_available(session, pool, day_window(day))
                ok = avail >= int(quantity)
            if ok:
                if run_start is None:
                    run_start, run_min = day, avail
                else:
                    run_min = min(run_min, avail)
            elif run_start is not None:
                period = AvailablePeriod(run_start, day - timedelta(days=1), run_min)
                if period.days >= int(min_consecutive_days):
                    periods.append(period)
                run_start, run_min = None, UNLIMITED
            day += timedelta(days=1)
        return periods
