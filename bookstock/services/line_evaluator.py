# bookstock/services/line_evaluator.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.clock import Clock, SystemClock
from bookstock.core.windows import TimeWindow, overlaps
from bookstock.models.enums import LineState, ResourceKind
from bookstock.models.reservation_line import ReservationLine
from bookstock.models.resource import Resource
from bookstock.services.availability_service import AvailabilityService
from bookstock.services.pool_allocator import line_ref
from bookstock.services.resource_repo import get_resource, pool_members

log = logging.getLogger("bookstock.lines")


@dataclass(frozen=True)
class LineEvaluation:
    line_id: int
    state: LineState
    price: Optional[int]
    subtotal: Optional[int]
    currency: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.state == LineState.READY


async def cart_lines(session: AsyncSession, cart_ref: str) -> List[ReservationLine]:
    stmt = (
        select(ReservationLine)
        .where(ReservationLine.cart_ref == str(cart_ref))
        .order_by(ReservationLine.id.asc())
    )
    return list((await session.execute(stmt)).scalars().all())


class LineEvaluator:
    """
    购物车行就绪判定（只读，从不写台账）

    READY 需同时满足：
      - 需要窗口的资源有完整窗口，且 start < end
      - 池行已分配 single
      - 行价非空且 > 0
      - 扣除同一购物车内更早的、占用同一资源且窗口相交的兄弟行后，容量仍足够
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        availability: Optional[AvailabilityService] = None,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.availability = availability or AvailabilityService(self.clock)

    async def requires_window(self, session: AsyncSession, resource: Resource) -> bool:
        if resource.kind == ResourceKind.BOOKING:
            return True
        if resource.is_pool:
            return any(m.is_booking for m in await pool_members(session, resource.id))
        return False

    async def evaluate(
        self,
        session: AsyncSession,
        line: ReservationLine,
        siblings: Optional[Sequence[ReservationLine]] = None,
    ) -> LineEvaluation:
        resource = await get_resource(session, line.resource_id)
        start, end = line.window_start, line.window_end

        def _result(state: LineState) -> LineEvaluation:
            if state != LineState.READY:
                return LineEvaluation(line.id, state, None, None, line.currency)
            return LineEvaluation(line.id, state, line.line_price, line.line_subtotal, line.currency)

        if await self.requires_window(session, resource) and (start is None or end is None):
            return _result(LineState.NOT_READY_MISSING_WINDOW)
        if start is not None and end is not None and start >= end:
            return _result(LineState.NOT_READY_INVALID_WINDOW)
        if resource.is_pool and line.allocated_single_id is None:
            return _result(LineState.NOT_READY_UNAVAILABLE)
        if line.unit_amount is None or line.line_price is None or line.line_price <= 0:
            return _result(LineState.NOT_READY_UNAVAILABLE)

        if siblings is None:
            siblings = await cart_lines(session, line.cart_ref)
        if not await self._has_capacity(session, line, siblings):
            return _result(LineState.NOT_READY_UNAVAILABLE)
        return _result(LineState.READY)

    async def is_ready(
        self,
        session: AsyncSession,
        line: ReservationLine,
        siblings: Optional[Sequence[ReservationLine]] = None,
    ) -> bool:
        return (await self.evaluate(session, line, siblings)).ready

    async def evaluate_cart(self, session: AsyncSession, cart_ref: str) -> List[LineEvaluation]:
        lines = await cart_lines(session, cart_ref)
        return [await self.evaluate(session, ln, lines) for ln in lines]

    async def is_cart_ready(self, session: AsyncSession, cart_ref: str) -> bool:
        """所有行都 READY 才算就绪；空购物车不算就绪。"""
        results = await self.evaluate_cart(session, cart_ref)
        return bool(results) and all(r.ready for r in results)

    async def _has_capacity(
        self,
        session: AsyncSession,
        line: ReservationLine,
        siblings: Sequence[ReservationLine],
    ) -> bool:
        consumed = await get_resource(session, line.consumed_resource_id)
        if consumed.is_pool or not consumed.tracks_stock:
            return True

        window = TimeWindow.of(line.window_start, line.window_end)
        cart = [s for s in siblings if s.cart_ref == line.cart_ref]
        if all(s.id != line.id for s in cart):
            cart.append(line)

        earlier = [
            s
            for s in cart
            if s.id < line.id
            and s.consumed_resource_id == consumed.id
            and overlaps(s.window_start, s.window_end, line.window_start, line.window_end)
        ]
        need = int(line.quantity) + sum(int(s.quantity) for s in earlier)
        avail = await self.availability.available(
            session, consumed, window, exclude_refs=[line_ref(s) for s in cart]
        )
        if avail < need:
            log.debug("line %s: need=%d available=%d on resource %s", line.id, need, avail, consumed.id)
            return False
        return True
