# bookstock/services/reservation_line_service.py
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.clock import Clock, SystemClock
from bookstock.core.errors import InvalidMovement
from bookstock.core.tx import run_in_tx
from bookstock.core.windows import TimeWindow
from bookstock.models.enums import StockKind
from bookstock.models.reservation_line import ReservationLine
from bookstock.models.resource import Resource
from bookstock.services.line_evaluator import cart_lines
from bookstock.services.pool_allocator import PoolAllocator, line_ref, reprice_line
from bookstock.services.resource_repo import get_resource, get_resource_for_update

log = logging.getLogger("bookstock.lines")


class ReservationLineService:
    """
    购物车行的增删与改期：

    - add: 立即占用库存；池请求按分配结果拆成每个 single 一行
    - remove: 释放该行占用并删除行
    - change_window: 整车改期，委托给 PoolAllocator.reallocate
    - 需要窗口但未给窗口的行只建行不占用（评估为 NOT_READY_MISSING_WINDOW）
    """

    def __init__(self, clock: Optional[Clock] = None, *, allocator: Optional[PoolAllocator] = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self.allocator = allocator or PoolAllocator(self.clock)
        self.ledger = self.allocator.ledger
        self.pricing = self.allocator.pricing

    async def add(
        self,
        session: AsyncSession,
        *,
        cart_ref: str,
        resource_id: int,
        quantity: int = 1,
        window: Optional[TimeWindow] = None,
    ) -> List[ReservationLine]:
        if int(quantity) <= 0:
            raise InvalidMovement(f"quantity must be positive, got {quantity}")

        async def _op() -> List[ReservationLine]:
            resource = await get_resource(session, resource_id)
            bounded = window is not None and window.is_bounded

            if resource.is_pool:
                members = await self.allocator.members(session, resource.id)
                if not bounded and any(m.is_booking for m in members):
                    return [await self._new_line(session, cart_ref, resource, None, quantity, window)]
                _, allocations = await self.allocator.allocate(
                    session, pool_id=resource.id, quantity=quantity, window=window
                )
                by_id = {m.id: m for m in members}
                out: List[ReservationLine] = []
                for single_id, qty in allocations:
                    single = by_id[single_id]
                    ln = await self._new_line(session, cart_ref, resource, single, qty, window)
                    await self._claim(session, ln, single, window)
                    out.append(ln)
                return out

            if resource.is_booking and not bounded:
                return [await self._new_line(session, cart_ref, resource, None, quantity, window)]

            await get_resource_for_update(session, resource.id)
            ln = await self._new_line(session, cart_ref, resource, None, quantity, window)
            await self._claim(session, ln, resource, window)
            return [ln]

        lines = await run_in_tx(session, _op)
        log.info("cart %s: added %d line(s) for resource %s", cart_ref, len(lines), resource_id)
        return lines

    async def remove(self, session: AsyncSession, *, line_id: int) -> int:
        async def _op() -> int:
            ln = await session.get(ReservationLine, int(line_id))
            if ln is None:
                return 0
            released = await self.ledger.release(session, ref=line_ref(ln), reason="removed")
            await session.delete(ln)
            await session.flush()
            return released

        return await run_in_tx(session, _op)

    async def change_window(
        self, session: AsyncSession, *, cart_ref: str, window: Optional[TimeWindow]
    ) -> List[ReservationLine]:
        lines = await cart_lines(session, cart_ref)
        return await self.allocator.reallocate(session, lines, window)

    async def lines(self, session: AsyncSession, cart_ref: str) -> List[ReservationLine]:
        return await cart_lines(session, cart_ref)

    async def _new_line(
        self,
        session: AsyncSession,
        cart_ref: str,
        resource: Resource,
        single: Optional[Resource],
        quantity: int,
        window: Optional[TimeWindow],
    ) -> ReservationLine:
        now = self.clock.now()
        ln = ReservationLine(
            cart_ref=str(cart_ref),
            resource_id=resource.id,
            allocated_single_id=single.id if single is not None else None,
            quantity=int(quantity),
            window_start=window.start if window else None,
            window_end=window.end if window else None,
            created_at=now,
            updated_at=now,
        )
        session.add(ln)
        await session.flush()
        await reprice_line(self.pricing, session, ln, resource, single, window)
        await session.flush()
        return ln

    async def _claim(
        self,
        session: AsyncSession,
        ln: ReservationLine,
        target: Resource,
        window: Optional[TimeWindow],
    ) -> None:
        await self.ledger.record_movement(
            session,
            resource_id=target.id,
            kind=StockKind.CLAIM,
            quantity=int(ln.quantity),
            window=window,
            ref=line_ref(ln),
            note=f"line:{ln.id}",
        )
