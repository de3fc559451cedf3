# bookstock/services/reservation_facade.py
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.clock import Clock, SystemClock
from bookstock.core.errors import LineNotFound
from bookstock.core.tx import run_in_tx
from bookstock.core.windows import TimeWindow
from bookstock.models.ref import Ref
from bookstock.models.reservation_line import ReservationLine
from bookstock.schemas.reservation import (
    AvailabilityOut,
    DayAvailabilityOut,
    LineEvaluationOut,
    PoolClaimOut,
    QuoteOut,
    ReleaseOut,
    SingleAvailabilityOut,
)
from bookstock.services.availability_service import AvailabilityService
from bookstock.services.calendar_service import CalendarService
from bookstock.services.ledger_service import LedgerService
from bookstock.services.line_evaluator import LineEvaluator
from bookstock.services.pool_allocator import PoolAllocator
from bookstock.services.pricing_service import PricingService
from bookstock.services.resource_repo import get_resource


def as_ref(reference: Ref | str) -> Ref:
    if isinstance(reference, Ref):
        return reference
    return Ref.of("reference", reference)


class ReservationFacade:
    """
    对外入口（购物车 / 订单逻辑调用）：

    - check_availability(resource_id, qty, from?, until?) -> {available, max_quantity}
    - claim_pool(pool_id, qty, from, until, reference)   -> {allocated_resource_ids}
    - release_pool(pool_id, reference)                   -> {released_count}
    - quote(resource_id, from?, until?, strict?)         -> {unit_amount, line_price, currency} | None
    - evaluate_line(line)                                -> {state, price, subtotal}

    事务边界：已在事务中则加入，否则自行 begin/commit。
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self.ledger = LedgerService(self.clock)
        self.availability = AvailabilityService(self.clock, ledger=self.ledger)
        self.pricing = PricingService(self.clock, availability=self.availability)
        self.allocator = PoolAllocator(
            self.clock, ledger=self.ledger, availability=self.availability, pricing=self.pricing
        )
        self.evaluator = LineEvaluator(self.clock, availability=self.availability)
        self.calendars = CalendarService(self.clock, availability=self.availability)

    async def check_availability(
        self,
        session: AsyncSession,
        resource_id: int,
        qty: int = 1,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AvailabilityOut:
        window = TimeWindow.of(start, end)

        async def _op() -> AvailabilityOut:
            resource = await get_resource(session, resource_id)
            max_qty = await self.availability.available(session, resource, window)
            return AvailabilityOut(
                resource_id=resource.id,
                available=max_qty >= int(qty),
                max_quantity=max(max_qty, 0),
            )

        return await run_in_tx(session, _op)

    async def claim_pool(
        self,
        session: AsyncSession,
        pool_id: int,
        qty: int,
        start: Optional[datetime],
        end: Optional[datetime],
        reference: Ref | str,
    ) -> PoolClaimOut:
        ref = as_ref(reference)
        window = TimeWindow.of(start, end)
        claim = await run_in_tx(
            session,
            lambda: self.allocator.claim(
                session, pool_id=pool_id, quantity=qty, window=window, ref=ref
            ),
        )
        return PoolClaimOut(
            pool_id=claim.pool_id,
            reference=str(ref),
            allocated_resource_ids=claim.allocated_resource_ids,
        )

    async def release_pool(
        self, session: AsyncSession, pool_id: int, reference: Ref | str
    ) -> ReleaseOut:
        ref = as_ref(reference)
        count = await run_in_tx(
            session, lambda: self.allocator.release(session, pool_id=pool_id, ref=ref)
        )
        return ReleaseOut(released_count=count)

    async def quote(
        self,
        session: AsyncSession,
        resource_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        strict: bool = False,
    ) -> Optional[QuoteOut]:
        window = TimeWindow.of(start, end)
        quote = await run_in_tx(
            session, lambda: self.pricing.quote(session, resource_id, window, strict=strict)
        )
        if quote is None:
            return None
        return QuoteOut.model_validate(quote)

    async def evaluate_line(
        self, session: AsyncSession, line: ReservationLine | int
    ) -> LineEvaluationOut:
        async def _op() -> LineEvaluationOut:
            ln = line
            if not isinstance(ln, ReservationLine):
                ln = await session.get(ReservationLine, int(line))
                if ln is None:
                    raise LineNotFound(int(line))
            return LineEvaluationOut.model_validate(await self.evaluator.evaluate(session, ln))

        return await run_in_tx(session, _op)

    async def calendar(
        self,
        session: AsyncSession,
        resource_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[DayAvailabilityOut]:
        async def _op() -> List[DayAvailabilityOut]:
            resource = await get_resource(session, resource_id)
            cal = await self.calendars.calendar(session, resource, start, end)
            return [DayAvailabilityOut.model_validate(d) for d in cal.days.values()]

        return await run_in_tx(session, _op)

    async def singles_availability(
        self,
        session: AsyncSession,
        pool_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SingleAvailabilityOut]:
        window = TimeWindow.of(start, end)
        rows = await run_in_tx(
            session, lambda: self.allocator.singles_availability(session, pool_id, window)
        )
        return [SingleAvailabilityOut.model_validate(r) for r in rows]
