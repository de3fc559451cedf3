# tests/services/test_line_evaluator.py
from __future__ import annotations

from datetime import timedelta
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers.catalog import NOW, make_pool, make_single, window

from bookstock.core.windows import TimeWindow
from bookstock.models.enums import LineState, ResourceKind
from bookstock.models.reservation_line import ReservationLine
from bookstock.models.resource import Resource
from bookstock.services.line_evaluator import LineEvaluator
from bookstock.services.pool_allocator import PoolAllocator
from bookstock.services.reservation_line_service import ReservationLineService

pytestmark = pytest.mark.contract

DAY = timedelta(days=1)


async def _line(
    session: AsyncSession,
    resource: Resource,
    *,
    cart_ref: str = "cart-1",
    w: Optional[TimeWindow] = None,
    start=None,
    end=None,
    quantity: int = 1,
    unit_amount: Optional[int] = 100,
    line_price: Optional[int] = 100,
    allocated_single_id: Optional[int] = None,
) -> ReservationLine:
    """直接建行（不占用库存），用来单独验证评估规则。"""
    if w is not None:
        start, end = w.start, w.end
    ln = ReservationLine(
        cart_ref=cart_ref,
        resource_id=resource.id,
        allocated_single_id=allocated_single_id,
        quantity=quantity,
        window_start=start,
        window_end=end,
        currency="EUR" if unit_amount is not None else None,
        unit_amount=unit_amount,
        line_price=line_price,
        line_subtotal=line_price * quantity if line_price is not None else None,
        created_at=NOW,
        updated_at=NOW,
    )
    session.add(ln)
    await session.flush()
    return ln


@pytest.mark.asyncio
async def test_booking_line_without_window_is_missing_window(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    room = await make_single(session, allocator.ledger, name="room", price=100)
    ln = await _line(session, room)

    result = await LineEvaluator(clock).evaluate(session, ln)
    assert result.state == LineState.NOT_READY_MISSING_WINDOW
    assert (result.price, result.subtotal) == (None, None)


@pytest.mark.asyncio
async def test_pool_of_bookings_requires_window(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    pool, (a,) = await make_pool(session, allocator, [("A", 20)])
    ln = await _line(session, pool, allocated_single_id=a.id)

    result = await LineEvaluator(clock).evaluate(session, ln)
    assert result.state == LineState.NOT_READY_MISSING_WINDOW


@pytest.mark.asyncio
async def test_inverted_window_is_invalid(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    room = await make_single(session, allocator.ledger, name="room", price=100)
    ln = await _line(session, room, start=NOW + 2 * DAY, end=NOW + DAY)

    result = await LineEvaluator(clock).evaluate(session, ln)
    assert result.state == LineState.NOT_READY_INVALID_WINDOW


@pytest.mark.asyncio
@pytest.mark.parametrize("line_price", [None, 0])
async def test_line_without_positive_price_is_unavailable(session: AsyncSession, clock, line_price):
    allocator = PoolAllocator(clock)
    room = await make_single(session, allocator.ledger, name="room", price=100)
    ln = await _line(session, room, w=window(NOW + DAY, days=1), line_price=line_price)

    result = await LineEvaluator(clock).evaluate(session, ln)
    assert result.state == LineState.NOT_READY_UNAVAILABLE


@pytest.mark.asyncio
async def test_pool_line_without_allocation_is_unavailable(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    pool, _ = await make_pool(session, allocator, [("A", 20)])
    ln = await _line(session, pool, w=window(NOW + DAY, days=1))

    result = await LineEvaluator(clock).evaluate(session, ln)
    assert result.state == LineState.NOT_READY_UNAVAILABLE


@pytest.mark.asyncio
async def test_simple_line_ready_without_window(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    widget = await make_single(session, allocator.ledger, name="widget", price=499, qty=3, kind=ResourceKind.SIMPLE)
    ln = await _line(session, widget, quantity=2, unit_amount=499, line_price=499)

    result = await LineEvaluator(clock).evaluate(session, ln)
    assert result.ready
    assert (result.price, result.subtotal, result.currency) == (499, 998, "EUR")


@pytest.mark.asyncio
async def test_siblings_on_same_resource_share_capacity(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    room = await make_single(session, allocator.ledger, name="room", price=100)
    evaluator = LineEvaluator(clock)

    first = await _line(session, room, w=window(NOW + DAY, days=2))
    second = await _line(session, room, w=window(NOW + 2 * DAY, days=2))
    assert await evaluator.is_ready(session, first)
    assert not await evaluator.is_ready(session, second)
    assert not await evaluator.is_cart_ready(session, "cart-1")

    # 背靠背不相交
    second.window_start, second.window_end = NOW + 3 * DAY, NOW + 4 * DAY
    await session.flush()
    assert await evaluator.is_ready(session, second)
    assert await evaluator.is_cart_ready(session, "cart-1")

    # 其它购物车的行不算兄弟
    other = await _line(session, room, cart_ref="cart-2", w=window(NOW + DAY, days=1))
    assert await evaluator.is_ready(session, other)


@pytest.mark.asyncio
async def test_cart_own_claims_are_added_back(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines = ReservationLineService(clock, allocator=allocator)
    room = await make_single(session, allocator.ledger, name="room", price=100)
    w = window(NOW + DAY, days=1)

    (ln,) = await lines.add(session, cart_ref="cart-1", resource_id=room.id, window=w)
    assert await allocator.availability.available(session, room, w) == 0

    evaluator = LineEvaluator(clock, availability=allocator.availability)
    result = await evaluator.evaluate(session, ln)
    assert result.state == LineState.READY
    assert (result.price, result.subtotal) == (100, 100)

    # 别的购物车同窗口：已被占满
    (other,) = await lines.add(session, cart_ref="cart-2", resource_id=room.id, window=window(NOW + 5 * DAY, days=1))
    other.window_start, other.window_end = w.start, w.end
    await session.flush()
    assert not await evaluator.is_ready(session, other)


@pytest.mark.asyncio
async def test_empty_cart_is_not_ready(session: AsyncSession, clock):
    assert not await LineEvaluator(clock).is_cart_ready(session, "nothing-here")
    assert await LineEvaluator(clock).evaluate_cart(session, "nothing-here") == []
