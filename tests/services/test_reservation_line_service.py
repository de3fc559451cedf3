# tests/services/test_reservation_line_service.py
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers.catalog import NOW, make_pool, make_single, window

from bookstock.core.errors import InvalidMovement, NotEnoughAvailable
from bookstock.models.enums import ResourceKind, StockStatus
from bookstock.services.pool_allocator import PoolAllocator, line_ref
from bookstock.services.reservation_line_service import ReservationLineService

pytestmark = pytest.mark.contract

DAY = timedelta(days=1)


@pytest.mark.asyncio
async def test_add_simple_line_claims_without_window(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    svc = ReservationLineService(clock, allocator=allocator)
    widget = await make_single(session, allocator.ledger, name="widget", price=499, qty=5, kind=ResourceKind.SIMPLE)

    (ln,) = await svc.add(session, cart_ref="cart-1", resource_id=widget.id, quantity=2)
    assert (ln.quantity, ln.unit_amount, ln.line_price, ln.line_subtotal) == (2, 499, 499, 998)
    assert ln.allocated_single_id is None

    (claim,) = await allocator.ledger.pending_claims_for(session, line_ref(ln))
    assert (claim.resource_id, claim.quantity, claim.window_end) == (widget.id, 2, None)
    assert await allocator.availability.available(session, widget) == 3


@pytest.mark.asyncio
async def test_add_pool_splits_into_one_line_per_single(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    svc = ReservationLineService(clock, allocator=allocator)
    pool, (a, b, c) = await make_pool(session, allocator, [("A", 20), ("B", 30), ("C", 25)])
    w = window(NOW + DAY, days=2)

    lines = await svc.add(session, cart_ref="cart-1", resource_id=pool.id, quantity=2, window=w)
    assert [(ln.allocated_single_id, ln.quantity, ln.line_price) for ln in lines] == [
        (a.id, 1, 40),
        (c.id, 1, 50),
    ]
    assert all(ln.resource_id == pool.id for ln in lines)
    assert await allocator.max_available_quantity(session, pool, w) == 1

    with pytest.raises(NotEnoughAvailable):
        await svc.add(session, cart_ref="cart-2", resource_id=pool.id, quantity=2, window=w)
    assert len(await svc.lines(session, "cart-2")) == 0


@pytest.mark.asyncio
async def test_add_booking_without_window_creates_unclaimed_line(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    svc = ReservationLineService(clock, allocator=allocator)
    room = await make_single(session, allocator.ledger, name="room", price=100)

    (ln,) = await svc.add(session, cart_ref="cart-1", resource_id=room.id)
    assert ln.line_price is None
    assert await allocator.ledger.pending_claims_for(session, line_ref(ln)) == []

    # 之后补上窗口
    await svc.change_window(session, cart_ref="cart-1", window=window(NOW + DAY, days=1))
    assert ln.line_price == 100
    assert len(await allocator.ledger.pending_claims_for(session, line_ref(ln))) == 1


@pytest.mark.asyncio
async def test_remove_releases_claim(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    svc = ReservationLineService(clock, allocator=allocator)
    room = await make_single(session, allocator.ledger, name="room", price=100)
    w = window(NOW + DAY, days=1)

    (ln,) = await svc.add(session, cart_ref="cart-1", resource_id=room.id, window=w)
    (claim,) = await allocator.ledger.pending_claims_for(session, line_ref(ln))
    assert await allocator.availability.available(session, room, w) == 0

    assert await svc.remove(session, line_id=ln.id) == 1
    assert claim.status == StockStatus.COMPLETED.value
    assert await allocator.availability.available(session, room, w) == 1
    assert await svc.lines(session, "cart-1") == []

    # 不存在的行
    assert await svc.remove(session, line_id=9999) == 0


@pytest.mark.asyncio
async def test_add_rejects_non_positive_quantity(session: AsyncSession, clock):
    svc = ReservationLineService(clock)
    with pytest.raises(InvalidMovement):
        await svc.add(session, cart_ref="c", resource_id=1, quantity=0)
