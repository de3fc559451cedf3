# tests/services/test_reallocation.py
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from tests.helpers.catalog import NOW, add_price, make_pool, make_single, window

from bookstock.models.enums import LineState, StockKind
from bookstock.models.ref import Ref
from bookstock.services.line_evaluator import LineEvaluator
from bookstock.services.pool_allocator import PoolAllocator, line_ref
from bookstock.services.reservation_line_service import ReservationLineService

pytestmark = pytest.mark.contract

DAY = timedelta(days=1)


def _snapshot(lines):
    return [(ln.allocated_single_id, ln.unit_amount, ln.line_price, ln.line_subtotal) for ln in lines]


@pytest.mark.asyncio
async def test_reallocate_keeps_available_single_and_reprices(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines_svc = ReservationLineService(clock, allocator=allocator)
    pool, (a, b) = await make_pool(session, allocator, [("A", 20), ("B", 30)])

    (line,) = await lines_svc.add(
        session, cart_ref="cart-1", resource_id=pool.id, quantity=1, window=window(NOW + DAY, days=2)
    )
    assert (line.allocated_single_id, line.unit_amount, line.line_price) == (a.id, 20, 40)

    await lines_svc.change_window(session, cart_ref="cart-1", window=window(NOW + DAY, days=3))
    assert (line.allocated_single_id, line.line_price, line.line_subtotal) == (a.id, 60, 60)
    assert line.window_end == NOW + 4 * DAY

    pending = await allocator.ledger.pending_claims_for(session, line_ref(line))
    assert [(c.resource_id, c.window_end) for c in pending] == [(a.id, NOW + 4 * DAY)]


@pytest.mark.asyncio
async def test_reallocate_is_idempotent(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines_svc = ReservationLineService(clock, allocator=allocator)
    pool, _ = await make_pool(session, allocator, [("A", 20), ("B", 30), ("C", 25)])
    lines = await lines_svc.add(
        session, cart_ref="cart-1", resource_id=pool.id, quantity=2, window=window(NOW + DAY, days=1)
    )
    assert len(lines) == 2

    w = window(NOW + 10 * DAY, hours=36)
    first = _snapshot(await allocator.reallocate(session, lines, w))
    claims_after_first = [
        [c.id for c in await allocator.ledger.pending_claims_for(session, line_ref(ln))] for ln in lines
    ]
    second = _snapshot(await allocator.reallocate(session, lines, w))
    claims_after_second = [
        [c.id for c in await allocator.ledger.pending_claims_for(session, line_ref(ln))] for ln in lines
    ]

    assert first == second
    assert claims_after_first == claims_after_second
    assert len({ln.allocated_single_id for ln in lines}) == 2


@pytest.mark.asyncio
async def test_reallocate_moves_to_next_free_single(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines_svc = ReservationLineService(clock, allocator=allocator)
    pool, (a, b) = await make_pool(session, allocator, [("A", 20), ("B", 30)])
    (line,) = await lines_svc.add(
        session, cart_ref="cart-1", resource_id=pool.id, quantity=1, window=window(NOW + DAY, days=1)
    )
    assert line.allocated_single_id == a.id

    w = window(NOW + 5 * DAY, days=1)
    await allocator.ledger.record_movement(
        session, resource_id=a.id, kind=StockKind.CLAIM, quantity=1, window=w, ref=Ref.of("someone", 1)
    )

    await lines_svc.change_window(session, cart_ref="cart-1", window=w)
    assert (line.allocated_single_id, line.unit_amount, line.line_price) == (b.id, 30, 30)

    pending = await allocator.ledger.pending_claims_for(session, line_ref(line))
    assert [c.resource_id for c in pending] == [b.id]
    assert await LineEvaluator(clock, availability=allocator.availability).is_ready(session, line)


@pytest.mark.asyncio
async def test_reallocate_marks_line_unavailable_without_raising(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines_svc = ReservationLineService(clock, allocator=allocator)
    pool, (a, b) = await make_pool(session, allocator, [("A", 20), ("B", 30)])
    (line,) = await lines_svc.add(
        session, cart_ref="cart-1", resource_id=pool.id, quantity=1, window=window(NOW + DAY, days=1)
    )

    w = window(NOW + 5 * DAY, days=1)
    await allocator.claim(session, pool_id=pool.id, quantity=2, window=w, ref=Ref.of("someone", 1))

    await lines_svc.change_window(session, cart_ref="cart-1", window=w)
    assert _snapshot([line]) == [(None, None, None, None)]
    assert line.window_start == w.start
    assert await allocator.ledger.pending_claims_for(session, line_ref(line)) == []

    evaluation = await LineEvaluator(clock, availability=allocator.availability).evaluate(session, line)
    assert evaluation.state == LineState.NOT_READY_UNAVAILABLE
    assert evaluation.price is None

    # 换回可用窗口后恢复
    await lines_svc.change_window(session, cart_ref="cart-1", window=window(NOW + DAY, days=1))
    assert line.allocated_single_id == a.id
    assert line.line_price == 20


@pytest.mark.asyncio
async def test_batch_lines_do_not_share_a_single(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines_svc = ReservationLineService(clock, allocator=allocator)
    pool, (a, b, c) = await make_pool(session, allocator, [("A", 20), ("B", 30), ("C", 25)])
    lines = await lines_svc.add(
        session, cart_ref="cart-1", resource_id=pool.id, quantity=2, window=window(NOW + DAY, days=1)
    )
    assert sorted(ln.allocated_single_id for ln in lines) == sorted([a.id, c.id])

    # 新窗口里 A 被别人占了：只有一行需要迁移，且不能迁到另一行占着的 C
    w = window(NOW + 3 * DAY, days=1)
    await allocator.ledger.record_movement(
        session, resource_id=a.id, kind="CLAIM", quantity=1, window=w, ref=Ref.of("someone", 1)
    )
    await lines_svc.change_window(session, cart_ref="cart-1", window=w)
    assert sorted(ln.allocated_single_id for ln in lines) == sorted([b.id, c.id])

    # 三个都被占：两行都不可用
    w2 = window(NOW + 6 * DAY, days=1)
    await allocator.claim(session, pool_id=pool.id, quantity=3, window=w2, ref=Ref.of("someone", 2))
    await lines_svc.change_window(session, cart_ref="cart-1", window=w2)
    assert [ln.allocated_single_id for ln in lines] == [None, None]


@pytest.mark.asyncio
async def test_reallocate_plain_booking_line(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines_svc = ReservationLineService(clock, allocator=allocator)
    room = await make_single(session, allocator.ledger, name="room", price=10000)
    (line,) = await lines_svc.add(
        session, cart_ref="c", resource_id=room.id, quantity=1, window=window(NOW + DAY, days=1)
    )
    assert (line.allocated_single_id, line.line_price) == (None, 10000)

    await lines_svc.change_window(session, cart_ref="c", window=window(NOW + DAY, hours=12))
    assert line.line_price == 5000

    await allocator.ledger.record_movement(
        session,
        resource_id=room.id,
        kind="CLAIM",
        quantity=1,
        window=window(NOW + 4 * DAY, days=1),
        ref=Ref.of("someone", 1),
    )
    await lines_svc.change_window(session, cart_ref="c", window=window(NOW + 4 * DAY, days=1))
    assert line.line_price is None


@pytest.mark.asyncio
async def test_line_keeping_its_single_is_not_displaced_by_an_earlier_line(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines_svc = ReservationLineService(clock, allocator=allocator)
    pool, (a, b) = await make_pool(session, allocator, [("A", 20), ("B", 30)])
    first, second = await lines_svc.add(
        session, cart_ref="cart-1", resource_id=pool.id, quantity=2, window=window(NOW + DAY, days=1)
    )
    assert (first.allocated_single_id, second.allocated_single_id) == (a.id, b.id)

    # 新窗口里 A 被别人占了：第二行的 B 仍可用，必须保留；第一行无处可去
    w = window(NOW + 5 * DAY, days=1)
    await allocator.ledger.record_movement(
        session, resource_id=a.id, kind=StockKind.CLAIM, quantity=1, window=w, ref=Ref.of("someone", 1)
    )
    await allocator.reallocate(session, [first, second], w)

    assert second.allocated_single_id == b.id
    assert second.line_price == 30
    assert first.allocated_single_id is None
    assert first.line_price is None
    assert await allocator.ledger.pending_claims_for(session, line_ref(first)) == []
    assert [c.resource_id for c in await allocator.ledger.pending_claims_for(session, line_ref(second))] == [b.id]


@pytest.mark.asyncio
async def test_reallocate_turns_ambiguous_default_price_into_unavailable_line(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines_svc = ReservationLineService(clock, allocator=allocator)
    room = await make_single(session, allocator.ledger, name="room", price=100)
    (line,) = await lines_svc.add(
        session, cart_ref="c", resource_id=room.id, quantity=1, window=window(NOW + DAY, days=1)
    )
    assert line.line_price == 100

    await add_price(session, room, 120, is_default=True)
    await lines_svc.change_window(session, cart_ref="c", window=window(NOW + 2 * DAY, days=1))

    assert _snapshot([line]) == [(None, None, None, None)]
    assert await allocator.ledger.pending_claims_for(session, line_ref(line)) == []
    evaluation = await LineEvaluator(clock, availability=allocator.availability).evaluate(session, line)
    assert evaluation.state == LineState.NOT_READY_UNAVAILABLE


@pytest.mark.asyncio
async def test_reallocate_pool_line_with_misconfigured_single_price(session: AsyncSession, clock):
    allocator = PoolAllocator(clock)
    lines_svc = ReservationLineService(clock, allocator=allocator)
    pool, (a, b) = await make_pool(session, allocator, [("A", 20), ("B", 30)])
    (line,) = await lines_svc.add(
        session, cart_ref="c", resource_id=pool.id, quantity=1, window=window(NOW + DAY, days=1)
    )
    assert line.allocated_single_id == a.id

    await add_price(session, a, 25, is_default=True)
    await allocator.reallocate(session, [line], window(NOW + DAY, days=2))

    assert _snapshot([line]) == [(None, None, None, None)]
    assert await allocator.ledger.pending_claims_for(session, line_ref(line)) == []
