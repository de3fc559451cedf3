# tests/unit/test_allocation_plan.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from bookstock.models.ref import Ref
from bookstock.models.resource import Resource
from bookstock.services.ledger_service import peak_concurrent
from bookstock.services.pool_allocator import Candidate, PoolClaim, plan

UTC = timezone.utc
T0 = datetime(2025, 1, 1, tzinfo=UTC)


def _c(rid: int, available: int) -> Candidate:
    return Candidate(resource=Resource(id=rid, name=f"s{rid}", kind="BOOKING"), available=available)


def test_plan_takes_greedily_in_order():
    assert plan([_c(1, 1), _c(2, 3), _c(3, 5)], 3) == [(1, 1), (2, 2)]


def test_plan_skips_empty_candidates():
    assert plan([_c(1, 0), _c(2, -1), _c(3, 2)], 2) == [(3, 2)]


def test_plan_is_short_when_not_enough():
    assert plan([_c(1, 1), _c(2, 1)], 3) == [(1, 1), (2, 1)]


def test_pool_claim_expands_ids_per_unit():
    claim = PoolClaim(pool_id=9, ref=Ref.of("order", 1), allocations=[(1, 2), (4, 1)])
    assert claim.allocated_resource_ids == [1, 1, 4]
    assert claim.quantity == 3


def test_peak_concurrent_half_open():
    d = lambda n: T0 + timedelta(days=n)  # noqa: E731
    # 背靠背不叠加
    assert peak_concurrent([(d(0), d(1), 1), (d(1), d(2), 1)]) == 1
    # 交叠叠加
    assert peak_concurrent([(d(0), d(2), 1), (d(1), d(3), 2)]) == 3
    # 无界起点 / 终点
    assert peak_concurrent([(None, d(1), 1), (d(0), None, 1), (d(5), d(6), 1)]) == 2
    assert peak_concurrent([]) == 0
