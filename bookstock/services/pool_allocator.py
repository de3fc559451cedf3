# bookstock/services/pool_allocator.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.clock import Clock, SystemClock
from bookstock.core.errors import (
    InsufficientCapacity,
    InvalidPoolConfiguration,
    NoDefaultPrice,
    NotAPool,
    NotEnoughAvailable,
    PoolHasNoMembers,
)
from bookstock.core.tx import run_in_tx
from bookstock.core.windows import TimeWindow
from bookstock.metrics import CLAIM_FAILURES, CLAIMS, REALLOCATIONS
from bookstock.models.enums import RelationType, StockKind
from bookstock.models.ref import Ref
from bookstock.models.reservation_line import ReservationLine
from bookstock.models.resource import Resource
from bookstock.models.resource_relation import ResourceRelation
from bookstock.services.availability_service import UNLIMITED, AvailabilityService, counts_toward_pool
from bookstock.services.ledger_service import LedgerService
from bookstock.services.pricing_service import PricingService
from bookstock.services.resource_repo import (
    get_resource,
    get_resource_for_update,
    get_resources,
    lock_resources,
    pool_members,
)

log = logging.getLogger("bookstock.pool")


def line_ref(line: ReservationLine) -> Ref:
    return Ref.of("reservation_line", line.id)


@dataclass(frozen=True)
class Candidate:
    """分配候选：按分配顺序排列的 single 及其当前可用量。"""

    resource: Resource
    available: int


@dataclass
class PoolClaim:
    pool_id: int
    ref: Ref
    allocations: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def allocated_resource_ids(self) -> List[int]:
        """每单位一个 id（同一 single 分得多件时重复出现）。"""
        out: List[int] = []
        for single_id, qty in self.allocations:
            out.extend([single_id] * qty)
        return out

    @property
    def quantity(self) -> int:
        return sum(q for _, q in self.allocations)


@dataclass
class PoolValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SingleAvailability:
    resource_id: int
    name: str
    kind: str
    tracks_stock: bool
    available: int


@dataclass(frozen=True)
class _LineOptions:
    """reallocate 内部：某行当前占用的资源 id 与按分配顺序的候选。"""

    current_id: Optional[int]
    candidates: List[Candidate]


def plan(candidates: Sequence[Candidate], quantity: int) -> List[Tuple[int, int]]:
    """
    贪心分配（纯函数）：按顺序从每个 single 取 min(可用, 剩余)。

    调用方须先确认总可用量足够；不足时返回的计划数量小于 quantity。
    """
    remaining = int(quantity)
    out: List[Tuple[int, int]] = []
    for c in candidates:
        if remaining <= 0:
            break
        take = min(max(c.available, 0), remaining)
        if take > 0:
            out.append((c.resource.id, take))
            remaining -= take
    return out


class PoolAllocator:
    """
    池分配器：

    - claim：按 id 升序一次锁住池行 + 全部成员行，选择与落账在同一把锁内完成，要么全成要么全不成
    - reallocate：窗口变化后先整批保留、再迁移、否则置为不可用，从不抛出可用性错误
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        ledger: Optional[LedgerService] = None,
        availability: Optional[AvailabilityService] = None,
        pricing: Optional[PricingService] = None,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.ledger = ledger or LedgerService(self.clock)
        self.availability = availability or AvailabilityService(self.clock, ledger=self.ledger)
        self.pricing = pricing or PricingService(self.clock, availability=self.availability)

    # ------------------------------------------------------------------
    # 成员关系（双向，同一事务）
    # ------------------------------------------------------------------
    async def attach_singles(
        self, session: AsyncSession, *, pool_id: int, single_ids: Iterable[int]
    ) -> int:
        ids = [int(x) for x in single_ids]

        async def _op() -> int:
            pool = await get_resource_for_update(session, pool_id)
            if not pool.is_pool:
                raise NotAPool(pool_id)
            existing = {m.id for m in await pool_members(session, pool.id)}
            next_pos = await self._next_position(session, pool.id)
            singles = await get_resources(session, ids)
            attached = 0
            for sid in ids:
                if sid in existing:
                    continue
                single = singles.get(sid) or await get_resource(session, sid)
                if single.is_pool:
                    raise InvalidPoolConfiguration(pool.id, [f"resource {sid} is a pool, not a single"])
                session.add(
                    ResourceRelation(
                        resource_id=pool.id,
                        related_id=sid,
                        relation_type=RelationType.SINGLE.value,
                        position=next_pos,
                    )
                )
                session.add(
                    ResourceRelation(
                        resource_id=sid,
                        related_id=pool.id,
                        relation_type=RelationType.POOL.value,
                        position=0,
                    )
                )
                existing.add(sid)
                next_pos += 1
                attached += 1
            await session.flush()
            log.info("attached %d single(s) to pool %s", attached, pool.id)
            return attached

        return await run_in_tx(session, _op)

    async def detach_single(self, session: AsyncSession, *, pool_id: int, single_id: int) -> bool:
        async def _op() -> bool:
            stmt = select(ResourceRelation).where(
                (
                    (ResourceRelation.resource_id == int(pool_id))
                    & (ResourceRelation.related_id == int(single_id))
                    & (ResourceRelation.relation_type == RelationType.SINGLE.value)
                )
                | (
                    (ResourceRelation.resource_id == int(single_id))
                    & (ResourceRelation.related_id == int(pool_id))
                    & (ResourceRelation.relation_type == RelationType.POOL.value)
                )
            )
            rows = (await session.execute(stmt)).scalars().all()
            for row in rows:
                await session.delete(row)
            await session.flush()
            return bool(rows)

        return await run_in_tx(session, _op)

    async def members(self, session: AsyncSession, pool_id: int) -> List[Resource]:
        return await pool_members(session, pool_id)

    # ------------------------------------------------------------------
    # 可用量 / 分配顺序
    # ------------------------------------------------------------------
    async def max_available_quantity(
        self,
        session: AsyncSession,
        pool: Resource,
        window: Optional[TimeWindow] = None,
        *,
        exclude_refs: Sequence[Ref] = (),
    ) -> int:
        if not pool.is_pool:
            raise NotAPool(pool.id)
        return await self.availability.pool_available(
            session, pool, window, exclude_refs=exclude_refs
        )

    async def allocation_order(
        self,
        session: AsyncSession,
        pool: Resource,
        window: Optional[TimeWindow] = None,
        *,
        members: Optional[Sequence[Resource]] = None,
        exclude_refs: Sequence[Ref] = (),
    ) -> List[Candidate]:
        """可计入池容量的 single，按策略排序，附带窗口内可用量。"""
        if members is None:
            members = await pool_members(session, pool.id)
        eligible = [m for m in members if counts_toward_pool(m)]
        by_id = {m.id: m for m in eligible}
        out: List[Candidate] = []
        for ranked in await self.pricing.ranked_singles(session, pool, eligible):
            single = by_id[ranked.resource_id]
            avail = await self.availability.available(
                session, single, window, exclude_refs=exclude_refs
            )
            out.append(Candidate(resource=single, available=max(avail, 0)))
        return out

    async def lock_pool(self, session: AsyncSession, pool_id: int) -> Tuple[Resource, List[Resource]]:
        """
        锁定池行与全部成员行：池与成员一起按 id 升序加锁（与 reallocate 同序）。

        先无锁读出池与成员做校验，加锁后再读一次成员。
        """
        pool = await get_resource(session, pool_id)
        if not pool.is_pool:
            raise NotAPool(pool_id)
        members = await pool_members(session, pool.id)
        if not members:
            raise PoolHasNoMembers(pool.id)
        await lock_resources(session, [pool.id, *(m.id for m in members)])
        members = await pool_members(session, pool.id)
        if not members:
            raise PoolHasNoMembers(pool.id)
        return pool, members

    async def allocate(
        self,
        session: AsyncSession,
        *,
        pool_id: int,
        quantity: int,
        window: Optional[TimeWindow] = None,
    ) -> Tuple[Resource, List[Tuple[int, int]]]:
        """
        在锁内生成分配计划（不落账）。调用方须处于同一事务中，并在同一事务内落账。

        可用量不足 → NotEnoughAvailable(requested, available)
        """
        pool, members = await self.lock_pool(session, pool_id)
        order = await self.allocation_order(session, pool, window, members=members)
        total = sum(c.available for c in order)
        if total < int(quantity):
            CLAIM_FAILURES.labels(scope="pool").inc()
            log.info("pool %s: requested=%s available=%s", pool.id, quantity, total)
            raise NotEnoughAvailable(int(quantity), total, resource_id=pool.id)
        return pool, plan(order, quantity)

    # ------------------------------------------------------------------
    # claim / release
    # ------------------------------------------------------------------
    async def claim(
        self,
        session: AsyncSession,
        *,
        pool_id: int,
        quantity: int,
        window: Optional[TimeWindow],
        ref: Ref,
    ) -> PoolClaim:
        async def _op() -> PoolClaim:
            pool, allocations = await self.allocate(
                session, pool_id=pool_id, quantity=quantity, window=window
            )
            for single_id, qty in allocations:
                await self.ledger.record_movement(
                    session,
                    resource_id=single_id,
                    kind=StockKind.CLAIM,
                    quantity=qty,
                    window=window,
                    ref=ref,
                    note=f"pool:{pool.id}",
                )
            CLAIMS.labels(scope="pool").inc()
            log.info("pool %s claimed %s for ref=%s", pool.id, allocations, ref)
            return PoolClaim(pool_id=pool.id, ref=ref, allocations=list(allocations))

        return await run_in_tx(session, _op)

    async def release(self, session: AsyncSession, *, pool_id: int, ref: Ref) -> int:
        """释放该 ref 在池内各 single 上的 PENDING CLAIM。"""
        pool = await get_resource(session, pool_id)
        if not pool.is_pool:
            raise NotAPool(pool_id)
        members = await pool_members(session, pool.id)
        return await self.ledger.release(session, ref=ref, resource_ids=[m.id for m in members])

    # ------------------------------------------------------------------
    # reallocate
    # ------------------------------------------------------------------
    async def reallocate(
        self,
        session: AsyncSession,
        lines: Sequence[ReservationLine],
        window: Optional[TimeWindow],
    ) -> List[ReservationLine]:
        """
        窗口变化后重新分配（每行）：

        1) 当前 single 在新窗口仍可用 → 保留，只重新计价（先为所有行做这一步）
        2) 否则按分配顺序找下一个空闲 single（跳过本批其它行已占用的）→ 迁移
        3) 都不行 → 行置为不可用（分配与价格全部置空，释放原占用）

        批内各行自身的旧占用不参与可用量计算；只重写发生变化的行的占用。
        价格配置错误（NoDefaultPrice）同样只把该行置为不可用，不抛出。
        """
        ordered = sorted(lines, key=lambda ln: ln.id)
        if not ordered:
            return []

        async def _op() -> List[ReservationLine]:
            resources = await get_resources(session, [ln.resource_id for ln in ordered])
            lock_ids = set(resources)
            pools: Dict[int, List[Resource]] = {}
            for res in resources.values():
                if res.is_pool:
                    pools[res.id] = await pool_members(session, res.id)
                    lock_ids.update(m.id for m in pools[res.id])
            await lock_resources(session, lock_ids)

            batch_refs = [line_ref(ln) for ln in ordered]
            options: Dict[int, _LineOptions] = {}
            for ln in ordered:
                resource = resources[ln.resource_id]
                options[ln.id] = await self._line_options(
                    session, ln, resource, pools.get(resource.id), window, batch_refs
                )

            taken: Dict[int, int] = {}
            chosen_by_line: Dict[int, Optional[Resource]] = {}

            def _free(c: Candidate) -> int:
                if c.available >= UNLIMITED:
                    return UNLIMITED
                return c.available - taken.get(c.resource.id, 0)

            def _take(ln: ReservationLine, c: Candidate) -> None:
                taken[c.resource.id] = taken.get(c.resource.id, 0) + int(ln.quantity)
                chosen_by_line[ln.id] = c.resource

            # 1) 保留：当前 single 仍有空位的行先占住
            for ln in ordered:
                opts = options[ln.id]
                if opts.current_id is None:
                    continue
                for c in opts.candidates:
                    if c.resource.id == opts.current_id and _free(c) >= int(ln.quantity):
                        _take(ln, c)
                        break

            # 2) 迁移：其余行按分配顺序找空闲 single
            for ln in ordered:
                if ln.id in chosen_by_line:
                    continue
                chosen_by_line[ln.id] = None
                for c in options[ln.id].candidates:
                    if c.resource.id != options[ln.id].current_id and _free(c) >= int(ln.quantity):
                        _take(ln, c)
                        break

            decisions = [(ln, chosen_by_line[ln.id]) for ln in ordered]

            # 先释放所有需要重写的旧占用，再统一落新占用
            rewrite: List[Tuple[ReservationLine, Optional[Resource]]] = []
            for ln, chosen in decisions:
                if chosen is not None and await self._claim_unchanged(session, ln, chosen, window):
                    continue
                await self.ledger.release(session, ref=line_ref(ln), reason="reallocated")
                rewrite.append((ln, chosen))

            unchanged_ids = {ln.id for ln, _ in decisions} - {ln.id for ln, _ in rewrite}
            for ln, chosen in rewrite:
                if chosen is not None:
                    try:
                        await self.ledger.record_movement(
                            session,
                            resource_id=chosen.id,
                            kind=StockKind.CLAIM,
                            quantity=int(ln.quantity),
                            window=window,
                            ref=line_ref(ln),
                            note=f"line:{ln.id}",
                        )
                    except InsufficientCapacity:
                        log.warning("line %s: claim on %s lost during reallocation", ln.id, chosen.id)
                        chosen = None
                applied = await self._apply(
                    session, ln, resources[ln.resource_id], chosen, window, batch_refs
                )
                REALLOCATIONS.labels(outcome="moved" if applied else "unavailable").inc()

            for ln, chosen in decisions:
                if ln.id in unchanged_ids:
                    applied = await self._apply(
                        session, ln, resources[ln.resource_id], chosen, window, batch_refs
                    )
                    REALLOCATIONS.labels(outcome="kept" if applied else "unavailable").inc()

            await session.flush()
            return ordered

        return await run_in_tx(session, _op)

    async def _line_options(
        self,
        session: AsyncSession,
        ln: ReservationLine,
        resource: Resource,
        members: Optional[List[Resource]],
        window: Optional[TimeWindow],
        batch_refs: Sequence[Ref],
    ) -> _LineOptions:
        """该行可选的资源（按分配顺序）与当前占用的资源；缺窗口或价格配置错误时无候选。"""
        if members is not None:
            if (window is None or not window.is_bounded) and any(m.is_booking for m in members):
                return _LineOptions(None, [])
            try:
                candidates = await self.allocation_order(
                    session, resource, window, members=members, exclude_refs=batch_refs
                )
            except NoDefaultPrice as exc:
                log.warning("line %s: pool %s not allocatable: %s", ln.id, resource.id, exc.message)
                return _LineOptions(None, [])
            return _LineOptions(ln.allocated_single_id, candidates)

        if resource.is_booking and (window is None or not window.is_bounded):
            return _LineOptions(None, [])
        avail = await self.availability.available(session, resource, window, exclude_refs=batch_refs)
        return _LineOptions(resource.id, [Candidate(resource=resource, available=avail)])

    async def _claim_unchanged(
        self,
        session: AsyncSession,
        ln: ReservationLine,
        chosen: Resource,
        window: Optional[TimeWindow],
    ) -> bool:
        """同一资源、同一窗口、同一数量的 PENDING 占用已存在。"""
        if not chosen.tracks_stock:
            return True
        pending = await self.ledger.pending_claims_for(session, line_ref(ln))
        if len(pending) != 1:
            return False
        c = pending[0]
        return (
            c.resource_id == chosen.id
            and int(c.quantity) == int(ln.quantity)
            and TimeWindow(c.window_start, c.window_end) == (window or TimeWindow())
        )

    async def _apply(
        self,
        session: AsyncSession,
        ln: ReservationLine,
        resource: Resource,
        chosen: Optional[Resource],
        window: Optional[TimeWindow],
        batch_refs: Sequence[Ref],
    ) -> bool:
        """写回分配与价格；返回 False 表示行已置为不可用（占用已释放）。"""
        ln.window_start = window.start if window else None
        ln.window_end = window.end if window else None
        if chosen is None:
            ln.mark_unavailable()
            return False
        single = chosen if resource.is_pool else None
        if resource.is_pool:
            ln.allocated_single_id = chosen.id
        try:
            await reprice_line(self.pricing, session, ln, resource, single, window, exclude_refs=batch_refs)
        except NoDefaultPrice as exc:
            log.warning("line %s: price not resolvable during reallocation: %s", ln.id, exc.message)
            await self.ledger.release(session, ref=line_ref(ln), reason="reallocated")
            ln.mark_unavailable()
            return False
        return True

    # ------------------------------------------------------------------
    # 配置检查 / 报表
    # ------------------------------------------------------------------
    async def validate_configuration(
        self, session: AsyncSession, pool_id: int, *, strict: bool = False
    ) -> PoolValidation:
        """
        错误（直接抛 InvalidPoolConfiguration）：非池、无成员、成员不记库存
        警告（strict 时抛出）：成员类型混杂、成员库存为 0
        """
        pool = await get_resource(session, pool_id)
        if not pool.is_pool:
            raise NotAPool(pool_id)
        members = await pool_members(session, pool.id)
        if not members:
            raise PoolHasNoMembers(pool.id)

        untracked = [m.name for m in members if not m.tracks_stock]
        if untracked:
            raise InvalidPoolConfiguration(
                pool.id, ["single items without stock management: " + ", ".join(untracked)]
            )

        warnings: List[str] = []
        kinds = sorted({m.kind for m in members})
        if len(kinds) > 1:
            warnings.append("mixed single item kinds: " + ", ".join(kinds))
        empty = [m.name for m in members if await self.availability.available(session, m) <= 0]
        if empty:
            warnings.append("single items with zero stock: " + ", ".join(empty))

        if warnings and strict:
            raise InvalidPoolConfiguration(pool.id, warnings)
        return PoolValidation(valid=True, errors=[], warnings=warnings)

    async def singles_availability(
        self, session: AsyncSession, pool_id: int, window: Optional[TimeWindow] = None
    ) -> List[SingleAvailability]:
        pool = await get_resource(session, pool_id)
        if not pool.is_pool:
            raise NotAPool(pool_id)
        out: List[SingleAvailability] = []
        for m in await pool_members(session, pool.id):
            out.append(
                SingleAvailability(
                    resource_id=m.id,
                    name=m.name,
                    kind=m.kind,
                    tracks_stock=bool(m.tracks_stock),
                    available=await self.availability.available(session, m, window),
                )
            )
        return out

    async def _next_position(self, session: AsyncSession, pool_id: int) -> int:
        stmt = select(func.coalesce(func.max(ResourceRelation.position), -1)).where(
            ResourceRelation.resource_id == int(pool_id),
            ResourceRelation.relation_type == RelationType.SINGLE.value,
        )
        return int((await session.execute(stmt)).scalar_one()) + 1


async def reprice_line(
    pricing: PricingService,
    session: AsyncSession,
    ln: ReservationLine,
    resource: Resource,
    single: Optional[Resource],
    window: Optional[TimeWindow],
    *,
    exclude_refs: Sequence[Ref] = (),
) -> None:
    """按当前分配与窗口重算单价 / 行价 / 小计；无价时全部置空。"""
    price = await pricing.line_unit_amount(
        session, resource, single, window, exclude_refs=exclude_refs
    )
    if price is None:
        ln.selected_price_id = None
        ln.currency = None
        ln.unit_amount = None
        ln.line_price = None
        ln.line_subtotal = None
        return
    booking = await pricing.is_booking_priced(session, resource, single)
    line_price = pricing.line_price(price.amount, booking, window)
    ln.selected_price_id = price.price_id
    ln.currency = price.currency
    ln.unit_amount = price.amount
    ln.line_price = line_price
    ln.line_subtotal = line_price * int(ln.quantity) if line_price is not None else None
