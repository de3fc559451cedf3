# bookstock/services/ledger_service.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.clock import Clock, SystemClock
from bookstock.core.config import get_settings
from bookstock.core.errors import InsufficientCapacity, InvalidMovement
from bookstock.core.tx import run_in_tx
from bookstock.core.windows import TimeWindow
from bookstock.metrics import CLAIMS, CLAIM_FAILURES, RELEASED
from bookstock.models.enums import StockKind, StockStatus
from bookstock.models.ref import Ref
from bookstock.models.resource import Resource
from bookstock.models.stock_ledger import StockLedger
from bookstock.services.resource_repo import get_resource_for_update

log = logging.getLogger("bookstock.ledger")


class LedgerService:
    """
    库存台账（唯一的容量写入方）

    - capacity         = 无窗口、未配对的 INCREASE/DECREASE 之和
    - claimed_quantity = 与窗口相交、未过期的 PENDING CLAIM 之和
    - CLAIM 成对写入（DECREASE 历史 + PENDING CLAIM），释放只翻转 CLAIM 状态
    - 写入都在资源行锁内完成，读-校验-写原子
    """

    def __init__(self, clock: Optional[Clock] = None, *, allow_backorders: Optional[bool] = None) -> None:
        self.clock: Clock = clock or SystemClock()
        if allow_backorders is None:
            allow_backorders = get_settings().ALLOW_BACKORDERS
        self.allow_backorders = bool(allow_backorders)

    # ------------------------------------------------------------------
    # 写
    # ------------------------------------------------------------------
    async def record_movement(
        self,
        session: AsyncSession,
        *,
        resource_id: int,
        kind: StockKind | str,
        quantity: int,
        window: Optional[TimeWindow] = None,
        ref: Optional[Ref] = None,
        note: Optional[str] = None,
    ) -> Optional[StockLedger]:
        """
        追加一条库存变动。

        - INCREASE / DECREASE：永久变动，不允许带窗口
        - CLAIM：写入 DECREASE(-q, COMPLETED) + CLAIM(+q, PENDING)，返回 CLAIM
        - 资源不记库存（tracks_stock=False）时不落账，返回 None
        """
        kind = StockKind(kind)
        qty = int(quantity)
        if qty <= 0:
            raise InvalidMovement(f"quantity must be positive, got {quantity}")
        if kind in (StockKind.INCREASE, StockKind.DECREASE) and window is not None:
            raise InvalidMovement(f"{kind} is a permanent movement; use CLAIM for time-bounded stock")

        async def _op() -> Optional[StockLedger]:
            resource = await get_resource_for_update(session, resource_id)
            if resource.is_pool:
                raise InvalidMovement(f"pool resource {resource.id} carries no ledger entries")
            if not resource.tracks_stock:
                log.debug("resource %s does not track stock; %s skipped", resource.id, kind)
                return None

            if kind == StockKind.INCREASE:
                return await self._append(
                    session, resource.id, kind, qty, StockStatus.COMPLETED, None, ref, note
                )

            if kind == StockKind.DECREASE:
                cap = await self.capacity(session, resource.id)
                peak = await self.peak_claimed(session, resource.id)
                if cap - qty < peak and not self._backorders(resource):
                    raise InsufficientCapacity(resource.id, qty, max(cap - peak, 0))
                return await self._append(
                    session, resource.id, kind, -qty, StockStatus.COMPLETED, None, ref, note
                )

            cap = await self.capacity(session, resource.id)
            claimed = await self.claimed_quantity(session, resource.id, window)
            available = cap - claimed
            if available < qty and not self._backorders(resource):
                CLAIM_FAILURES.labels(scope="single").inc()
                raise InsufficientCapacity(resource.id, qty, max(available, 0))

            claim = await self._append(
                session, resource.id, StockKind.CLAIM, qty, StockStatus.PENDING, window, ref, note
            )
            pair = await self._append(
                session,
                resource.id,
                StockKind.DECREASE,
                -qty,
                StockStatus.COMPLETED,
                window,
                ref,
                note,
            )
            pair.paired_claim_id = claim.id
            await session.flush()
            CLAIMS.labels(scope="single").inc()
            log.info(
                "claimed %s x%d window=[%s,%s) ref=%s",
                resource.id,
                qty,
                window.start if window else None,
                window.end if window else None,
                ref,
            )
            return claim

        return await run_in_tx(session, _op)

    async def release(
        self,
        session: AsyncSession,
        *,
        ref: Ref,
        resource_ids: Optional[Iterable[int]] = None,
        reason: str = "released",
    ) -> int:
        """PENDING CLAIM → COMPLETED；幂等，第二次调用返回 0。"""

        async def _op() -> int:
            stmt = (
                select(StockLedger)
                .where(
                    StockLedger.kind == StockKind.CLAIM.value,
                    StockLedger.status == StockStatus.PENDING.value,
                    StockLedger.ref_type == ref.ref_type,
                    StockLedger.ref_id == ref.ref_id,
                )
                .order_by(StockLedger.id.asc())
                .with_for_update()
            )
            if resource_ids is not None:
                ids = [int(x) for x in resource_ids]
                if not ids:
                    return 0
                stmt = stmt.where(StockLedger.resource_id.in_(ids))
            rows = (await session.execute(stmt)).scalars().all()
            now = self.clock.now()
            for row in rows:
                row.status = StockStatus.COMPLETED.value
                row.released_at = now
            if rows:
                await session.flush()
                RELEASED.labels(reason=reason).inc(len(rows))
                log.info("released %d claim(s) for ref=%s", len(rows), ref)
            return len(rows)

        return await run_in_tx(session, _op)

    # ------------------------------------------------------------------
    # 读
    # ------------------------------------------------------------------
    async def capacity(self, session: AsyncSession, resource_id: int) -> int:
        """永久库存：无窗口的 INCREASE/DECREASE 之和（CLAIM 配对的 DECREASE 不计）。"""
        stmt = select(func.coalesce(func.sum(StockLedger.quantity), 0)).where(
            StockLedger.resource_id == int(resource_id),
            StockLedger.kind.in_([StockKind.INCREASE.value, StockKind.DECREASE.value]),
            StockLedger.paired_claim_id.is_(None),
        )
        return int((await session.execute(stmt)).scalar_one())

    async def claimed_quantity(
        self,
        session: AsyncSession,
        resource_id: int,
        window: Optional[TimeWindow] = None,
        *,
        exclude_refs: Sequence[Ref] = (),
    ) -> int:
        """
        与窗口相交的 PENDING CLAIM 数量之和。

        - 无窗口：按当前时刻计（start <= now < end，空边界视为无界）
        - window_end <= now 的 CLAIM 视为已过期，不计入
        """
        claims = await self.active_claims(session, resource_id, exclude_refs=exclude_refs)
        if window is None:
            now = self.clock.now()
            return sum(c.quantity for c in claims if TimeWindow(c.window_start, c.window_end).contains(now))
        return sum(
            c.quantity for c in claims if window.overlaps(TimeWindow(c.window_start, c.window_end))
        )

    async def peak_claimed(
        self,
        session: AsyncSession,
        resource_id: int,
        window: Optional[TimeWindow] = None,
        *,
        exclude_refs: Sequence[Ref] = (),
    ) -> int:
        """窗口内同时生效的 CLAIM 数量峰值（扫描线）；无窗口时覆盖全部未过期 CLAIM。"""
        claims = await self.active_claims(session, resource_id, exclude_refs=exclude_refs)
        spans = []
        for c in claims:
            cw = TimeWindow(c.window_start, c.window_end)
            if window is not None and not window.overlaps(cw):
                continue
            start = cw.start
            end = cw.end
            if window is not None:
                if window.start is not None and (start is None or start < window.start):
                    start = window.start
                if window.end is not None and (end is None or end > window.end):
                    end = window.end
            spans.append((start, end, int(c.quantity)))
        return peak_concurrent(spans)

    async def claims_for(self, session: AsyncSession, ref: Ref) -> List[StockLedger]:
        stmt = (
            select(StockLedger)
            .where(
                StockLedger.kind == StockKind.CLAIM.value,
                StockLedger.ref_type == ref.ref_type,
                StockLedger.ref_id == ref.ref_id,
            )
            .order_by(StockLedger.id.asc())
        )
        return list((await session.execute(stmt)).scalars().all())

    async def pending_claims_for(self, session: AsyncSession, ref: Ref) -> List[StockLedger]:
        return [c for c in await self.claims_for(session, ref) if c.status == StockStatus.PENDING]

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------
    def _backorders(self, resource: Resource) -> bool:
        return bool(resource.allow_backorders) or self.allow_backorders

    async def active_claims(
        self, session: AsyncSession, resource_id: int, *, exclude_refs: Sequence[Ref] = ()
    ) -> List[StockLedger]:
        now = self.clock.now()
        stmt = (
            select(StockLedger)
            .where(
                StockLedger.resource_id == int(resource_id),
                StockLedger.kind == StockKind.CLAIM.value,
                StockLedger.status == StockStatus.PENDING.value,
                (StockLedger.window_end.is_(None)) | (StockLedger.window_end > now),
            )
            .order_by(StockLedger.id.asc())
        )
        rows = list((await session.execute(stmt)).scalars().all())
        if not exclude_refs:
            return rows
        excluded = {(r.ref_type, r.ref_id) for r in exclude_refs}
        return [r for r in rows if (r.ref_type, r.ref_id) not in excluded]

    async def _append(
        self,
        session: AsyncSession,
        resource_id: int,
        kind: StockKind,
        quantity: int,
        status: StockStatus,
        window: Optional[TimeWindow],
        ref: Optional[Ref],
        note: Optional[str],
    ) -> StockLedger:
        row = StockLedger(
            resource_id=resource_id,
            kind=kind.value,
            quantity=quantity,
            status=status.value,
            window_start=window.start if window else None,
            window_end=window.end if window else None,
            ref_type=ref.ref_type if ref else None,
            ref_id=ref.ref_id if ref else None,
            note=note,
            created_at=self.clock.now(),
        )
        session.add(row)
        await session.flush()
        return row


def peak_concurrent(spans: Iterable[tuple[Optional[datetime], Optional[datetime], int]]) -> int:
    """
    半开区间集合的最大并发量。

    None 起点视为 -∞，None 终点视为 +∞；同一时刻先结束后开始（背靠背不叠加）。
    """
    events: list[tuple[int, Optional[datetime], int, int]] = []
    for start, end, qty in spans:
        # (rank, time, order, delta)：rank 0 = -∞，1 = 有限时刻
        events.append((0, None, 1, qty) if start is None else (1, start, 1, qty))
        if end is not None:
            events.append((1, end, 0, -qty))
    events.sort(key=lambda e: (e[0], e[1] or datetime.min, e[2]))

    peak = 0
    running = 0
    for _, _, _, delta in events:
        running += delta
        peak = max(peak, running)
    return peak
