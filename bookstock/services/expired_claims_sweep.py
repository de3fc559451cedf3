# bookstock/services/expired_claims_sweep.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.clock import Clock, SystemClock, as_utc
from bookstock.metrics import RELEASED
from bookstock.models.enums import StockKind, StockStatus
from bookstock.models.stock_ledger import StockLedger

log = logging.getLogger("bookstock.sweep")


async def find_expired_claims(
    session: AsyncSession, *, now: datetime, limit: int = 100
) -> List[int]:
    stmt = (
        select(StockLedger.id)
        .where(
            StockLedger.kind == StockKind.CLAIM.value,
            StockLedger.status == StockStatus.PENDING.value,
            StockLedger.window_end.is_not(None),
            StockLedger.window_end <= now,
        )
        .order_by(StockLedger.id.asc())
        .limit(int(limit))
    )
    return [int(x) for x in (await session.execute(stmt)).scalars().all()]


async def sweep_expired_claims(
    session: AsyncSession,
    *,
    now: Optional[datetime] = None,
    clock: Optional[Clock] = None,
    batch_size: int = 100,
) -> int:
    """
    把已过期（window_end <= now）的 PENDING CLAIM 标记为 COMPLETED。

    语义：
      - 仅 housekeeping；可用量计算本身已惰性排除过期 CLAIM，是否运行不影响正确性
      - 逐批 FOR UPDATE 后翻转状态，重复运行幂等

    返回：
      int : 本次真正从 PENDING → COMPLETED 的条数
    """
    if now is None:
        now = (clock or SystemClock()).now()
    now = as_utc(now)

    total = 0
    while True:
        ids = await find_expired_claims(session, now=now, limit=batch_size)
        if not ids:
            break

        rows = (
            await session.execute(
                select(StockLedger)
                .where(
                    StockLedger.id.in_(ids),
                    StockLedger.status == StockStatus.PENDING.value,
                )
                .with_for_update(skip_locked=True)
            )
        ).scalars().all()
        for row in rows:
            row.status = StockStatus.COMPLETED.value
            row.released_at = now
        await session.flush()
        total += len(rows)

        if len(ids) < batch_size or not rows:
            break

    if total:
        RELEASED.labels(reason="expired").inc(total)
    log.info("expired claim sweep: released=%d now=%s", total, now.isoformat())
    return total
