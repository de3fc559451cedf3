# bookstock/services/availability_service.py
from __future__ import annotations

import logging
import sys
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.clock import Clock, SystemClock
from bookstock.core.config import get_settings
from bookstock.models.enums import ResourceKind
from bookstock.models.ref import Ref
from bookstock.models.resource import Resource
from bookstock.services.ledger_service import LedgerService
from bookstock.services.resource_repo import pool_members

log = logging.getLogger("bookstock.availability")

UNLIMITED = sys.maxsize

_STOCKED_KINDS = (ResourceKind.BOOKING.value, ResourceKind.SIMPLE.value)


def counts_toward_pool(single: Resource) -> bool:
    """只有记库存的 BOOKING/SIMPLE single 参与池容量。"""
    return single.kind in _STOCKED_KINDS and bool(single.tracks_stock)


class AvailabilityService:
    """
    可用量 = capacity - claimed_quantity（只读，不加锁；展示用的读可以陈旧）

    - 不记库存的资源：UNLIMITED
    - POOL：各可计入 single 的可用量之和（负数按 0 计）
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        ledger: Optional[LedgerService] = None,
        low_stock_threshold: Optional[int] = None,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.ledger = ledger or LedgerService(self.clock)
        if low_stock_threshold is None:
            low_stock_threshold = get_settings().LOW_STOCK_THRESHOLD
        self.low_stock_threshold = int(low_stock_threshold)

    async def available(
        self,
        session: AsyncSession,
        resource: Resource,
        window=None,
        *,
        exclude_refs: Sequence[Ref] = (),
    ) -> int:
        if resource.is_pool:
            return await self.pool_available(session, resource, window, exclude_refs=exclude_refs)
        if not resource.tracks_stock:
            return UNLIMITED
        cap = await self.ledger.capacity(session, resource.id)
        claimed = await self.ledger.claimed_quantity(
            session, resource.id, window, exclude_refs=exclude_refs
        )
        return cap - claimed

    async def pool_available(
        self,
        session: AsyncSession,
        pool: Resource,
        window=None,
        *,
        exclude_refs: Sequence[Ref] = (),
    ) -> int:
        total = 0
        for single in await pool_members(session, pool.id):
            if not counts_toward_pool(single):
                continue
            total += max(
                await self.available(session, single, window, exclude_refs=exclude_refs), 0
            )
        log.debug("pool %s available=%d window=%s", pool.id, total, window)
        return total

    async def is_available(
        self,
        session: AsyncSession,
        resource: Resource,
        quantity: int,
        window=None,
        *,
        exclude_refs: Sequence[Ref] = (),
    ) -> bool:
        return await self.available(session, resource, window, exclude_refs=exclude_refs) >= int(
            quantity
        )

    async def is_low_stock(self, session: AsyncSession, resource: Resource) -> bool:
        """当前可用量 <= 阈值（资源自身阈值优先，其次全局配置）；不记库存的资源永不低库存。"""
        if not resource.is_pool and not resource.tracks_stock:
            return False
        threshold = (
            resource.low_stock_threshold
            if resource.low_stock_threshold is not None
            else self.low_stock_threshold
        )
        return await self.available(session, resource) <= threshold
