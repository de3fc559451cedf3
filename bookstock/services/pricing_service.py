# bookstock/services/pricing_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from bookstock.core.clock import Clock, SystemClock
from bookstock.core.errors import NoDefaultPrice, NoPriceResolvable
from bookstock.core.windows import TimeWindow, require_window
from bookstock.models.enums import PricingStrategy, ResourceKind
from bookstock.models.ref import Ref
from bookstock.models.resource import Resource
from bookstock.models.resource_price import ResourcePrice
from bookstock.services.availability_service import AvailabilityService, counts_toward_pool
from bookstock.services.pricing_strategy import RankedSingle, price_aggregate, selection_order
from bookstock.services.resource_repo import get_resource, member_positions, pool_members, prices_for

log = logging.getLogger("bookstock.pricing")


@dataclass(frozen=True)
class ResolvedPrice:
    """解析后的单价；price_id 为空表示聚合价（如 AVERAGE）。"""

    amount: int
    currency: str
    price_id: Optional[int] = None
    resource_id: Optional[int] = None
    on_sale: bool = False


@dataclass(frozen=True)
class Quote:
    resource_id: int
    unit_amount: int
    line_price: Optional[int]
    currency: str
    allocated_single_id: Optional[int] = None


@dataclass(frozen=True)
class PriceRange:
    min_amount: int
    max_amount: int
    currency: str


def booking_line_price(unit_amount: int, start: datetime, end: datetime) -> int:
    """
    按小数天计价：unit × (秒数 / 86400)，四舍五入（half-up）到最小货币单位。

    12 小时 → 半价；90 分钟 → unit × 1.5 / 24。
    """
    days = require_window(start, end).days()
    return int((Decimal(int(unit_amount)) * days).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def sale_active(price: ResourcePrice, now: datetime) -> bool:
    if price.sale_amount is None:
        return False
    return TimeWindow(price.sale_start, price.sale_end).contains(now)


class PricingService:
    """
    价格解析：

    - effective_price: 资源自身默认价（促销期内用 sale_amount）
    - pool_price:      池自身价优先；否则按策略聚合"当前可用"的 single 价格
    - line_unit_amount: single 自身价优先，池价只做兜底
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        availability: Optional[AvailabilityService] = None,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.availability = availability or AvailabilityService(self.clock)

    async def effective_price(
        self,
        session: AsyncSession,
        resource: Resource,
        *,
        currency: Optional[str] = None,
        use_sale: bool = True,
    ) -> Optional[ResolvedPrice]:
        prices = await prices_for(session, resource.id, currency=currency)
        if not prices:
            return None
        if len(prices) == 1:
            chosen = prices[0]
        else:
            defaults = [p for p in prices if p.is_default]
            if len(defaults) != 1:
                raise NoDefaultPrice(resource.id, len(defaults))
            chosen = defaults[0]

        on_sale = use_sale and sale_active(chosen, self.clock.now())
        amount = chosen.sale_amount if on_sale else chosen.amount
        return ResolvedPrice(
            amount=int(amount),
            currency=chosen.currency,
            price_id=chosen.id,
            resource_id=resource.id,
            on_sale=on_sale,
        )

    async def available_single_prices(
        self,
        session: AsyncSession,
        pool: Resource,
        window: Optional[TimeWindow] = None,
        *,
        exclude_refs: Sequence[Ref] = (),
    ) -> List[ResolvedPrice]:
        """
        当前可用且有价的 single 价格，按成员声明顺序。

        - 给定窗口：该窗口内可用量 >= 1
        - 未给窗口：当前有任何可用量
        """
        out: List[ResolvedPrice] = []
        for single in await pool_members(session, pool.id):
            if not counts_toward_pool(single):
                continue
            avail = await self.availability.available(
                session, single, window, exclude_refs=exclude_refs
            )
            if avail <= 0:
                continue
            price = await self.effective_price(session, single)
            if price is not None:
                out.append(price)
        return out

    async def pool_price(
        self,
        session: AsyncSession,
        pool: Resource,
        window: Optional[TimeWindow] = None,
        *,
        exclude_refs: Sequence[Ref] = (),
    ) -> Optional[ResolvedPrice]:
        own = await self.effective_price(session, pool)
        if own is not None:
            return own

        prices = await self.available_single_prices(session, pool, window, exclude_refs=exclude_refs)
        if not prices:
            return None

        strategy = PricingStrategy(pool.pricing_strategy)
        amount = price_aggregate(strategy, [p.amount for p in prices])
        if strategy == PricingStrategy.AVERAGE:
            return ResolvedPrice(amount=amount, currency=prices[0].currency, resource_id=pool.id)
        # min/max：取声明顺序中第一个命中的 single 价
        for p in prices:
            if p.amount == amount:
                return p
        return None

    async def line_unit_amount(
        self,
        session: AsyncSession,
        resource: Resource,
        allocated_single: Optional[Resource] = None,
        window: Optional[TimeWindow] = None,
        *,
        exclude_refs: Sequence[Ref] = (),
    ) -> Optional[ResolvedPrice]:
        """single 自身价优先；没有时回落到资源自身价 / 池价。"""
        if allocated_single is not None:
            own = await self.effective_price(session, allocated_single)
            if own is not None:
                return own
        if resource.is_pool:
            return await self.pool_price(session, resource, window, exclude_refs=exclude_refs)
        return await self.effective_price(session, resource)

    async def ranked_singles(
        self, session: AsyncSession, pool: Resource, singles: Sequence[Resource]
    ) -> List[RankedSingle]:
        """按池策略排好序的候选 single（分配顺序）。"""
        positions = await member_positions(session, pool.id)
        own = await self.effective_price(session, pool)
        ranked: List[RankedSingle] = []
        for s in singles:
            price = await self.effective_price(session, s)
            ranked.append(
                RankedSingle(
                    resource_id=s.id,
                    position=positions.get(s.id, 0),
                    amount=price.amount if price is not None else None,
                )
            )
        return selection_order(
            pool.pricing_strategy,
            ranked,
            fallback_amount=own.amount if own is not None else None,
        )

    async def is_booking_priced(
        self, session: AsyncSession, resource: Resource, allocated_single: Optional[Resource] = None
    ) -> bool:
        """BOOKING 资源，或分配到 BOOKING single 的池（未分配时看池内是否有 BOOKING 成员）。"""
        if resource.kind == ResourceKind.BOOKING:
            return True
        if not resource.is_pool:
            return False
        if allocated_single is not None:
            return allocated_single.kind == ResourceKind.BOOKING
        return any(m.kind == ResourceKind.BOOKING for m in await pool_members(session, resource.id))

    def line_price(self, unit_amount: int, booking: bool, window: Optional[TimeWindow]) -> Optional[int]:
        if not booking:
            return int(unit_amount)
        if window is None or not window.is_bounded:
            return None
        return booking_line_price(unit_amount, window.start, window.end)

    async def quote(
        self,
        session: AsyncSession,
        resource_id: int,
        window: Optional[TimeWindow] = None,
        *,
        strict: bool = False,
    ) -> Optional[Quote]:
        """
        报价：单价 + 行价（预订按小数天）。

        池报价取"下一个会被分配"的 single；没有可用 single 时回落到池价。
        无价可解析时返回 None；strict=True 时抛 NoPriceResolvable（下单 / 结算路径用）。
        """
        resource = await get_resource(session, resource_id)
        single: Optional[Resource] = None
        if resource.is_pool:
            single = await self.next_available_single(session, resource, window)
        price = await self.line_unit_amount(session, resource, single, window)
        if price is None:
            if strict:
                raise NoPriceResolvable(resource.id)
            log.debug("no price resolvable for resource %s", resource_id)
            return None
        booking = await self.is_booking_priced(session, resource, single)
        return Quote(
            resource_id=resource.id,
            unit_amount=price.amount,
            line_price=self.line_price(price.amount, booking, window),
            currency=price.currency,
            allocated_single_id=single.id if single is not None else None,
        )

    async def next_available_single(
        self, session: AsyncSession, pool: Resource, window: Optional[TimeWindow] = None
    ) -> Optional[Resource]:
        members = await pool_members(session, pool.id)
        by_id = {m.id: m for m in members}
        candidates = [m for m in members if counts_toward_pool(m)]
        for ranked in await self.ranked_singles(session, pool, candidates):
            single = by_id[ranked.resource_id]
            if await self.availability.available(session, single, window) > 0:
                return single
        return None

    async def price_range(
        self, session: AsyncSession, pool: Resource, window: Optional[TimeWindow] = None
    ) -> Optional[PriceRange]:
        """可用 single 的最低 / 最高价；无有价 single 时退回池自身价。"""
        prices = await self.available_single_prices(session, pool, window)
        if not prices:
            own = await self.effective_price(session, pool)
            if own is None:
                return None
            return PriceRange(min_amount=own.amount, max_amount=own.amount, currency=own.currency)
        amounts = [p.amount for p in prices]
        return PriceRange(min_amount=min(amounts), max_amount=max(amounts), currency=prices[0].currency)
