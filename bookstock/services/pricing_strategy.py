# bookstock/services/pricing_strategy.py
"""
池定价策略的两个纯函数：

- selection_order: 决定 single 的挑选顺序（分配用）
- price_aggregate: 决定池价展示时如何聚合可用 single 的价格

两者互不依赖；策略从不比较"池价 vs single 价"。
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from bookstock.models.enums import PricingStrategy


@dataclass(frozen=True)
class RankedSingle:
    resource_id: int
    position: int
    amount: Optional[int]


def selection_order(
    strategy: PricingStrategy | str,
    singles: Sequence[RankedSingle],
    *,
    fallback_amount: Optional[int] = None,
) -> List[RankedSingle]:
    """
    LOWEST 价格升序，HIGHEST 价格降序，AVERAGE 保持声明顺序。

    - 无价 single 使用 fallback_amount（池自身价格）；仍无价则排在最后
    - 同价按 (position, resource_id) 稳定排序
    """
    strategy = PricingStrategy(strategy)

    def _amount(s: RankedSingle) -> Optional[int]:
        return s.amount if s.amount is not None else fallback_amount

    if strategy == PricingStrategy.AVERAGE:
        return sorted(singles, key=lambda s: (s.position, s.resource_id))

    sign = 1 if strategy == PricingStrategy.LOWEST else -1

    def _key(s: RankedSingle):
        amt = _amount(s)
        return (amt is None, sign * (amt or 0), s.position, s.resource_id)

    return sorted(singles, key=_key)


def price_aggregate(strategy: PricingStrategy | str, amounts: Sequence[int]) -> Optional[int]:
    """LOWEST=min，HIGHEST=max，AVERAGE=算术平均（四舍五入到最小货币单位）；空集 → None。"""
    strategy = PricingStrategy(strategy)
    values = [int(a) for a in amounts]
    if not values:
        return None
    if strategy == PricingStrategy.LOWEST:
        return min(values)
    if strategy == PricingStrategy.HIGHEST:
        return max(values)
    mean = Decimal(sum(values)) / Decimal(len(values))
    return int(mean.quantize(Decimal(1), rounding=ROUND_HALF_UP))
