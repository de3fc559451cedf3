# bookstock/models/enums.py
from __future__ import annotations

from enum import StrEnum


class ResourceKind(StrEnum):
    """
    可预订资源的类型：

    - SIMPLE   普通库存商品（无时间窗）
    - BOOKING  按时间窗预订的 single（房间、设备等）
    - POOL     虚拟池，由若干 single 组成，自身不记台账
    """

    SIMPLE = "SIMPLE"
    BOOKING = "BOOKING"
    POOL = "POOL"


class StockKind(StrEnum):
    """
    台账变动类型（stock_ledger.kind）：

    - INCREASE  永久入库（+）
    - DECREASE  永久出库（-）；或 CLAIM 配对的历史记录
    - CLAIM     有时间窗的占用（PENDING 才生效）
    """

    INCREASE = "INCREASE"
    DECREASE = "DECREASE"
    CLAIM = "CLAIM"


class StockStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class PricingStrategy(StrEnum):
    """
    池定价策略：决定 single 的挑选顺序，以及池价展示时的聚合方式。

    - LOWEST   价格升序挑选；聚合取最小
    - HIGHEST  价格降序挑选；聚合取最大
    - AVERAGE  按声明顺序挑选；聚合取算术平均
    """

    LOWEST = "LOWEST"
    HIGHEST = "HIGHEST"
    AVERAGE = "AVERAGE"


class RelationType(StrEnum):
    """
    资源关系方向：

    - SINGLE  pool → single
    - POOL    single → pool
    """

    SINGLE = "SINGLE"
    POOL = "POOL"


class LineState(StrEnum):
    READY = "READY"
    NOT_READY_MISSING_WINDOW = "NOT_READY_MISSING_WINDOW"
    NOT_READY_INVALID_WINDOW = "NOT_READY_INVALID_WINDOW"
    NOT_READY_UNAVAILABLE = "NOT_READY_UNAVAILABLE"
