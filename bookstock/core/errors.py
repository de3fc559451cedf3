# bookstock/core/errors.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Sequence


class ReservationError(Exception):
    """
    预期内、调用方可恢复的业务错误基类。

    - error_code / http_status 供 problem 翻译层使用
    - context 为结构化补充信息（可直接进 problem.context）
    """

    error_code = "reservation_error"
    http_status = 409

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})


class InsufficientCapacity(ReservationError):
    """台账层：永久库存 / 窗口可用量将变为负数。"""

    error_code = "insufficient_capacity"

    def __init__(self, resource_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"insufficient capacity on resource {resource_id}: "
            f"requested={requested}, available={available}",
            context={
                "resource_id": int(resource_id),
                "requested": int(requested),
                "available": int(available),
            },
        )
        self.resource_id = resource_id
        self.requested = requested
        self.available = available


class NotEnoughAvailable(ReservationError):
    """池 / 窗口层：可用数量不足（用户可调整后重试）。"""

    error_code = "not_enough_available"

    def __init__(self, requested: int, available: int, *, resource_id: Optional[int] = None) -> None:
        ctx: Dict[str, Any] = {"requested": int(requested), "available": int(available)}
        if resource_id is not None:
            ctx["resource_id"] = int(resource_id)
        super().__init__(
            f"only {available} available, but {requested} requested",
            context=ctx,
        )
        self.requested = requested
        self.available = available
        self.resource_id = resource_id


class InvalidWindow(ReservationError):
    """from >= until，或缺少必需的窗口边界。"""

    error_code = "invalid_window"
    http_status = 422

    def __init__(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        *,
        message: str = "window start must be before window end",
    ) -> None:
        super().__init__(
            message,
            context={
                "from": start.isoformat() if start else None,
                "until": end.isoformat() if end else None,
            },
        )
        self.start = start
        self.end = end


class NoPriceResolvable(ReservationError):
    """既无自身价格，也无可用且有价的 single。"""

    error_code = "no_price_resolvable"
    http_status = 422

    def __init__(self, resource_id: int) -> None:
        super().__init__(
            f"no price resolvable for resource {resource_id}",
            context={"resource_id": int(resource_id)},
        )
        self.resource_id = resource_id


class NoDefaultPrice(ReservationError):
    """多个价格但默认价不唯一（配置错误）。"""

    error_code = "no_default_price"
    http_status = 500

    def __init__(self, resource_id: int, defaults: int) -> None:
        super().__init__(
            f"resource {resource_id} has multiple prices but {defaults} marked default",
            context={"resource_id": int(resource_id), "default_count": int(defaults)},
        )
        self.resource_id = resource_id


class ResourceNotFound(ReservationError):
    error_code = "resource_not_found"
    http_status = 404

    def __init__(self, resource_id: int) -> None:
        super().__init__(
            f"resource {resource_id} not found",
            context={"resource_id": int(resource_id)},
        )
        self.resource_id = resource_id


class NotAPool(ReservationError):
    error_code = "not_a_pool"
    http_status = 422

    def __init__(self, resource_id: int) -> None:
        super().__init__(
            f"resource {resource_id} is not a pool",
            context={"resource_id": int(resource_id)},
        )
        self.resource_id = resource_id


class PoolHasNoMembers(ReservationError):
    """池未挂任何 single：配置错误，而非"暂时不可用"。"""

    error_code = "pool_has_no_members"
    http_status = 500

    def __init__(self, pool_id: int) -> None:
        super().__init__(
            f"pool {pool_id} has no single members to claim from",
            context={"pool_id": int(pool_id)},
        )
        self.pool_id = pool_id


class InvalidPoolConfiguration(ReservationError):
    error_code = "invalid_pool_configuration"
    http_status = 500

    def __init__(self, pool_id: int, problems: Sequence[str]) -> None:
        super().__init__(
            f"pool {pool_id} is misconfigured: " + "; ".join(problems),
            context={"pool_id": int(pool_id), "problems": list(problems)},
        )
        self.pool_id = pool_id
        self.problems = list(problems)


class InvalidMovement(ValueError):
    """台账入参不合法（数量非正、永久变动带窗口等）。"""


class LineNotFound(ReservationError):
    error_code = "reservation_line_not_found"
    http_status = 404

    def __init__(self, line_id: int) -> None:
        super().__init__(
            f"reservation line {line_id} not found",
            context={"line_id": int(line_id)},
        )
        self.line_id = line_id
