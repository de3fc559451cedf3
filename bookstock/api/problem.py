# bookstock/api/problem.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, TypedDict

from fastapi import HTTPException

from bookstock.core.errors import ReservationError


class ProblemDetail(TypedDict, total=False):
    # 必填
    type: str  # validation|shortage|window|pricing|config
    # 可选
    path: str
    reason: str
    resource_id: int
    requested_qty: int
    available_qty: int
    short_qty: int


class NextAction(TypedDict, total=False):
    action: str
    label: str


@dataclass(frozen=True)
class Problem:
    error_code: str
    message: str
    http_status: int
    context: Optional[Dict[str, Any]] = None
    details: Optional[List[ProblemDetail]] = None
    next_actions: Optional[List[NextAction]] = None
    trace_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
            "http_status": int(self.http_status),
        }
        if self.context:
            out["context"] = self.context
        if self.details:
            out["details"] = self.details
        if self.next_actions:
            out["next_actions"] = self.next_actions
        if self.trace_id:
            out["trace_id"] = self.trace_id
        return out


def make_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    next_actions: Optional[Sequence[NextAction]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    p = Problem(
        error_code=str(error_code),
        message=str(message),
        http_status=int(status_code),
        context=context,
        details=list(details) if details else None,
        next_actions=list(next_actions) if next_actions else None,
        trace_id=trace_id,
    )
    return p.to_dict()


def _details_for(exc: ReservationError) -> List[ProblemDetail]:
    ctx = exc.context
    if "requested" in ctx and "available" in ctx:
        d: ProblemDetail = {
            "type": "shortage",
            "reason": exc.error_code,
            "requested_qty": int(ctx["requested"]),
            "available_qty": int(ctx["available"]),
            "short_qty": max(int(ctx["requested"]) - int(ctx["available"]), 0),
        }
        if "resource_id" in ctx:
            d["resource_id"] = int(ctx["resource_id"])
        return [d]
    if exc.error_code == "invalid_window":
        return [{"type": "window", "reason": exc.message}]
    return []


def _next_actions_for(exc: ReservationError) -> List[NextAction]:
    if exc.error_code in ("not_enough_available", "insufficient_capacity"):
        return [{"action": "change_window", "label": "调整日期或数量后重试"}]
    if exc.error_code == "invalid_window":
        return [{"action": "fix_window", "label": "开始时间须早于结束时间"}]
    return []


def problem_from_error(
    exc: ReservationError, *, trace_id: Optional[str] = None, context: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """业务异常 → Problem 形状（context 合并调用方补充的定位信息）。"""
    ctx = dict(context or {})
    ctx.update(exc.context)
    return make_problem(
        status_code=exc.http_status,
        error_code=exc.error_code,
        message=exc.message,
        context=ctx,
        details=_details_for(exc),
        next_actions=_next_actions_for(exc),
        trace_id=trace_id,
    )


def raise_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    next_actions: Optional[Sequence[NextAction]] = None,
    trace_id: Optional[str] = None,
) -> None:
    raise HTTPException(
        status_code=int(status_code),
        detail=make_problem(
            status_code=int(status_code),
            error_code=error_code,
            message=message,
            context=context,
            details=details,
            next_actions=next_actions,
            trace_id=trace_id,
        ),
    )


def raise_from_error(exc: ReservationError) -> None:
    """宿主路由内直接把业务异常转为 HTTPException。"""
    raise HTTPException(status_code=int(exc.http_status), detail=problem_from_error(exc)) from exc
