# bookstock/http_problem_handlers.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from bookstock.api.problem import make_problem, problem_from_error
from bookstock.core.errors import ReservationError

logger = logging.getLogger("bookstock")


def _new_trace_id() -> str:
    return f"t_{uuid.uuid4().hex[:12]}"


def _request_ctx(req: Request) -> Dict[str, Any]:
    return {"path": getattr(req.url, "path", ""), "method": req.method}


def register_exception_handlers(app: FastAPI) -> None:
    """
    供宿主 FastAPI 应用挂载：

    - ReservationError → 对应 http_status 的 Problem
    - HTTPException(detail 已是 Problem) → 补齐 trace_id / context
    - 其它未处理异常 → 500 internal_error
    """

    @app.exception_handler(ReservationError)
    async def _reservation_exc(req: Request, exc: ReservationError):
        trace_id = _new_trace_id()
        if exc.http_status >= 500:
            logger.error("RESERVATION_CONFIG_ERROR[%s]: %s", trace_id, exc.message)
        else:
            logger.info("reservation rejected[%s]: %s %s", trace_id, exc.error_code, exc.message)
        content = problem_from_error(exc, trace_id=trace_id, context=_request_ctx(req))
        return JSONResponse(status_code=int(exc.http_status), content=content)

    @app.exception_handler(HTTPException)
    async def _http_exc(req: Request, exc: HTTPException):
        status_code = int(exc.status_code)
        d = exc.detail
        if isinstance(d, dict) and "error_code" in d and "message" in d:
            out = dict(d)
            out.setdefault("http_status", status_code)
            out.setdefault("trace_id", _new_trace_id())
            merged = _request_ctx(req)
            if isinstance(out.get("context"), dict):
                merged.update(out["context"])
            out["context"] = merged
        else:
            out = make_problem(
                status_code=status_code,
                error_code="http_error",
                message=str(d) if d is not None else "请求被拒绝",
                context=_request_ctx(req),
                trace_id=_new_trace_id(),
            )
        return JSONResponse(status_code=status_code, content=out)

    @app.exception_handler(Exception)
    async def _unhandled_exc(req: Request, exc: Exception):
        trace_id = _new_trace_id()
        logger.exception("UNHANDLED_EXC[%s]: %s", trace_id, exc)
        content = make_problem(
            status_code=500,
            error_code="internal_error",
            message="系统异常，请稍后重试",
            context=_request_ctx(req),
            trace_id=trace_id,
        )
        return JSONResponse(status_code=500, content=content)
