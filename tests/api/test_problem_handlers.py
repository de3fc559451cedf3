# tests/api/test_problem_handlers.py
from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from bookstock.api.problem import raise_problem
from bookstock.core.errors import NotEnoughAvailable, PoolHasNoMembers
from bookstock.http_problem_handlers import register_exception_handlers
from bookstock.metrics import CLAIMS
from bookstock.metrics import router as metrics_router


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(metrics_router)

    @app.get("/shortage")
    async def shortage():
        raise NotEnoughAvailable(3, 1, resource_id=9)

    @app.get("/misconfigured")
    async def misconfigured():
        raise PoolHasNoMembers(4)

    @app.get("/problem")
    async def problem():
        raise_problem(status_code=422, error_code="bad_input", message="nope", context={"field": "qty"})

    @app.get("/plain")
    async def plain():
        raise HTTPException(status_code=403, detail="forbidden")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaput")

    return app


def test_reservation_error_becomes_problem():
    client = TestClient(_app(), raise_server_exceptions=False)
    r = client.get("/shortage")
    assert r.status_code == 409
    body = r.json()
    assert body["error_code"] == "not_enough_available"
    assert body["context"]["path"] == "/shortage"
    assert body["context"]["requested"] == 3
    assert body["trace_id"].startswith("t_")

    r = client.get("/misconfigured")
    assert r.status_code == 500
    assert r.json()["error_code"] == "pool_has_no_members"


def test_http_exception_problem_detail_is_enriched():
    client = TestClient(_app(), raise_server_exceptions=False)
    r = client.get("/problem")
    assert r.status_code == 422
    body = r.json()
    assert body["error_code"] == "bad_input"
    assert body["context"] == {"path": "/problem", "method": "GET", "field": "qty"}

    r = client.get("/plain")
    assert r.status_code == 403
    assert r.json()["error_code"] == "http_error"
    assert r.json()["message"] == "forbidden"


def test_unhandled_exception_is_internal_error():
    client = TestClient(_app(), raise_server_exceptions=False)
    r = client.get("/boom")
    assert r.status_code == 500
    assert r.json()["error_code"] == "internal_error"


def test_metrics_endpoint_exports_counters():
    CLAIMS.labels(scope="single").inc(0)
    client = TestClient(_app())
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "bookstock_claims_total" in r.text
