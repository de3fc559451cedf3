# bookstock/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    generate_latest,
    multiprocess,
)

# 业务指标
CLAIMS = Counter("bookstock_claims_total", "Stock claims written", ["scope"])
CLAIM_FAILURES = Counter(
    "bookstock_claim_failures_total", "Claims rejected for lack of availability", ["scope"]
)
RELEASED = Counter("bookstock_claims_released_total", "Pending claims released", ["reason"])
REALLOCATIONS = Counter(
    "bookstock_reallocations_total", "Reservation line reallocations", ["outcome"]
)

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程直接导出默认 REGISTRY；
    设置了 PROMETHEUS_MULTIPROC_DIR 时，用 MultiProcessCollector 合并各分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
