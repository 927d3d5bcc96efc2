"""
Метрики Prometheus для сервиса.

Назначение:
- Экспорт /metrics
- Счётчики per-customer операций и отказов хранилища
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# =============================================================================
# СЧЁТЧИКИ И МЕТРИКИ
# =============================================================================

REQUESTS_TOTAL = Counter(
    "change_meetings_requests_total",
    "Общее количество HTTP запросов",
    ["route", "method", "status"],
)

HTTP_REQUEST_LATENCY_MS = Histogram(
    "change_meetings_http_request_latency_ms",
    "Задержка HTTP запроса (мс)",
    ["route", "method"],
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

CUSTOMER_OPERATIONS_TOTAL = Counter(
    "change_meetings_customer_operations_total",
    "Количество per-customer операций оркестратора",
    ["operation", "action", "result"],  # operation=create|cancel, result=ok|failed
)

CUSTOMER_OPERATION_LATENCY_MS = Histogram(
    "change_meetings_customer_operation_latency_ms",
    "Задержка per-customer операции (мс)",
    ["operation"],
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000),
)

STORE_FAILURES_TOTAL = Counter(
    "change_meetings_store_failures_total",
    "Критические ошибки хранилища метаданных",
    ["kind"],  # init|write
)


@contextmanager
def track_customer_latency(operation: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        CUSTOMER_OPERATION_LATENCY_MS.labels(operation=operation).observe(elapsed_ms)


def setup_metrics_endpoint(app: FastAPI) -> None:
    """
    Регистрирует endpoint /metrics для Prometheus.
    """

    @app.middleware("http")
    async def http_metrics(request: Request, call_next):
        route = request.url.path
        method = request.method
        started = time.perf_counter()

        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        REQUESTS_TOTAL.labels(route=route, method=method, status=str(response.status_code)).inc()
        HTTP_REQUEST_LATENCY_MS.labels(route=route, method=method).observe(elapsed_ms)
        return response

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
