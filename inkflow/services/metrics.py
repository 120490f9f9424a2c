"""Metrics for the inkflow coordinator and pipeline.

Besides the generic per-stage latency histogram and event counter, three
counters carry the outcomes operators alert on: shard notifications by
ingestion outcome, completion callbacks by kind and delivery result, and
pipeline runs by terminal status.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, ClassVar, Iterator

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import PlainTextResponse

from .interfaces import MetricsClient

LOG = logging.getLogger(__name__)

CALLBACK_DELIVERED = "delivered"
CALLBACK_UNDELIVERABLE = "undeliverable"


class PrometheusMetrics(MetricsClient):
    """Prometheus-backed metrics client."""

    _LATENCY = Histogram(
        "inkflow_stage_latency_seconds",
        "Stage latency in seconds",
        ["stage", "name"],
    )
    _COUNTERS = Counter(
        "inkflow_events_total",
        "Coordinator and pipeline event counts",
        ["stage", "name"],
    )
    _SHARD_EVENTS = Counter(
        "inkflow_shard_events_total",
        "Shard notifications by ingestion outcome",
        ["outcome"],
    )
    _CALLBACKS = Counter(
        "inkflow_callbacks_total",
        "Completion callbacks by kind (success/failure) and delivery result",
        ["kind", "result"],
    )
    _RUNS = Counter(
        "inkflow_pipeline_runs_total",
        "In-process pipeline runs by terminal status",
        ["status"],
    )
    _DEFAULT_INSTANCE: ClassVar["PrometheusMetrics | None"] = None

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        stage = labels.get("stage", "unknown")
        PrometheusMetrics._LATENCY.labels(stage=stage, name=name).observe(value)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        stage = labels.get("stage", "unknown")
        PrometheusMetrics._COUNTERS.labels(stage=stage, name=name).inc(amount)

    def shard_event(self, outcome: str) -> None:
        PrometheusMetrics._SHARD_EVENTS.labels(outcome=outcome).inc()

    def callback(self, kind: str, result: str) -> None:
        PrometheusMetrics._CALLBACKS.labels(kind=kind, result=result).inc()

    def run_finished(self, status: str) -> None:
        PrometheusMetrics._RUNS.labels(status=status).inc()

    @contextmanager
    def time(self, name: str, **labels: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe_latency(name, time.perf_counter() - start, **labels)

    @classmethod
    def default(cls) -> "PrometheusMetrics":
        if cls._DEFAULT_INSTANCE is None:
            cls._DEFAULT_INSTANCE = cls()
        return cls._DEFAULT_INSTANCE

    @classmethod
    def instrument_app(cls, app: Any) -> "PrometheusMetrics":
        """Attach the /metrics endpoint to the FastAPI app once."""
        metrics = cls.default()
        if getattr(app.state, "_prometheus_instrumented", False):
            return metrics

        @app.get("/metrics", include_in_schema=False)
        async def _metrics_endpoint():
            return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

        app.state._prometheus_instrumented = True
        return metrics


class NullMetrics(MetricsClient):
    """No-op metrics implementation."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("Metric ignored: %s=%s labels=%s", name, value, labels)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        LOG.debug("Counter ignored: %s+=%s labels=%s", name, amount, labels)

    def shard_event(self, outcome: str) -> None:
        LOG.debug("Shard event ignored: %s", outcome)

    def callback(self, kind: str, result: str) -> None:
        LOG.debug("Callback ignored: %s/%s", kind, result)

    def run_finished(self, status: str) -> None:
        LOG.debug("Run status ignored: %s", status)


__all__ = ["CALLBACK_DELIVERED", "CALLBACK_UNDELIVERABLE", "NullMetrics", "PrometheusMetrics"]
