"""Counters, timings and gauges for the research pipeline.

Every metric is logged at DEBUG under ``research.metric``; with
``METRICS_BACKEND=statsd`` it is also sent to StatsD, where tags are folded
into the metric name because plain StatsD has no tag support.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from app.config import settings

try:  # pragma: no cover - optional dependency
    from statsd import StatsClient
except ImportError:  # pragma: no cover - optional dependency guard
    StatsClient = None  # type: ignore[assignment]

logger = logging.getLogger("app.metrics")

COUNTER = "counter"
TIMING = "timing"
GAUGE = "gauge"


class MetricsReporter:
    """Emit metrics to the log and, when configured, to StatsD."""

    def __init__(
        self,
        *,
        backend: str | None = None,
        namespace: str | None = None,
        sample_rate: float | None = None,
        disabled: bool | None = None,
    ) -> None:
        self._disabled = settings.metrics_disable if disabled is None else disabled
        self._namespace = (namespace or settings.metrics_namespace or "research").strip(".")
        self._backend = (backend or settings.metrics_backend or "stdout").lower()
        rate = settings.metrics_sample_rate if sample_rate is None else sample_rate
        self._sample_rate = max(0.0, min(rate, 1.0))
        self._statsd = self._connect_statsd() if self._backend == "statsd" and not self._disabled else None

    @property
    def namespace(self) -> str:
        return self._namespace

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._emit(COUNTER, metric, value, tags)

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit(TIMING, metric, value_ms, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit(GAUGE, metric, value, tags)

    @contextmanager
    def timer(self, metric: str, *, tags: dict[str, Any] | None = None) -> Iterator[None]:
        """Record the wall time of the block in milliseconds, even when it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timing(metric, (time.perf_counter() - started) * 1000, tags=tags)

    def qualified_name(self, metric: str, tags: dict[str, Any] | None = None) -> str:
        """``namespace.metric`` followed by sorted ``key_value`` tag segments."""
        name = (metric or "").strip(".")
        if not name.startswith(f"{self._namespace}."):
            name = f"{self._namespace}.{name}" if name else self._namespace
        for key, value in sorted((tags or {}).items()):
            name = f"{name}.{key}_{_segment(value)}"
        return name

    def _emit(self, metric_type: str, metric: str, value: float, tags: dict[str, Any] | None) -> None:
        if self._disabled or value is None:
            return
        rate = 1.0 if metric_type == GAUGE else self._sample_rate
        if rate < 1.0 and secrets.randbelow(1_000_000) / 1_000_000 > rate:
            return

        name = self.qualified_name(metric)
        logger.debug(
            "research.metric",
            extra={
                "metrics": {
                    "metric": name,
                    "type": metric_type,
                    "value": round(float(value), 4),
                    "tags": tags or {},
                    "sample_rate": rate,
                }
            },
        )
        if self._statsd is None:
            return
        statsd_name = self.qualified_name(metric, tags)
        try:
            if metric_type == TIMING:
                self._statsd.timing(statsd_name, value, rate=rate)
            elif metric_type == GAUGE:
                self._statsd.gauge(statsd_name, value)
            else:
                self._statsd.incr(statsd_name, value, rate=rate)
        except OSError as exc:
            logger.warning(
                "metrics.backend_error",
                extra={"metric": statsd_name, "backend": self._backend, "error": type(exc).__name__},
            )

    def _connect_statsd(self) -> Any:
        if StatsClient is None:
            logger.warning("statsd backend requested but statsd package is not installed.")
            return None
        try:
            return StatsClient(
                host=settings.metrics_statsd_host,
                port=settings.metrics_statsd_port,
                prefix="",
            )
        except OSError as exc:
            logger.warning("metrics.backend_error", extra={"backend": "statsd", "error": type(exc).__name__})
            return None


def _segment(value: Any) -> str:
    text = str(getattr(value, "value", value)).strip().lower()
    return "".join(char if char.isalnum() else "_" for char in text) or "none"


metrics = MetricsReporter()
