#!/usr/bin/env python3
"""
=====================================================================
Request Metrics
=====================================================================
Two instruments fed by the request pipeline:

- kangaroo_http_requests_total: one increment per request (rate meter)
- kangaroo_http_request_duration_seconds: one observation per request

Both live on an application-owned CollectorRegistry (also served at
/metrics). MetricsReporter snapshots them on a fixed interval and writes
one structured line to the "kangaroo.metrics" logger.
=====================================================================
"""

import time
import logging
import threading
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram

from kangaroo.logging_utils import METRICS_LOGGER_NAME

logger = logging.getLogger(__name__)

REQUEST_TIME_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]


class Stopwatch:
    """Times one request; end() records the observation exactly once."""

    def __init__(self, histogram: Histogram):
        self._histogram = histogram
        self._start = time.perf_counter()
        self._lock = threading.Lock()
        self.elapsed: Optional[float] = None

    def end(self) -> float:
        with self._lock:
            if self.elapsed is None:
                self.elapsed = max(0.0, time.perf_counter() - self._start)
                self._histogram.observe(self.elapsed)
            return self.elapsed


class RequestMetrics:
    """Process-scoped rate meter and request-time histogram."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.requests = Counter(
            'kangaroo_http_requests',
            'Requests entering route dispatch',
            registry=self.registry,
        )
        self.request_time = Histogram(
            'kangaroo_http_request_duration_seconds',
            'Time from dispatch to response completion',
            buckets=REQUEST_TIME_BUCKETS,
            registry=self.registry,
        )
        self.started_at = time.time()
        self._last_count = 0.0
        self._last_time = self.started_at
        self._lock = threading.Lock()

    def mark(self) -> None:
        self.requests.inc()

    def start_timer(self) -> Stopwatch:
        return Stopwatch(self.request_time)

    def _sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    def snapshot(self) -> Dict[str, Any]:
        """
        Read both instruments.

        ``rate`` is requests per second since the previous snapshot,
        ``mean_rate`` since process start.
        """
        now = time.time()
        count = self._sample('kangaroo_http_requests_total')
        with self._lock:
            window = max(now - self._last_time, 1e-9)
            rate = (count - self._last_count) / window
            self._last_count, self._last_time = count, now

        timer_count = self._sample('kangaroo_http_request_duration_seconds_count')
        timer_sum = self._sample('kangaroo_http_request_duration_seconds_sum')
        buckets = {}
        for bound in REQUEST_TIME_BUCKETS + [float('inf')]:
            le = '+Inf' if bound == float('inf') else str(bound)
            buckets[le] = int(self._sample('kangaroo_http_request_duration_seconds_bucket', {'le': le}))

        return {
            "requestsPerSecond": {
                "count": int(count),
                "rate": round(rate, 4),
                "mean_rate": round(count / max(now - self.started_at, 1e-9), 4),
            },
            "requestTime": {
                "count": int(timer_count),
                "sum": timer_sum,
                "mean": (timer_sum / timer_count) if timer_count else 0.0,
                "buckets": buckets,
            },
        }


class MetricsReporter:
    """Background thread that logs a metrics snapshot every interval."""

    def __init__(self, metrics: RequestMetrics, interval_ms: int = 15000):
        self.metrics = metrics
        self.interval = interval_ms / 1000.0
        self.log = logging.getLogger(METRICS_LOGGER_NAME)
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def flush(self) -> Dict[str, Any]:
        collection = self.metrics.snapshot()
        self.log.info("metrics output", extra={"collection": collection, "type": "metrics"})
        return collection

    def _run(self):
        while not self.stop_event.wait(self.interval):
            try:
                self.flush()
            except Exception as e:
                logger.error(f"Metrics flush failed: {e}", exc_info=True)

    def start(self) -> None:
        if self.thread is not None:
            return
        self.thread = threading.Thread(target=self._run, daemon=True, name="MetricsReporter")
        self.thread.start()
        logger.info(f"Metrics reporter started (interval={self.interval}s)")

    def stop(self, timeout: float = 5) -> None:
        self.stop_event.set()
        if self.thread is not None:
            self.thread.join(timeout=timeout)
