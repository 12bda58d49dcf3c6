from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server

REGISTRY = CollectorRegistry()

# Processor latency buckets (seconds); PMS calls are usually sub-second, stuck ones hit the timeout.
PROCESSOR_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)

jobs_enqueued = Counter(
    "booking_jobs_enqueued_total",
    "Jobs accepted by enqueue()",
    labelnames=("queue", "backend"),
    registry=REGISTRY,
)
jobs_finished = Counter(
    "booking_jobs_finished_total",
    "Drain/consume attempts by outcome (done|duplicate|busy|failed)",
    labelnames=("queue", "outcome"),
    registry=REGISTRY,
)
jobs_retried = Counter(
    "booking_jobs_retried_total",
    "Jobs rescheduled with backoff",
    labelnames=("queue",),
    registry=REGISTRY,
)
jobs_dead_lettered = Counter(
    "booking_jobs_dead_lettered_total",
    "Jobs moved to the dead-letter list after exhausting retries",
    labelnames=("queue",),
    registry=REGISTRY,
)
jobs_dropped = Counter(
    "booking_jobs_dropped_total",
    "Fallback-queue jobs lost (failed once, key busy, or undrained at shutdown)",
    labelnames=("queue", "reason"),
    registry=REGISTRY,
)
backend_fallbacks = Counter(
    "booking_jobs_backend_fallbacks_total",
    "Queues that fell back to the in-process backend at selection time",
    labelnames=("queue",),
    registry=REGISTRY,
)
processor_seconds = Histogram(
    "booking_jobs_processor_seconds",
    "Job processor latency (seconds)",
    labelnames=("queue",),
    registry=REGISTRY,
    buckets=PROCESSOR_BUCKETS,
)


@contextmanager
def time_hist(hist: Histogram, *, queue: str) -> Iterator[None]:
    t0 = time.perf_counter()
    try:
        yield
    finally:
        hist.labels(queue=queue).observe(max(0.0, time.perf_counter() - t0))


def serve(port: int) -> None:
    """Expose REGISTRY on http://0.0.0.0:<port>/metrics (background thread)."""
    start_http_server(int(port), registry=REGISTRY)
