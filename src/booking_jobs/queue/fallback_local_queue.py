from __future__ import annotations

import asyncio
from collections import deque
from contextlib import suppress
from typing import Any

from booking_jobs.jobs.idempotency import IdempotencyGuard
from booking_jobs.jobs.models import Job, JobKind, Receipt
from booking_jobs.ops import metrics
from booking_jobs.utils.log import logger

from .dispatch import DispatchOutcome, run_job
from .errors import BackendUnavailable
from .interfaces import Processor, QueueStatus


class FallbackLocalQueue:
    """
    In-process fallback backend.

    Used when Redis is not configured or not reachable:
    - enqueue() appends to a FIFO deque and schedules a drain on the next loop tick
    - a single drain task pops jobs one at a time and runs them through dispatch

    Notes:
    - Nothing is persisted; undrained jobs are lost when the process exits.
    - There is no retry: a job that fails, or whose key another process is
      still holding, is logged and dropped.
    """

    mode = "fallback"

    def __init__(
        self,
        *,
        name: str,
        kind: JobKind,
        processor: Processor,
        guard: IdempotencyGuard | None = None,
        timeout_s: float = 120.0,
        redis_configured: bool = False,
        detail: str = "fallback local queue active",
    ) -> None:
        self.name = str(name)
        self.kind = kind
        self._processor = processor
        self._guard = guard
        self._timeout_s = float(timeout_s)
        self._redis_configured = bool(redis_configured)
        self._detail = str(detail)
        self._pending: deque[Job] = deque()
        self._task: asyncio.Task | None = None
        self._started = False
        self._stopping = False
        self._counts = {"processed": 0, "failed": 0, "duplicates": 0, "busy": 0, "dropped": 0}

    def status(self) -> QueueStatus:
        counts = dict(self._counts)
        counts["pending"] = len(self._pending)
        return QueueStatus(
            queue=self.name,
            mode=self.mode,
            redis_configured=self._redis_configured,
            redis_ok=False,
            detail=self._detail,
            counts=counts,
        )

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stopping = False
        logger.info("queue_backend_started", queue_mode=self.mode, queue=self.name, pending=len(self._pending))
        self._schedule_drain()

    async def stop(self) -> None:
        self._stopping = True
        self._started = False
        dropped = len(self._pending)
        self._pending.clear()
        if self._task is not None:
            self._task.cancel()
            # asyncio.CancelledError inherits from BaseException in newer Python versions.
            with suppress(asyncio.CancelledError, Exception):
                await self._task
        self._task = None
        if dropped:
            self._counts["dropped"] += dropped
            metrics.jobs_dropped.labels(queue=self.name, reason="shutdown").inc(dropped)
            logger.warning("queue_jobs_dropped", queue_mode=self.mode, queue=self.name, count=int(dropped))
        logger.info("queue_backend_stopped", queue_mode=self.mode, queue=self.name)

    async def enqueue(self, payload: dict[str, Any], *, idempotency_key: str | None = None) -> Receipt:
        if self._stopping:
            raise BackendUnavailable(self.name, "queue is stopping")
        job = Job.create(kind=self.kind, queue=self.name, payload=payload, idempotency_key=idempotency_key)
        self._pending.append(job)
        metrics.jobs_enqueued.labels(queue=self.name, backend=self.mode).inc()
        logger.info("queue_submit", queue_mode=self.mode, queue=self.name, job_id=job.id)
        self._schedule_drain()
        return Receipt(job_id=job.id, queue=self.name, backend=self.mode, idempotency_key=job.idempotency_key)

    def _schedule_drain(self) -> None:
        if not self._started or self._stopping:
            return
        if self._task is not None and not self._task.done():
            # The running drain re-checks the deque before it exits.
            return
        asyncio.get_running_loop().call_soon(self._spawn_drain)

    def _spawn_drain(self) -> None:
        if not self._started or self._stopping or not self._pending:
            return
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._drain(), name=f"queue.fallback.drain.{self.name}")

    async def _drain(self) -> None:
        while self._pending and not self._stopping:
            job = self._pending.popleft()
            job.attempt_count += 1
            res = await run_job(job, processor=self._processor, guard=self._guard, timeout_s=self._timeout_s)
            if res.outcome is DispatchOutcome.done:
                self._counts["processed"] += 1
            elif res.outcome is DispatchOutcome.duplicate:
                self._counts["duplicates"] += 1
            elif res.outcome is DispatchOutcome.busy:
                # Another process holds the key; no retry here, so the job is lost.
                self._counts["busy"] += 1
                metrics.jobs_dropped.labels(queue=self.name, reason="busy").inc()
                logger.warning(
                    "queue_job_dropped",
                    queue_mode=self.mode,
                    queue=self.name,
                    job_id=job.id,
                    reason="idempotency key held by another job",
                )
            else:
                self._counts["failed"] += 1
                metrics.jobs_dropped.labels(queue=self.name, reason="failed").inc()
                logger.warning(
                    "queue_job_dropped",
                    queue_mode=self.mode,
                    queue=self.name,
                    job_id=job.id,
                    reason=res.failure.reason if res.failure is not None else "",
                )
            # Let the host run between jobs.
            await asyncio.sleep(0)
