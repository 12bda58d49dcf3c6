from __future__ import annotations

import asyncio
import inspect
import json
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any

from booking_jobs.jobs.idempotency import APPLIED, IdempotencyGuard
from booking_jobs.jobs.models import Job
from booking_jobs.ops import metrics
from booking_jobs.utils.log import clear_job_context, logger, set_job_context

from .errors import ProcessorFailure
from .interfaces import Processor


class DispatchOutcome(str, Enum):
    done = "done"
    duplicate = "duplicate"
    # Key claimed by another job that has not applied it yet.
    busy = "busy"
    failed = "failed"


@dataclass(frozen=True, slots=True)
class DispatchResult:
    outcome: DispatchOutcome
    failure: ProcessorFailure | None = None


def payload_context(payload: dict[str, Any], *, limit: int = 500) -> str:
    try:
        s = json.dumps(payload, sort_keys=True, default=str)
    except (TypeError, ValueError):
        s = repr(payload)
    return s if len(s) <= limit else s[:limit] + "..."


async def _invoke(processor: Processor, payload: dict[str, Any], timeout_s: float) -> Any:
    res = processor(payload)
    if inspect.isawaitable(res):
        if timeout_s and timeout_s > 0:
            return await asyncio.wait_for(res, timeout=float(timeout_s))
        return await res
    return res


async def run_job(
    job: Job,
    *,
    processor: Processor,
    guard: IdempotencyGuard | None,
    timeout_s: float,
) -> DispatchResult:
    """
    One drain/consume attempt: idempotency claim, bounded processor call,
    claim completion or release. Never raises (except cancellation); failures
    come back as DispatchOutcome.failed with a ProcessorFailure attached.

    A key that is already applied gives `duplicate`. A key still claimed by a
    different job gives `busy`: nothing ran, and the caller decides when to try again.
    Guard calls run in a thread so sqlite lock waits do not block the loop.
    """
    scope = job.kind.value
    key = job.idempotency_key if guard is not None else None
    set_job_context(job_id=job.id, queue=job.queue)
    try:
        if key:
            try:
                claimed = await asyncio.to_thread(guard.claim, scope, key, job_id=job.id)
                state = None if claimed else await asyncio.to_thread(guard.state, scope, key)
            except sqlite3.Error as ex:
                return _failed(job, f"idempotency guard error: {ex}")
            if not claimed:
                if state == APPLIED:
                    logger.info("job_duplicate", kind=scope, idempotency_key=key)
                    metrics.jobs_finished.labels(queue=job.queue, outcome="duplicate").inc()
                    return DispatchResult(DispatchOutcome.duplicate)
                logger.info("job_key_busy", kind=scope, idempotency_key=key, key_state=state)
                metrics.jobs_finished.labels(queue=job.queue, outcome="busy").inc()
                return DispatchResult(DispatchOutcome.busy)

        try:
            with metrics.time_hist(metrics.processor_seconds, queue=job.queue):
                result = await _invoke(processor, job.payload, timeout_s)
            if result is False:
                raise RuntimeError("processor reported failure")
        except asyncio.CancelledError:
            if key:
                # Synchronous: the task is being torn down.
                _release(guard, scope, key, job.id)
            raise
        except asyncio.TimeoutError:
            if key:
                await asyncio.to_thread(_release, guard, scope, key, job.id)
            return _failed(job, f"timed out after {timeout_s}s")
        except Exception as ex:
            if key:
                await asyncio.to_thread(_release, guard, scope, key, job.id)
            return _failed(job, f"{type(ex).__name__}: {ex}")

        if key:
            try:
                await asyncio.to_thread(guard.complete, scope, key)
            except sqlite3.Error as ex:
                # The side effect already happened; the key stays claimed by this job.
                logger.error("idempotency_complete_failed", kind=scope, idempotency_key=key, error=str(ex))
        metrics.jobs_finished.labels(queue=job.queue, outcome="done").inc()
        logger.info("job_done", kind=scope, attempt=int(job.attempt_count))
        return DispatchResult(DispatchOutcome.done)
    finally:
        clear_job_context()


def _release(guard: IdempotencyGuard, scope: str, key: str, job_id: str) -> None:
    try:
        guard.release(scope, key, job_id=job_id)
    except sqlite3.Error as ex:
        logger.error("idempotency_release_failed", kind=scope, idempotency_key=key, error=str(ex))


def _failed(job: Job, reason: str) -> DispatchResult:
    failure = ProcessorFailure(job_id=job.id, queue=job.queue, reason=reason)
    logger.warning(
        "job_failed",
        kind=job.kind.value,
        attempt=int(job.attempt_count),
        error=reason,
        payload=payload_context(job.payload),
    )
    metrics.jobs_finished.labels(queue=job.queue, outcome="failed").inc()
    return DispatchResult(DispatchOutcome.failed, failure)
