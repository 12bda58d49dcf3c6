from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from booking_jobs.config import Settings, get_settings
from booking_jobs.jobs.idempotency import IdempotencyGuard
from booking_jobs.jobs.models import QUEUE_NAMES, JobKind
from booking_jobs.ops import metrics
from booking_jobs.utils.log import logger

from .fallback_local_queue import FallbackLocalQueue
from .interfaces import JobQueue, Processor
from .redis_queue import RedisQueue, RedisQueueConfig


@dataclass(frozen=True, slots=True)
class QueueSelection:
    """
    Which backend a queue name runs on. Resolved once; never re-evaluated.
    """

    queue: str
    kind: JobKind
    mode: str  # "redis" | "fallback"
    reason: str


async def select_backend(
    kind: JobKind,
    processor: Processor,
    *,
    guard: IdempotencyGuard | None,
    settings: Settings | None = None,
    redis_client: Any = None,
    consume: bool = True,
) -> tuple[JobQueue, QueueSelection]:
    """
    Pick the backend for one queue name.

    - QUEUE_MODE=fallback, or USE_REDIS_QUEUE unset => in-process queue.
    - Otherwise build the Redis backend and ping it; on success its consumers
      start here (unless consume=False, for producer-only processes).
    - Any failure on the Redis path falls back to the in-process queue. Never raises.
    """
    s = settings or get_settings()
    name = QUEUE_NAMES[kind]
    timeout_s = float(s.job_timeout_sec)
    mode_cfg = str(s.queue_mode or "auto").strip().lower()
    redis_configured = bool(s.use_redis_queue)

    if mode_cfg == "fallback":
        reason = "QUEUE_MODE=fallback"
    elif not redis_configured:
        reason = "USE_REDIS_QUEUE not set"
    else:
        q: RedisQueue | None = None
        try:
            q = RedisQueue(
                name=name,
                kind=kind,
                processor=processor,
                redis_url=str(s.redis_url or ""),
                guard=guard,
                timeout_s=timeout_s,
                cfg=RedisQueueConfig.from_settings(s),
                client=redis_client,
            )
            await q.connect(timeout_s=float(s.redis_connect_timeout_sec))
            if consume:
                await q.start()
        except Exception as ex:
            if q is not None:
                with suppress(Exception):
                    await q.stop()
            reason = f"redis unavailable: {type(ex).__name__}: {ex}"
            metrics.backend_fallbacks.labels(queue=name).inc()
            logger.warning("queue_backend_fallback", queue=name, reason=reason)
        else:
            sel = QueueSelection(queue=name, kind=kind, mode=q.mode, reason="redis reachable")
            logger.info("queue_backend_selected", queue=name, queue_mode=sel.mode, reason=sel.reason)
            return q, sel

    fb = FallbackLocalQueue(
        name=name,
        kind=kind,
        processor=processor,
        guard=guard,
        timeout_s=timeout_s,
        redis_configured=redis_configured,
        detail=reason,
    )
    sel = QueueSelection(queue=name, kind=kind, mode=fb.mode, reason=reason)
    logger.info("queue_backend_selected", queue=name, queue_mode=sel.mode, reason=reason)
    return fb, sel


async def build_queues(
    processors: dict[JobKind, Processor],
    *,
    guard: IdempotencyGuard | None,
    settings: Settings | None = None,
    redis_client: Any = None,
    consume: bool = True,
) -> tuple[dict[JobKind, JobQueue], dict[JobKind, QueueSelection], dict[str, str]]:
    """
    Select one backend per kind, concurrently. A kind whose construction blows
    up lands in the returned error map and does not affect the others.
    """
    s = settings or get_settings()
    kinds = list(processors.keys())
    results = await asyncio.gather(
        *(
            select_backend(
                k,
                processors[k],
                guard=guard,
                settings=s,
                redis_client=redis_client,
                consume=consume,
            )
            for k in kinds
        ),
        return_exceptions=True,
    )
    queues: dict[JobKind, JobQueue] = {}
    selections: dict[JobKind, QueueSelection] = {}
    errors: dict[str, str] = {}
    for k, res in zip(kinds, results):
        if isinstance(res, BaseException):
            errors[QUEUE_NAMES[k]] = f"{type(res).__name__}: {res}"
            logger.error("queue_build_failed", queue=QUEUE_NAMES[k], error=str(res))
            continue
        queues[k], selections[k] = res
    return queues, selections, errors
