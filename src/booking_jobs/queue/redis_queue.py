from __future__ import annotations

import asyncio
import os
import socket
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from booking_jobs.jobs.idempotency import IdempotencyGuard
from booking_jobs.jobs.models import Job, JobKind, Receipt
from booking_jobs.ops import metrics
from booking_jobs.utils.log import logger

from .dispatch import DispatchOutcome, run_job
from .errors import BackendUnavailable
from .interfaces import Processor, QueueStatus

_REDIS_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True, slots=True)
class RedisQueueConfig:
    prefix: str
    consumer: str
    max_attempts: int
    base_backoff_ms: int
    backoff_cap_ms: int
    lease_ms: int
    consumers: int
    poll_interval_ms: int
    health_interval_s: float = 2.0

    @classmethod
    def from_settings(cls, s: Any) -> RedisQueueConfig:
        prefix = str(getattr(s, "redis_queue_prefix", "bk") or "bk").strip().strip(":") or "bk"
        return cls(
            prefix=prefix,
            consumer=f"{prefix}:{_consumer_id()}",
            max_attempts=max(1, int(getattr(s, "redis_queue_max_attempts", 5) or 5)),
            base_backoff_ms=max(1, int(getattr(s, "redis_queue_backoff_ms", 1000) or 1000)),
            backoff_cap_ms=max(1, int(getattr(s, "redis_queue_backoff_cap_ms", 60_000) or 60_000)),
            lease_ms=max(1_000, int(getattr(s, "redis_lease_ms", 300_000) or 300_000)),
            consumers=max(1, int(getattr(s, "redis_queue_consumers", 1) or 1)),
            poll_interval_ms=max(10, int(getattr(s, "redis_poll_interval_ms", 250) or 250)),
        )

    def backoff_ms(self, attempt: int) -> int:
        att = max(1, int(attempt))
        return int(min(self.backoff_cap_ms, self.base_backoff_ms * (2 ** (att - 1))))


class RedisQueue:
    """
    Durable queue backend (Redis).

    Key layout per queue name:
    - {prefix}:{queue}:job:{id}   job JSON (payload, attempts, last error)
    - {prefix}:{queue}:pending    list of ids, LPUSH by producers, LMOVE'd by consumers
    - {prefix}:{queue}:processing ids currently claimed by some consumer
    - {prefix}:{queue}:leases     zset id -> lease expiry (unix seconds)
    - {prefix}:{queue}:delayed    zset id -> due time for retries (unix seconds)
    - {prefix}:{queue}:dlq        list of ids that exhausted their attempts

    Crash safety:
    - A claim is a single LMOVE, so an id is never held by two consumers at once.
    - If a consumer dies, its lease expires and the scheduler puts the id back on pending.
    - An id left in processing without a lease (consumer died between LMOVE and ZADD)
      is treated as leased from the moment the scheduler first sees it.
    Delivery is at-least-once; the idempotency guard absorbs redeliveries.
    """

    mode = "redis"

    def __init__(
        self,
        *,
        name: str,
        kind: JobKind,
        processor: Processor,
        redis_url: str,
        guard: IdempotencyGuard | None = None,
        timeout_s: float = 120.0,
        cfg: RedisQueueConfig,
        client: Any = None,
    ) -> None:
        self.name = str(name)
        self.kind = kind
        self._processor = processor
        self._redis_url = str(redis_url or "").strip()
        self._guard = guard
        self._timeout_s = float(timeout_s)
        self._cfg = cfg
        self._client = client
        self._owns_client = client is None
        self._tasks: list[asyncio.Task] = []
        self._stopping = False
        self._healthy = False
        self._last_ping = 0.0
        self._counts = {"processed": 0, "failed": 0, "duplicates": 0, "busy": 0, "retried": 0, "dead_lettered": 0}
        # processing ids seen without a lease -> monotonic time first seen
        self._unleased: dict[str, float] = {}
        self._depth = {"pending": 0, "delayed": 0, "in_flight": 0, "dlq": 0}

    def _redis(self):
        if self._client is None:
            # from_url raises ValueError on a malformed URL; selection treats that as "unavailable".
            self._client = redis.Redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def status(self) -> QueueStatus:
        counts = dict(self._counts)
        counts.update(self._depth)
        return QueueStatus(
            queue=self.name,
            mode=self.mode,
            redis_configured=bool(self._redis_url) or not self._owns_client,
            redis_ok=bool(self._healthy),
            detail="redis queue active" if self._healthy else "redis unreachable; jobs wait in redis",
            counts=counts,
        )

    async def connect(self, *, timeout_s: float) -> None:
        """
        Build the client and ping it once. Raises when the broker is unusable.
        """
        r = self._redis()
        pong = await asyncio.wait_for(r.ping(), timeout=max(0.1, float(timeout_s)))
        if not pong:
            raise BackendUnavailable(self.name, "ping returned no reply")
        self._healthy = True
        self._last_ping = time.monotonic()

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        self._tasks.append(asyncio.create_task(self._scheduler_loop(), name=f"queue.redis.scheduler.{self.name}"))
        for i in range(self._cfg.consumers):
            self._tasks.append(
                asyncio.create_task(self._consume_loop(i), name=f"queue.redis.consume.{self.name}.{i}")
            )
        logger.info(
            "queue_backend_started",
            queue_mode=self.mode,
            queue=self.name,
            prefix=self._cfg.prefix,
            consumer=self._cfg.consumer,
            consumers=int(self._cfg.consumers),
        )

    async def stop(self) -> None:
        self._stopping = True
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._owns_client and self._client is not None:
            with suppress(*_REDIS_ERRORS):
                await self._client.aclose()
            self._client = None
        logger.info("queue_backend_stopped", queue_mode=self.mode, queue=self.name)

    async def enqueue(self, payload: dict[str, Any], *, idempotency_key: str | None = None) -> Receipt:
        job = Job.create(kind=self.kind, queue=self.name, payload=payload, idempotency_key=idempotency_key)
        try:
            r = self._redis()
            await r.set(self._job_key(job.id), job.to_json())
            await r.lpush(self._pending_key(), job.id)
        except (*_REDIS_ERRORS, ValueError) as ex:
            logger.warning("queue_submit_failed", queue_mode=self.mode, queue=self.name, error=str(ex))
            raise BackendUnavailable(self.name, f"{type(ex).__name__}: {ex}") from ex
        metrics.jobs_enqueued.labels(queue=self.name, backend=self.mode).inc()
        logger.info("queue_submit", queue_mode=self.mode, queue=self.name, job_id=job.id)
        return Receipt(job_id=job.id, queue=self.name, backend=self.mode, idempotency_key=job.idempotency_key)

    async def dead_letters(self, *, limit: int = 50) -> list[Job]:
        r = self._redis()
        ids = await r.lrange(self._dlq_key(), 0, max(1, int(limit)) - 1)
        out: list[Job] = []
        for jid in ids:
            raw = await r.get(self._job_key(str(jid)))
            if raw is None:
                continue
            with suppress(ValueError, KeyError, TypeError):
                out.append(Job.from_json(raw))
        return out

    async def requeue_dead_letter(self, job_id: str) -> bool:
        """
        Move a dead job back to pending with a fresh attempt budget.
        """
        jid = str(job_id or "").strip()
        if not jid:
            return False
        r = self._redis()
        raw = await r.get(self._job_key(jid))
        if raw is None:
            return False
        removed = int(await r.lrem(self._dlq_key(), 0, jid) or 0)
        if not removed:
            return False
        job = Job.from_json(raw)
        job.attempt_count = 0
        job.last_error = None
        await r.set(self._job_key(jid), job.to_json())
        await r.lpush(self._pending_key(), jid)
        logger.info("queue_dead_letter_requeued", queue_mode=self.mode, queue=self.name, job_id=jid)
        return True

    async def refresh_depth(self) -> dict[str, int]:
        r = self._redis()
        self._depth = {
            "pending": int(await r.llen(self._pending_key()) or 0),
            "delayed": int(await r.zcard(self._delayed_key()) or 0),
            "in_flight": int(await r.llen(self._processing_key()) or 0),
            "dlq": int(await r.llen(self._dlq_key()) or 0),
        }
        return dict(self._depth)

    async def _scheduler_loop(self) -> None:
        """
        Move due retries back to pending, recover expired leases, keep the health flag fresh.
        """
        while not self._stopping:
            try:
                moved = await self._move_due()
                moved += await self._recover_expired()
                moved += await self._recover_unleased()
                await self._health_check()
                await asyncio.sleep(0.05 if moved else self._cfg.poll_interval_ms / 1000.0)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                self._healthy = False
                logger.warning("queue_scheduler_error", queue_mode=self.mode, queue=self.name, error=str(ex))
                await asyncio.sleep(2.0)

    async def _consume_loop(self, idx: int) -> None:
        while not self._stopping:
            try:
                job_id = await self._claim_one()
                if not job_id:
                    await asyncio.sleep(self._cfg.poll_interval_ms / 1000.0)
                    continue
                await self._process(job_id)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.warning(
                    "queue_consume_error", queue_mode=self.mode, queue=self.name, consumer=int(idx), error=str(ex)
                )
                await asyncio.sleep(1.0)

    async def _claim_one(self) -> str | None:
        r = self._redis()
        jid = await r.lmove(self._pending_key(), self._processing_key(), "RIGHT", "LEFT")
        if not jid:
            return None
        jid = str(jid)
        await r.zadd(self._leases_key(), {jid: time.time() + self._cfg.lease_ms / 1000.0})
        return jid

    async def _process(self, job_id: str) -> None:
        r = self._redis()
        raw = await r.get(self._job_key(job_id))
        if raw is None:
            # Already acknowledged by a consumer whose lease had expired.
            logger.warning("queue_job_missing", queue_mode=self.mode, queue=self.name, job_id=job_id)
            await self._ack(job_id)
            return
        try:
            job = Job.from_json(raw)
        except (ValueError, KeyError, TypeError) as ex:
            await self._bury(job_id, reason=f"unreadable job record: {ex}")
            return

        job.attempt_count += 1
        await r.set(self._job_key(job.id), job.to_json())
        logger.info(
            "queue_claimed",
            queue_mode=self.mode,
            queue=self.name,
            job_id=job.id,
            attempt=int(job.attempt_count),
            consumer=self._cfg.consumer,
        )

        res = await run_job(job, processor=self._processor, guard=self._guard, timeout_s=self._timeout_s)
        if res.outcome is DispatchOutcome.done:
            self._counts["processed"] += 1
            await self._ack(job.id)
            return
        if res.outcome is DispatchOutcome.duplicate:
            self._counts["duplicates"] += 1
            await self._ack(job.id)
            return
        if res.outcome is DispatchOutcome.busy:
            # Nothing ran: give the attempt back and look again after the base delay.
            self._counts["busy"] += 1
            job.attempt_count -= 1
            await self._defer(job, delay_ms=self._cfg.backoff_ms(1), retry=False)
            return

        self._counts["failed"] += 1
        job.last_error = res.failure.reason if res.failure is not None else "failed"
        if job.attempt_count >= self._cfg.max_attempts:
            await self._send_to_dlq(job)
        else:
            await self._defer(job)

    async def _ack(self, job_id: str) -> None:
        r = self._redis()
        await r.lrem(self._processing_key(), 0, job_id)
        await r.zrem(self._leases_key(), job_id)
        await r.delete(self._job_key(job_id))

    async def _defer(self, job: Job, *, delay_ms: int | None = None, retry: bool = True) -> None:
        r = self._redis()
        if delay_ms is None:
            delay_ms = self._cfg.backoff_ms(job.attempt_count)
        due = time.time() + (float(delay_ms) / 1000.0)
        await r.set(self._job_key(job.id), job.to_json())
        await r.zadd(self._delayed_key(), {job.id: float(due)})
        await r.lrem(self._processing_key(), 0, job.id)
        await r.zrem(self._leases_key(), job.id)
        if retry:
            self._counts["retried"] += 1
            metrics.jobs_retried.labels(queue=self.name).inc()
        logger.info(
            "queue_deferred",
            queue_mode=self.mode,
            queue=self.name,
            job_id=job.id,
            attempt=int(job.attempt_count),
            delay_ms=int(delay_ms),
            reason=str(job.last_error or "") if retry else "idempotency key busy",
        )

    async def _send_to_dlq(self, job: Job) -> None:
        r = self._redis()
        await r.set(self._job_key(job.id), job.to_json())
        await r.lpush(self._dlq_key(), job.id)
        await r.lrem(self._processing_key(), 0, job.id)
        await r.zrem(self._leases_key(), job.id)
        self._counts["dead_lettered"] += 1
        metrics.jobs_dead_lettered.labels(queue=self.name).inc()
        logger.warning(
            "queue_dead_letter",
            queue_mode=self.mode,
            queue=self.name,
            job_id=job.id,
            attempts=int(job.attempt_count),
            reason=str(job.last_error or ""),
        )

    async def _bury(self, job_id: str, *, reason: str) -> None:
        r = self._redis()
        await r.lpush(self._dlq_key(), job_id)
        await r.lrem(self._processing_key(), 0, job_id)
        await r.zrem(self._leases_key(), job_id)
        self._counts["dead_lettered"] += 1
        metrics.jobs_dead_lettered.labels(queue=self.name).inc()
        logger.warning("queue_dead_letter", queue_mode=self.mode, queue=self.name, job_id=job_id, reason=reason)

    async def _move_due(self) -> int:
        r = self._redis()
        due = await r.zrangebyscore(self._delayed_key(), min="-inf", max=time.time(), start=0, num=50)
        moved = 0
        for jid in due or []:
            jid = str(jid)
            # zrem decides which scheduler wins when several workers share the queue.
            if int(await r.zrem(self._delayed_key(), jid) or 0):
                await r.lpush(self._pending_key(), jid)
                moved += 1
        return moved

    async def _recover_expired(self) -> int:
        r = self._redis()
        expired = await r.zrangebyscore(self._leases_key(), min="-inf", max=time.time(), start=0, num=50)
        recovered = 0
        for jid in expired or []:
            jid = str(jid)
            if int(await r.zrem(self._leases_key(), jid) or 0):
                await r.lrem(self._processing_key(), 0, jid)
                await r.lpush(self._pending_key(), jid)
                recovered += 1
                logger.warning("queue_lease_expired", queue_mode=self.mode, queue=self.name, job_id=jid)
        return recovered

    async def _recover_unleased(self) -> int:
        r = self._redis()
        ids = await r.lrange(self._processing_key(), 0, 99)
        now = time.monotonic()
        seen: dict[str, float] = {}
        recovered = 0
        for jid in ids or []:
            jid = str(jid)
            if await r.zscore(self._leases_key(), jid) is not None:
                continue
            first = self._unleased.get(jid, now)
            if now - first < self._cfg.lease_ms / 1000.0:
                seen[jid] = first
                continue
            # lrem decides which scheduler wins when several workers share the queue.
            if int(await r.lrem(self._processing_key(), 0, jid) or 0):
                await r.lpush(self._pending_key(), jid)
                recovered += 1
                logger.warning("queue_unleased_recovered", queue_mode=self.mode, queue=self.name, job_id=jid)
        self._unleased = seen
        return recovered

    async def _health_check(self) -> None:
        now = time.monotonic()
        if now - self._last_ping < self._cfg.health_interval_s:
            return
        self._last_ping = now
        ok = False
        try:
            ok = bool(await self._redis().ping())
            if ok:
                await self.refresh_depth()
        except _REDIS_ERRORS:
            ok = False
        if ok != self._healthy:
            logger.info("queue_health_changed", queue_mode=self.mode, queue=self.name, redis_ok=bool(ok))
        self._healthy = ok

    def _base(self) -> str:
        return f"{self._cfg.prefix}:{self.name}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._base()}:job:{job_id}"

    def _pending_key(self) -> str:
        return f"{self._base()}:pending"

    def _processing_key(self) -> str:
        return f"{self._base()}:processing"

    def _leases_key(self) -> str:
        return f"{self._base()}:leases"

    def _delayed_key(self) -> str:
        return f"{self._base()}:delayed"

    def _dlq_key(self) -> str:
        return f"{self._base()}:dlq"


def _consumer_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"
