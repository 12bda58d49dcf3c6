from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any

import pytest

from booking_jobs.jobs.idempotency import IdempotencyGuard
from booking_jobs.jobs.models import JobKind
from booking_jobs.queue.errors import BackendUnavailable
from booking_jobs.queue.fallback_local_queue import FallbackLocalQueue
from booking_jobs.queue.producers import enqueue_booking, enqueue_webhook
from tests._helpers.waiting import wait_until


def _queue(processor: Any, *, guard: IdempotencyGuard | None = None, timeout_s: float = 5.0) -> FallbackLocalQueue:
    return FallbackLocalQueue(
        name="create-booking",
        kind=JobKind.booking_creation,
        processor=processor,
        guard=guard,
        timeout_s=timeout_s,
    )


def test_enqueue_returns_before_processing_and_keeps_fifo() -> None:
    seen: list[dict] = []

    async def go() -> tuple[list[dict], list[dict]]:
        q = _queue(seen.append)
        await q.start()
        payloads = [{"weekId": i, "nested": {"rooms": [i, i + 1]}} for i in range(5)]
        for p in payloads:
            await q.enqueue(p)
        # drains are deferred to a later loop tick
        right_after = list(seen)
        assert await wait_until(lambda: len(seen) == 5)
        await q.stop()
        return right_after, payloads

    right_after, payloads = asyncio.run(go())
    assert right_after == []
    assert seen == payloads


def test_payload_is_copied_at_enqueue() -> None:
    seen: list[dict] = []

    async def go() -> None:
        q = _queue(seen.append)
        await q.start()
        p = {"userId": 7, "reservations": [{"StartUtc": "2026-03-01"}]}
        await q.enqueue(p)
        p["userId"] = 8
        p["reservations"].append({"StartUtc": "x"})
        assert await wait_until(lambda: len(seen) == 1)
        await q.stop()

    asyncio.run(go())
    assert seen == [{"userId": 7, "reservations": [{"StartUtc": "2026-03-01"}]}]


def test_failing_job_does_not_stop_the_drain() -> None:
    seen: list[int] = []

    def processor(p: dict) -> None:
        if p["n"] == 1:
            raise RuntimeError("pms down")
        seen.append(p["n"])

    async def go() -> dict[str, int]:
        q = _queue(processor)
        await q.start()
        for n in range(3):
            await q.enqueue({"n": n})
        assert await wait_until(lambda: q.status().counts["processed"] == 2)
        counts = q.status().counts
        await q.stop()
        return counts

    counts = asyncio.run(go())
    assert seen == [0, 2]
    assert counts["failed"] == 1
    assert counts["pending"] == 0


def test_processor_returning_false_counts_as_failure() -> None:
    async def go() -> dict[str, int]:
        q = _queue(lambda p: False)
        await q.start()
        await q.enqueue({"weekId": 1})
        assert await wait_until(lambda: q.status().counts["failed"] == 1)
        counts = q.status().counts
        await q.stop()
        return counts

    counts = asyncio.run(go())
    assert counts["processed"] == 0


def test_slow_async_processor_times_out_and_next_job_runs() -> None:
    seen: list[str] = []

    async def processor(p: dict) -> None:
        if p["kind"] == "slow":
            await asyncio.sleep(10)
        seen.append(p["kind"])

    async def go() -> dict[str, int]:
        q = _queue(processor, timeout_s=0.05)
        await q.start()
        await q.enqueue({"kind": "slow"})
        await q.enqueue({"kind": "fast"})
        assert await wait_until(lambda: seen == ["fast"])
        counts = q.status().counts
        await q.stop()
        return counts

    counts = asyncio.run(go())
    assert counts["failed"] == 1
    assert counts["processed"] == 1


def test_single_drain_task_per_queue() -> None:
    running = 0
    peak = 0
    done = 0

    async def processor(p: dict) -> None:
        nonlocal running, peak, done
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.001)
        running -= 1
        done += 1

    async def go() -> None:
        q = _queue(processor)
        await q.start()
        await q.start()
        await asyncio.gather(*(q.enqueue({"i": i}) for i in range(20)))
        assert await wait_until(lambda: done == 20)
        await q.stop()

    asyncio.run(go())
    assert peak == 1


def test_jobs_enqueued_before_start_wait_for_start() -> None:
    seen: list[int] = []

    async def go() -> None:
        q = _queue(lambda p: seen.append(p["i"]))
        await q.enqueue({"i": 1})
        await q.enqueue({"i": 2})
        await asyncio.sleep(0.05)
        assert seen == []
        assert q.status().counts["pending"] == 2
        await q.start()
        assert await wait_until(lambda: seen == [1, 2])
        await q.stop()

    asyncio.run(go())


def test_stop_drops_undrained_jobs_and_rejects_new_ones() -> None:
    seen: list[int] = []

    async def go() -> dict[str, int]:
        gate = asyncio.Event()

        async def processor(p: dict) -> None:
            gate.set()
            await asyncio.sleep(10)
            seen.append(p["i"])

        q = _queue(processor)
        await q.start()
        await q.enqueue({"i": 1})
        await q.enqueue({"i": 2})
        await asyncio.wait_for(gate.wait(), timeout=2)
        t0 = time.monotonic()
        await q.stop()
        assert time.monotonic() - t0 < 1.0
        with pytest.raises(BackendUnavailable):
            await q.enqueue({"i": 3})
        return q.status().counts

    counts = asyncio.run(go())
    assert seen == []
    assert counts["dropped"] == 1


def test_duplicate_booking_keys_apply_once(tmp_path: Path) -> None:
    guard = IdempotencyGuard(tmp_path / "idem.db")
    created: list[dict] = []

    async def go() -> dict[str, int]:
        q = _queue(created.append, guard=guard)
        await q.start()
        for _ in range(3):
            await enqueue_booking(q, {"idempotencyKey": "k1", "weekId": 9})
        assert await wait_until(lambda: q.status().counts["duplicates"] == 2)
        counts = q.status().counts
        await q.stop()
        return counts

    counts = asyncio.run(go())
    assert len(created) == 1
    assert counts["processed"] == 1
    assert guard.state("booking_creation", "k1") == "applied"


def test_failed_attempt_releases_key_for_a_later_delivery(tmp_path: Path) -> None:
    guard = IdempotencyGuard(tmp_path / "idem.db")
    calls: list[int] = []

    def processor(p: dict) -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")

    async def go() -> None:
        q = FallbackLocalQueue(name="mews-webhooks", kind=JobKind.webhook, processor=processor, guard=guard)
        await q.start()
        r1 = await enqueue_webhook(q, 42)
        r2 = await enqueue_webhook(q, 42)
        assert r1.idempotency_key == r2.idempotency_key == "webhook:42"
        assert await wait_until(lambda: len(calls) == 2)
        await q.stop()

    asyncio.run(go())
    assert guard.state("webhook", "webhook:42") == "applied"
