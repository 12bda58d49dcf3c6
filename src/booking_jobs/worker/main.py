"""
Worker process entrypoint.

- Selects a backend per configured queue (Redis or in-process fallback) and starts them concurrently
- Handles graceful shutdown via SIGTERM/SIGINT
- Exit codes: 0 after a clean shutdown, 1 when no queue could start
"""

from __future__ import annotations

import asyncio
import signal
import sys
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, NoReturn

from booking_jobs.config import ConfigError, Settings, get_settings
from booking_jobs.jobs.idempotency import IdempotencyGuard
from booking_jobs.jobs.models import QUEUE_NAMES, JobKind, WorkerState
from booking_jobs.ops import metrics
from booking_jobs.processors import load_processor, processor_path
from booking_jobs.queue.errors import StartupFailure
from booking_jobs.queue.interfaces import JobQueue, Processor
from booking_jobs.queue.manager import QueueSelection, build_queues
from booking_jobs.utils.log import logger


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    kinds: tuple[str, ...]
    shutdown_timeout_s: float
    metrics_port: int

    @classmethod
    def from_settings(cls, s: Settings) -> WorkerConfig:
        return cls(
            kinds=tuple(s.worker_queue_list()),
            shutdown_timeout_s=max(0.1, float(s.worker_shutdown_timeout_sec)),
            metrics_port=int(s.metrics_port or 0),
        )


class Worker:
    """
    Owns the queues, the idempotency guard and the lifecycle state
    (starting -> running -> draining -> stopped).
    """

    def __init__(
        self,
        *,
        processors: dict[JobKind, Processor],
        guard: IdempotencyGuard | None,
        settings: Settings | None = None,
        redis_client: Any = None,
        load_errors: dict[str, str] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.config = WorkerConfig.from_settings(self.settings)
        self.guard = guard
        self._processors = dict(processors)
        self._redis_client = redis_client
        self._load_errors = dict(load_errors or {})
        self.state = WorkerState.starting
        self.queues: dict[JobKind, JobQueue] = {}
        self.selections: dict[JobKind, QueueSelection] = {}
        self._shutdown_event = asyncio.Event()

    def _set_state(self, new: WorkerState) -> None:
        if not self.state.can_move_to(new):
            raise ValueError(f"worker state cannot move from {self.state.value} to {new.value}")
        logger.info("worker_state", state_from=self.state.value, state_to=new.value)
        self.state = new

    def queue(self, kind: JobKind) -> JobQueue:
        return self.queues[kind]

    async def start(self) -> None:
        errors = dict(self._load_errors)
        queues, selections, build_errors = await build_queues(
            self._processors,
            guard=self.guard,
            settings=self.settings,
            redis_client=self._redis_client,
        )
        errors.update(build_errors)

        kinds = list(queues.keys())
        results = await asyncio.gather(*(queues[k].start() for k in kinds), return_exceptions=True)
        for k, res in zip(kinds, results):
            if isinstance(res, BaseException):
                errors[QUEUE_NAMES[k]] = f"{type(res).__name__}: {res}"
                logger.error("queue_start_failed", queue=QUEUE_NAMES[k], error=str(res))
                with suppress(Exception):
                    await queues[k].stop()
                continue
            self.queues[k] = queues[k]
            self.selections[k] = selections[k]

        if not self.queues:
            raise StartupFailure(errors)
        self._set_state(WorkerState.running)
        logger.info(
            "worker_started",
            queues={sel.queue: sel.mode for sel in self.selections.values()},
            failed=sorted(errors.keys()),
        )

    def request_shutdown(self, signame: str = "") -> None:
        if signame:
            logger.info("worker_signal", signal=signame)
        self._shutdown_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # No add_signal_handler (Windows); plain handler hops back onto the loop.
                signal.signal(
                    sig,
                    lambda signum, _frame: loop.call_soon_threadsafe(
                        self.request_shutdown, signal.Signals(signum).name
                    ),
                )

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """
        Best-effort: stop every queue within the shutdown bound. In-flight jobs
        are cancelled, not drained; undrained fallback jobs are lost.
        """
        if self.state is WorkerState.stopped:
            return
        if self.state is WorkerState.running:
            self._set_state(WorkerState.draining)
        queues = list(self.queues.values())
        try:
            await asyncio.wait_for(
                asyncio.gather(*(q.stop() for q in queues), return_exceptions=True),
                timeout=self.config.shutdown_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("worker_stop_timeout", timeout_s=float(self.config.shutdown_timeout_s))
        self._set_state(WorkerState.stopped)

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "queues": {q.name: q.status() for q in self.queues.values()},
        }


def load_worker_processors(s: Settings) -> tuple[dict[JobKind, Processor], dict[str, str]]:
    """
    Load one processor per configured kind. A bad path disables that queue only.
    """
    processors: dict[JobKind, Processor] = {}
    errors: dict[str, str] = {}
    for k in s.worker_queue_list():
        kind = JobKind(k)
        try:
            processors[kind] = load_processor(processor_path(s, kind))
        except ConfigError as ex:
            errors[QUEUE_NAMES[kind]] = str(ex)
            logger.error("processor_load_failed", queue=QUEUE_NAMES[kind], error=str(ex))
    return processors, errors


async def run_worker(s: Settings, *, redis_client: Any = None) -> int:
    cfg = WorkerConfig.from_settings(s)
    guard = IdempotencyGuard(s.idempotency_db(), claim_ttl_sec=int(s.idempotency_claim_ttl_sec))
    guard.purge(older_than_sec=int(s.idempotency_ttl_sec))
    processors, load_errors = load_worker_processors(s)

    worker = Worker(
        processors=processors,
        guard=guard,
        settings=s,
        redis_client=redis_client,
        load_errors=load_errors,
    )
    worker.install_signal_handlers()
    try:
        await worker.start()
    except StartupFailure as ex:
        logger.error("worker_startup_failed", error=str(ex))
        await worker.stop()
        return 1

    if cfg.metrics_port:
        try:
            metrics.serve(cfg.metrics_port)
            logger.info("metrics_listening", port=int(cfg.metrics_port))
        except OSError as ex:
            logger.warning("metrics_listen_failed", port=int(cfg.metrics_port), error=str(ex))

    try:
        await worker.wait_for_shutdown()
    finally:
        await worker.stop()
    logger.info("worker_shutdown_complete")
    return 0


def run(settings: Settings | None = None) -> int:
    try:
        s = settings or get_settings()
    except ConfigError as ex:
        logger.error("worker_config_invalid", error=str(ex))
        return 1
    logger.info("worker_boot", queues=",".join(s.worker_queue_list()), redis=bool(s.use_redis_queue))
    return asyncio.run(run_worker(s))


def main() -> NoReturn:
    sys.exit(run())


if __name__ == "__main__":
    main()
