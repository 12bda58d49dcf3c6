from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from booking_jobs.jobs.models import Receipt

# Opaque "process this payload" callable supplied by the application.
# Sync or async; returning False or raising counts as failure.
Processor = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True, slots=True)
class QueueStatus:
    queue: str
    mode: str  # "redis" | "fallback"
    redis_configured: bool
    redis_ok: bool
    detail: str
    counts: dict[str, int] = field(default_factory=dict)


class JobQueue(Protocol):
    """
    Single canonical queue interface, implemented by the Redis backend and the
    in-process fallback backend.

    - enqueue() accepts work and never waits for it to be processed.
    - start() is idempotent; one consumer per queue name.
    - stop() is best-effort and does not wait for in-flight jobs.
    """

    name: str
    mode: str

    def status(self) -> QueueStatus: ...

    async def enqueue(
        self, payload: dict[str, Any], *, idempotency_key: str | None = None
    ) -> Receipt: ...

    async def start(self) -> None: ...
    async def stop(self) -> None: ...
