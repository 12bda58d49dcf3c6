from __future__ import annotations

import copy
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from booking_jobs.queue.errors import InvalidPayload


class JobKind(str, Enum):
    webhook = "webhook"
    booking_creation = "booking_creation"


# Queue names are shared with the API producers; keep them stable.
QUEUE_NAMES: dict[JobKind, str] = {
    JobKind.webhook: "mews-webhooks",
    JobKind.booking_creation: "create-booking",
}


class WorkerState(str, Enum):
    starting = "starting"
    running = "running"
    draining = "draining"
    stopped = "stopped"

    def can_move_to(self, other: WorkerState) -> bool:
        order = list(WorkerState)
        return order.index(other) > order.index(self)


def now_utc() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def check_json_payload(payload: dict[str, Any]) -> None:
    """
    Both backends must hand the processor exactly what was enqueued, and the
    Redis one stores JSON. Reject anything JSON would change or cannot encode.
    """
    try:
        same = json.loads(json.dumps(payload, allow_nan=False)) == payload
    except (TypeError, ValueError) as ex:
        raise InvalidPayload(f"payload is not JSON-serializable: {ex}") from ex
    if not same:
        raise InvalidPayload("payload changes in a JSON round trip (tuples or non-string keys)")


@dataclass(slots=True)
class Job:
    kind: JobKind
    queue: str
    payload: dict[str, Any]
    idempotency_key: str | None = None
    id: str = field(default_factory=new_id)
    enqueued_at: str = field(default_factory=now_utc)
    attempt_count: int = 0
    last_error: str | None = None

    @classmethod
    def create(
        cls,
        *,
        kind: JobKind,
        queue: str,
        payload: dict[str, Any] | None,
        idempotency_key: str | None = None,
    ) -> Job:
        # Deep copy: the producer may keep mutating its dict after enqueue().
        body = copy.deepcopy(dict(payload or {}))
        check_json_payload(body)
        key = str(idempotency_key).strip() if idempotency_key is not None else ""
        return cls(kind=kind, queue=queue, payload=body, idempotency_key=key or None)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Job:
        dd = dict(d)
        dd.setdefault("idempotency_key", None)
        dd.setdefault("attempt_count", 0)
        dd.setdefault("last_error", None)
        dd["kind"] = JobKind(str(dd["kind"]))
        dd["attempt_count"] = int(dd.get("attempt_count") or 0)
        return cls(**dd)

    @classmethod
    def from_json(cls, raw: str | bytes) -> Job:
        return cls.from_dict(json.loads(raw))


@dataclass(frozen=True, slots=True)
class Receipt:
    """
    Returned by enqueue(): the job was accepted, not processed.
    """

    job_id: str
    queue: str
    backend: str  # "redis" | "fallback"
    idempotency_key: str | None = None
