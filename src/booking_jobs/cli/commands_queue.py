from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import click

from booking_jobs.config import ConfigError, get_settings
from booking_jobs.jobs.idempotency import IdempotencyGuard
from booking_jobs.jobs.models import QUEUE_NAMES, JobKind, Receipt
from booking_jobs.processors import load_processor, processor_path
from booking_jobs.queue.errors import BackendUnavailable, InvalidPayload
from booking_jobs.queue.interfaces import JobQueue
from booking_jobs.queue.manager import QueueSelection, select_backend
from booking_jobs.queue.producers import enqueue_booking, enqueue_webhook
from booking_jobs.queue.redis_queue import RedisQueue

# Used when --payload is omitted (same shape the API sends).
DEMO_BOOKING: dict[str, Any] = {
    "userId": 1,
    "weekId": 101,
    "checkIn": "2026-03-01",
    "checkOut": "2026-03-08",
    "metadata": {"source": "manual-test", "notes": "enqueue-booking demo"},
}


def resolve_kind(value: str) -> JobKind:
    v = str(value or "").strip().lower()
    for kind, qname in QUEUE_NAMES.items():
        if v in {kind.value, qname}:
            return kind
    choices = ", ".join([k.value for k in JobKind] + list(QUEUE_NAMES.values()))
    raise click.BadParameter(f"unknown queue {value!r} (expected one of {choices})", param_hint="QUEUE")


def _parse_payload(raw: str | None) -> dict[str, Any]:
    if raw is None:
        return json.loads(json.dumps(DEMO_BOOKING))
    try:
        data = json.loads(raw)
    except ValueError as ex:
        raise click.BadParameter(f"not valid JSON: {ex}", param_hint="--payload") from ex
    if not isinstance(data, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--payload")
    return data


async def _open_queue(kind: JobKind) -> tuple[JobQueue, QueueSelection]:
    s = get_settings()
    guard = IdempotencyGuard(s.idempotency_db(), claim_ttl_sec=int(s.idempotency_claim_ttl_sec))
    processor = load_processor(processor_path(s, kind))
    # Producer-only: a Redis consumer must not start inside a one-shot CLI call.
    return await select_backend(kind, processor, guard=guard, settings=s, consume=False)


async def _submit(
    kind: JobKind, submit: Callable[[JobQueue], Awaitable[Receipt]], *, wait_s: float
) -> tuple[Receipt, QueueSelection]:
    q, sel = await _open_queue(kind)
    try:
        receipt = await submit(q)
        if sel.mode == "fallback":
            # Nothing is persisted in fallback mode; drain here or the job is lost.
            await q.start()
            await asyncio.sleep(max(0.0, float(wait_s)))
    finally:
        await q.stop()
    return receipt, sel


def _run_submit(kind: JobKind, submit: Callable[[JobQueue], Awaitable[Receipt]], wait_s: float) -> None:
    try:
        receipt, sel = asyncio.run(_submit(kind, submit, wait_s=wait_s))
    except ConfigError as ex:
        click.echo(f"Invalid configuration: {ex}", err=True)
        raise SystemExit(2) from ex
    except InvalidPayload as ex:
        raise click.BadParameter(str(ex), param_hint="--payload") from ex
    except BackendUnavailable as ex:
        raise click.ClickException(str(ex)) from ex
    click.echo(
        json.dumps(
            {
                "job_id": receipt.job_id,
                "queue": receipt.queue,
                "backend": receipt.backend,
                "idempotency_key": receipt.idempotency_key,
                "reason": sel.reason,
            },
            sort_keys=True,
        )
    )


@click.command(name="enqueue-booking")
@click.option("--payload", "payload_json", default=None, help="Booking payload as a JSON object.")
@click.option("--idempotency-key", default=None, help="Natural key for the booking (sets payload.idempotencyKey).")
@click.option(
    "--wait",
    "wait_s",
    type=float,
    default=0.5,
    show_default=True,
    help="Seconds to let the in-process queue drain before exiting (fallback mode only).",
)
def enqueue_booking_cmd(payload_json: str | None, idempotency_key: str | None, wait_s: float) -> None:
    """
    Enqueue one booking-creation job.
    """
    payload = _parse_payload(payload_json)
    if idempotency_key:
        payload["idempotencyKey"] = str(idempotency_key)
    _run_submit(JobKind.booking_creation, lambda q: enqueue_booking(q, payload), wait_s)


@click.command(name="enqueue-webhook")
@click.argument("webhook_id")
@click.option("--wait", "wait_s", type=float, default=0.5, show_default=True)
def enqueue_webhook_cmd(webhook_id: str, wait_s: float) -> None:
    """
    Enqueue ingestion of a stored PMS webhook record.
    """
    wid = str(webhook_id).strip()
    if not wid:
        raise click.BadParameter("must not be empty", param_hint="WEBHOOK_ID")
    value: Any = int(wid) if wid.isascii() and wid.isdigit() else wid
    _run_submit(JobKind.webhook, lambda q: enqueue_webhook(q, value), wait_s)


async def _dead_letters(kind: JobKind, *, limit: int, requeue: str | None) -> dict[str, Any]:
    q, sel = await _open_queue(kind)
    try:
        if not isinstance(q, RedisQueue):
            raise click.ClickException(f"dead letters are kept by the Redis backend only ({sel.reason})")
        if requeue:
            ok = await q.requeue_dead_letter(requeue)
            return {"queue": q.name, "requeued": requeue if ok else None}
        jobs = await q.dead_letters(limit=limit)
        return {
            "queue": q.name,
            "dead_letters": [
                {
                    "job_id": j.id,
                    "attempts": j.attempt_count,
                    "last_error": j.last_error,
                    "enqueued_at": j.enqueued_at,
                    "idempotency_key": j.idempotency_key,
                }
                for j in jobs
            ],
        }
    finally:
        await q.stop()


@click.command(name="dead-letters")
@click.argument("queue_name", metavar="QUEUE")
@click.option("--limit", type=click.IntRange(1, 1000), default=50, show_default=True)
@click.option("--requeue", "requeue_id", default=None, help="Move this dead job back to pending.")
def dead_letters_cmd(queue_name: str, limit: int, requeue_id: str | None) -> None:
    """
    List (or requeue) jobs that exhausted their retry budget.
    """
    kind = resolve_kind(queue_name)
    try:
        out = asyncio.run(_dead_letters(kind, limit=limit, requeue=requeue_id))
    except ConfigError as ex:
        click.echo(f"Invalid configuration: {ex}", err=True)
        raise SystemExit(2) from ex
    click.echo(json.dumps(out, indent=2, sort_keys=True))
    if requeue_id and not out.get("requeued"):
        raise SystemExit(1)


def add_commands(cli_group) -> None:
    cli_group.add_command(enqueue_booking_cmd)
    cli_group.add_command(enqueue_webhook_cmd)
    cli_group.add_command(dead_letters_cmd)


__all__ = ["add_commands", "dead_letters_cmd", "enqueue_booking_cmd", "enqueue_webhook_cmd", "resolve_kind"]
