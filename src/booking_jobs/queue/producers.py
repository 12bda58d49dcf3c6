from __future__ import annotations

from typing import Any

from booking_jobs.jobs.models import Receipt

from .interfaces import JobQueue


def webhook_key(webhook_id: Any) -> str:
    return f"webhook:{webhook_id}"


async def enqueue_webhook(queue: JobQueue, webhook_id: Any) -> Receipt:
    """
    Queue ingestion of a stored PMS webhook record. Keyed on the webhook id so a
    redelivered webhook is applied once.
    """
    wid = str(webhook_id if webhook_id is not None else "").strip()
    if not wid:
        raise ValueError("webhook_id is required")
    return await queue.enqueue({"webhookId": webhook_id}, idempotency_key=webhook_key(wid))


async def enqueue_booking(queue: JobQueue, payload: dict[str, Any]) -> Receipt:
    """
    Queue a booking-creation job. The caller's `idempotencyKey` (if any) is the
    natural key; the payload is stored as given.
    """
    if not isinstance(payload, dict):
        raise TypeError("booking payload must be a dict")
    key = payload.get("idempotencyKey")
    return await queue.enqueue(payload, idempotency_key=str(key) if key not in (None, "") else None)
