from __future__ import annotations

from typing import Any

from booking_jobs.utils.log import logger


def process_webhook(payload: dict[str, Any]) -> bool:
    """
    Default webhook processor: acknowledges the stored webhook record.

    Deployments point WEBHOOK_PROCESSOR at the PMS reconciliation routine; this
    one only validates the job shape so a misrouted job fails loudly.
    """
    wid = payload.get("webhookId")
    if wid is None or str(wid).strip() == "":
        logger.warning("webhook_job_invalid", reason="missing webhookId")
        return False
    logger.info("webhook_job_received", webhook_id=str(wid))
    return True


def create_booking(payload: dict[str, Any]) -> dict[str, Any] | bool:
    """
    Default booking processor: normalizes the request and logs it.
    """
    reservations = payload.get("reservations") or payload.get("Reservations") or []
    first = reservations[0] if isinstance(reservations, list) and reservations else {}
    if not isinstance(first, dict):
        first = {}
    check_in = first.get("StartUtc") or payload.get("checkIn")
    check_out = first.get("EndUtc") or payload.get("checkOut")
    if not check_in and not payload.get("weekId"):
        logger.warning("booking_job_invalid", reason="no weekId or stay dates")
        return False
    booking = {
        "weekId": payload.get("weekId"),
        "userId": payload.get("userId"),
        "checkIn": check_in,
        "checkOut": check_out,
        "totalPrice": payload.get("totalPrice") or 0,
        "idempotencyKey": payload.get("idempotencyKey"),
    }
    logger.info(
        "booking_job_received",
        week_id=str(booking["weekId"] or ""),
        check_in=str(check_in or ""),
        check_out=str(check_out or ""),
    )
    return booking
