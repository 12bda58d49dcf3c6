from __future__ import annotations


class QueueError(Exception):
    """Base exception for job queue operations."""


class BackendUnavailable(QueueError):
    """
    The active backend cannot accept the job.

    The only error enqueue() callers ever see; the job was NOT stored.
    """

    def __init__(self, queue: str, detail: str) -> None:
        super().__init__(f"queue backend unavailable for {queue}: {detail}")
        self.queue = queue
        self.detail = detail


class InvalidPayload(QueueError, ValueError):
    """
    The payload does not survive a JSON round trip unchanged (dates, Decimals,
    tuples, non-string keys). Raised by enqueue() on every backend.
    """


class ProcessorFailure(QueueError):
    """A job processor raised, returned False, or timed out."""

    def __init__(self, *, job_id: str, queue: str, reason: str) -> None:
        super().__init__(f"processor failed for job {job_id} on {queue}: {reason}")
        self.job_id = job_id
        self.queue = queue
        self.reason = reason


class StartupFailure(QueueError):
    """No queue could be started; the worker has nothing to do."""

    def __init__(self, errors: dict[str, str]) -> None:
        detail = "; ".join(f"{k}: {v}" for k, v in sorted(errors.items())) or "no queues configured"
        super().__init__(f"worker could not start any queue ({detail})")
        self.errors = dict(errors)
