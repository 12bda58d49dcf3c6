"""
Background job processing for the booking platform.

Two job kinds (PMS webhook ingestion, booking creation) run on either a
Redis-backed durable queue or an in-process fallback queue behind one
interface; `booking_jobs.worker.main` runs them as a standalone process.
"""

__version__ = "0.1.0"
