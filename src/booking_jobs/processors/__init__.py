"""
Job processors.

The queue core never interprets payloads; it calls the processor configured for
each job kind (WEBHOOK_PROCESSOR / BOOKING_PROCESSOR as `module:attr`).
"""

from __future__ import annotations

from importlib import import_module

from booking_jobs.config import ConfigError, Settings
from booking_jobs.jobs.models import JobKind
from booking_jobs.queue.interfaces import Processor

from .builtin import create_booking, process_webhook


def processor_path(s: Settings, kind: JobKind) -> str:
    if kind is JobKind.webhook:
        return str(s.webhook_processor)
    return str(s.booking_processor)


def load_processor(path: str) -> Processor:
    mod_name, sep, attr = str(path or "").strip().partition(":")
    if not sep or not mod_name or not attr:
        raise ConfigError(f"processor path must look like 'module:attr', got {path!r}")
    try:
        mod = import_module(mod_name)
    except ImportError as ex:
        raise ConfigError(f"cannot import processor module {mod_name!r}: {ex}") from ex
    fn = mod
    for part in attr.split("."):
        fn = getattr(fn, part, None)
        if fn is None:
            raise ConfigError(f"processor {path!r} not found")
    if not callable(fn):
        raise ConfigError(f"processor {path!r} is not callable")
    return fn


__all__ = ["create_booking", "load_processor", "process_webhook", "processor_path"]
