"""
Queue backends (Redis + in-process fallback).

This package provides a single canonical integration point used by:
- producers (API handlers, CLI) to enqueue webhook and booking jobs
- the worker process to consume them

Redis is optional; when it is not configured or not reachable the queue runs in-process.
"""
