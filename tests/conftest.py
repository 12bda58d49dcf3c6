from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator

import pytest

# Logging is configured once, at first import of the package; keep its file out of the repo.
os.environ.setdefault("BOOKING_JOBS_LOG_DIR", tempfile.mkdtemp(prefix="bk_test_logs_"))

from booking_jobs.config import get_settings  # noqa: E402

_QUEUE_ENV = (
    "USE_REDIS_QUEUE",
    "USE_BULL",
    "REDIS_URL",
    "QUEUE_MODE",
    "WORKER_QUEUES",
    "WEBHOOK_PROCESSOR",
    "BOOKING_PROCESSOR",
    "IDEMPOTENCY_DB_PATH",
    "METRICS_PORT",
)


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Iterator[None]:
    root = tmp_path_factory.mktemp("bk_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)
    (root / "_state").mkdir(parents=True, exist_ok=True)

    for k in _QUEUE_ENV:
        monkeypatch.delenv(k, raising=False)
    monkeypatch.chdir(root)
    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("BOOKING_JOBS_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("BOOKING_JOBS_STATE_DIR", str(root / "_state"))
    monkeypatch.setenv("REDIS_POLL_INTERVAL_MS", "10")
    monkeypatch.setenv("WORKER_SHUTDOWN_TIMEOUT_SEC", "2")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
