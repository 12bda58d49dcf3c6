from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from .public_config import PublicConfig
from .secret_config import SecretConfig

KNOWN_QUEUE_KINDS = ("webhook", "booking_creation")


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def worker_queue_list(self) -> list[str]:
        return self.public.worker_queue_list()

    def idempotency_db(self):
        return self.public.idempotency_db()


def _validate(s: Settings) -> None:
    mode = str(s.public.queue_mode or "auto").strip().lower()
    if mode not in {"auto", "fallback"}:
        raise ConfigError(f"QUEUE_MODE must be 'auto' or 'fallback', got {mode!r}")
    unknown = [q for q in s.public.worker_queue_list() if q not in KNOWN_QUEUE_KINDS]
    if unknown:
        raise ConfigError(
            "Unknown WORKER_QUEUES entries: "
            + ", ".join(sorted(set(unknown)))
            + f" (expected any of {', '.join(KNOWN_QUEUE_KINDS)})"
        )
    if int(s.public.redis_queue_max_attempts) < 1:
        raise ConfigError("REDIS_QUEUE_MAX_ATTEMPTS must be >= 1")


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        # stringify Paths for stable JSON output
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        sec[k] = "SET" if v is not None and str(v).strip() else "UNSET"

    return {"public": pub_s, "secrets": sec}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _validate(s)
    return s

