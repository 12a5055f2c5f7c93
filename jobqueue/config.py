import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .models import Backoff, FIXED, JobOptions, QueueOptions, RateLimit

# Engine settings, persisted in the `config` table and editable via `jobqueue config set`.
DEFAULT_CONFIG = {
    "poll_interval_ms": "500",
    "lock_timeout_ms": "30000",
    "stalled_interval_ms": "15000",
    "scheduler_tick_ms": "5000",
    "shutdown_grace_ms": "10000",
    "health_max_failed": "100",
    "health_max_waiting": "1000",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

DB_ENV = "JOBQUEUE_DB"
DEFAULT_DB_FILE = "jobqueue.db"


def db_path() -> str:
    return os.environ.get(DB_ENV, DEFAULT_DB_FILE)


@dataclass(frozen=True)
class EngineSettings:
    poll_interval_s: float = 0.5
    lock_timeout_s: float = 30.0
    stalled_interval_s: float = 15.0
    scheduler_tick_s: float = 5.0
    shutdown_grace_s: float = 10.0
    health_max_failed: int = 100
    health_max_waiting: int = 1000

    @classmethod
    def from_config(cls, cfg: Mapping[str, str]) -> "EngineSettings":
        merged = dict(DEFAULT_CONFIG)
        merged.update({k: v for k, v in cfg.items() if k in ALLOWED_CONFIG_KEYS})
        try:
            return cls(
                poll_interval_s=int(merged["poll_interval_ms"]) / 1000.0,
                lock_timeout_s=int(merged["lock_timeout_ms"]) / 1000.0,
                stalled_interval_s=int(merged["stalled_interval_ms"]) / 1000.0,
                scheduler_tick_s=int(merged["scheduler_tick_ms"]) / 1000.0,
                shutdown_grace_s=int(merged["shutdown_grace_ms"]) / 1000.0,
                health_max_failed=int(merged["health_max_failed"]),
                health_max_waiting=int(merged["health_max_waiting"]),
            )
        except ValueError as e:
            raise ValueError(f"Invalid engine config value: {e}")


# ---------- Queue presets ----------
DEFAULT_JOB_OPTIONS = JobOptions()

QUEUE_JOB_OPTIONS: Dict[str, JobOptions] = {
    "email": JobOptions(attempts=5, priority=1, backoff=Backoff(base_delay_ms=5000)),
    "sync": JobOptions(attempts=3, priority=5, timeout_ms=60_000),
    "payment": JobOptions(attempts=5, priority=2, backoff=Backoff(type=FIXED, base_delay_ms=30_000)),
    "enrollment": JobOptions(attempts=4, priority=2),
    "notification": JobOptions(attempts=3, priority=3),
    "cleanup": JobOptions(attempts=2, priority=10),
}

QUEUE_CONCURRENCY = {
    "email": 5,
    "sync": 2,
    "payment": 3,
    "enrollment": 3,
    "notification": 5,
    "cleanup": 1,
}

RATE_LIMITS = {
    "email": RateLimit(max=50, duration_ms=60_000),
    "sync": RateLimit(max=10, duration_ms=60_000),
}


def concurrency_for(name: str, environ: Optional[Mapping[str, str]] = None) -> int:
    """`<NAME>_QUEUE_CONCURRENCY` wins over the preset; unknown queues get 1 slot."""
    environ = os.environ if environ is None else environ
    raw = environ.get(f"{name.upper()}_QUEUE_CONCURRENCY")
    if raw:
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(f"{name.upper()}_QUEUE_CONCURRENCY must be an integer.")
        if value > 0:
            return value
    return QUEUE_CONCURRENCY.get(name, 1)


def queue_options_for(name: str, environ: Optional[Mapping[str, str]] = None) -> QueueOptions:
    return QueueOptions(
        name=name,
        concurrency=concurrency_for(name, environ),
        rate_limit=RATE_LIMITS.get(name),
        default_job_options=QUEUE_JOB_OPTIONS.get(name, DEFAULT_JOB_OPTIONS),
    )
