from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional

# Job States
WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"
STALLED = "stalled"

JOB_STATES = (WAITING, ACTIVE, DELAYED, COMPLETED, FAILED, STALLED)
PENDING_STATES = (WAITING, DELAYED)
TERMINAL_STATES = (COMPLETED, FAILED)

# Backoff types
FIXED = "fixed"
EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class Backoff:
    type: str = EXPONENTIAL
    base_delay_ms: int = 2000


@dataclass(frozen=True)
class Retention:
    """Bounds for the completed/failed history. ``None`` disables a bound."""
    age_s: Optional[float] = None
    count: Optional[int] = None


@dataclass(frozen=True)
class RateLimit:
    max: int
    duration_ms: int


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    priority: int = 0
    delay_ms: int = 0
    timeout_ms: Optional[int] = None
    job_id: Optional[str] = None
    remove_on_complete: Retention = field(default_factory=lambda: Retention(age_s=24 * 3600, count=1000))
    remove_on_fail: Retention = field(default_factory=lambda: Retention(age_s=7 * 24 * 3600))

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "JobOptions":
        if not overrides:
            return self
        return replace(self, **overrides)


@dataclass(frozen=True)
class QueueOptions:
    name: str
    concurrency: int = 1
    rate_limit: Optional[RateLimit] = None
    default_job_options: JobOptions = field(default_factory=JobOptions)


@dataclass
class Job:
    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    state: str = WAITING
    priority: int = 0
    attempts_made: int = 0
    attempts_limit: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    timeout_ms: Optional[int] = None
    progress: int = 0
    seq: int = 0
    created_at: float = 0.0
    scheduled_at: float = 0.0
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None
    result: Any = None
    failure_reason: Optional[str] = None
    lock_token: Optional[str] = None
    lock_expires_at: Optional[float] = None
    stalled_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue_name,
            "name": self.name,
            "payload": self.payload,
            "state": self.state,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "attempts_limit": self.attempts_limit,
            "progress": self.progress,
            "created_at": self.created_at,
            "scheduled_at": self.scheduled_at,
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
            "result": self.result,
            "failure_reason": self.failure_reason,
        }


@dataclass
class RecurringSchedule:
    id: str
    queue_name: str
    job_name: str
    cron: str
    next_run_at: float
    payload: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    last_run_at: Optional[float] = None


@dataclass(frozen=True)
class JobResult:
    """Outcome of a handler call. Handlers may return one instead of raising."""
    success: bool
    value: Any = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, value: Any = None) -> "JobResult":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, reason: str) -> "JobResult":
        return cls(success=False, reason=str(reason))


class JobContext:
    """What a handler sees of the job it is processing."""

    def __init__(self, job: Job, on_progress: Optional[Callable[[Job, int], None]] = None):
        self._job = job
        self._on_progress = on_progress

    @property
    def id(self) -> str:
        return self._job.id

    @property
    def name(self) -> str:
        return self._job.name

    @property
    def queue_name(self) -> str:
        return self._job.queue_name

    @property
    def payload(self) -> Dict[str, Any]:
        return self._job.payload

    @property
    def attempts_made(self) -> int:
        return self._job.attempts_made

    @property
    def attempts_limit(self) -> int:
        return self._job.attempts_limit

    @property
    def progress(self) -> int:
        return self._job.progress

    def update_progress(self, pct: int):
        pct = max(0, min(100, int(pct)))
        self._job.progress = pct
        if self._on_progress is not None:
            self._on_progress(self._job, pct)


Handler = Callable[[JobContext], Any]
