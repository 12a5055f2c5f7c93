from .errors import (
    ConfigurationError, DuplicateJobError, HandlerExecutionError, JobQueueError, JobTimeoutError,
    ManagerClosedError, QueueNotFoundError, RateLimitExceeded, StalledJobError, UnknownJobError,
)
from .manager import QueueManager
from .models import (
    ACTIVE, COMPLETED, DELAYED, FAILED, STALLED, WAITING,
    Backoff, Job, JobContext, JobOptions, JobResult, QueueOptions, RateLimit, RecurringSchedule, Retention,
)
from .observer import JobObserver, LoggingObserver, StatsObserver
from .ratelimit import RateLimiter
from .store import JobStore, SqliteJobStore

__version__ = "0.1.0"
