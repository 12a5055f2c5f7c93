from typing import Optional


class JobQueueError(Exception):
    """Base class for every error raised by jobqueue."""


class ConfigurationError(JobQueueError):
    pass


class QueueNotFoundError(JobQueueError):
    def __init__(self, queue_name: str):
        super().__init__(f"Queue not found: {queue_name}")
        self.queue_name = queue_name


class DuplicateJobError(JobQueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' already exists.")
        self.job_id = job_id


class ManagerClosedError(JobQueueError):
    pass


class HandlerExecutionError(JobQueueError):
    """Wraps anything a handler raised, tagged with the attempt it happened on."""

    def __init__(self, message: str, attempt: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.attempt = attempt
        self.cause = cause


class UnknownJobError(HandlerExecutionError):
    def __init__(self, queue_name: str, job_name: str):
        super().__init__(f"Unknown {queue_name} job type: {job_name}")
        self.queue_name = queue_name
        self.job_name = job_name


class JobTimeoutError(HandlerExecutionError):
    def __init__(self, timeout_ms: int, attempt: int = 0):
        super().__init__(f"Job timed out after {timeout_ms}ms", attempt=attempt)
        self.timeout_ms = timeout_ms


class RateLimitExceeded(JobQueueError):
    def __init__(self, queue_name: str, retry_after_s: float):
        super().__init__(f"Rate limit reached for {queue_name}; retry in {retry_after_s:.3f}s")
        self.queue_name = queue_name
        self.retry_after_s = retry_after_s


class StalledJobError(JobQueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} stalled more than once")
        self.job_id = job_id
