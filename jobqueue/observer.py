import copy
import threading
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from .log import get_logger
from .models import Job

log = get_logger("jobqueue.events")


class JobObserver:
    """
    Receives job lifecycle events. Observers only look: they get a snapshot of
    the job and must not change it. Subclass and override what you need.
    """

    def on_waiting(self, job: Job): ...

    def on_active(self, job: Job): ...

    def on_progress(self, job: Job, progress: int): ...

    def on_completed(self, job: Job, result: Any): ...

    def on_retrying(self, job: Job, error: str, delay_ms: int): ...

    def on_failed(self, job: Job, error: str): ...

    def on_stalled(self, job: Job): ...


class LoggingObserver(JobObserver):
    def on_waiting(self, job: Job):
        log.debug("job_waiting", queue=job.queue_name, job_id=job.id, job_name=job.name)

    def on_active(self, job: Job):
        log.debug("job_active", queue=job.queue_name, job_id=job.id, job_name=job.name,
                  attempt=job.attempts_made)

    def on_progress(self, job: Job, progress: int):
        log.debug("job_progress", queue=job.queue_name, job_id=job.id, progress=progress)

    def on_completed(self, job: Job, result: Any):
        duration = None
        if job.finished_at is not None and job.processed_at is not None:
            duration = round(job.finished_at - job.processed_at, 3)
        log.info("job_completed", queue=job.queue_name, job_id=job.id, job_name=job.name,
                 duration_s=duration)

    def on_retrying(self, job: Job, error: str, delay_ms: int):
        log.warning("job_retry_scheduled", queue=job.queue_name, job_id=job.id, job_name=job.name,
                    attempt=job.attempts_made, attempts_limit=job.attempts_limit,
                    delay_ms=delay_ms, error=error)

    def on_failed(self, job: Job, error: str):
        log.error("job_failed", queue=job.queue_name, job_id=job.id, job_name=job.name,
                  attempt=job.attempts_made, attempts_limit=job.attempts_limit, error=error)

    def on_stalled(self, job: Job):
        log.warning("job_stalled", queue=job.queue_name, job_id=job.id, job_name=job.name)


class StatsObserver(JobObserver):
    """In-process counters per queue, for health pages and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._durations: Dict[str, List[float]] = defaultdict(list)

    def _bump(self, queue: str, event: str):
        with self._lock:
            self._counts[queue][event] += 1

    def on_waiting(self, job: Job):
        self._bump(job.queue_name, "waiting")

    def on_active(self, job: Job):
        self._bump(job.queue_name, "active")

    def on_progress(self, job: Job, progress: int):
        self._bump(job.queue_name, "progress")

    def on_completed(self, job: Job, result: Any):
        self._bump(job.queue_name, "completed")
        if job.finished_at is not None and job.processed_at is not None:
            with self._lock:
                samples = self._durations[job.queue_name]
                samples.append(job.finished_at - job.processed_at)
                del samples[:-1000]

    def on_retrying(self, job: Job, error: str, delay_ms: int):
        self._bump(job.queue_name, "retrying")

    def on_failed(self, job: Job, error: str):
        self._bump(job.queue_name, "failed")

    def on_stalled(self, job: Job):
        self._bump(job.queue_name, "stalled")

    def snapshot(self, queue: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            queues = [queue] if queue else list(self._counts)
            out = {}
            for name in queues:
                samples = self._durations.get(name) or []
                out[name] = dict(self._counts.get(name, {}))
                out[name]["avg_duration_s"] = (sum(samples) / len(samples)) if samples else None
            return out


class ObserverSet:
    """Fans one event out to every observer; an observer that raises is logged and skipped."""

    def __init__(self, observers: Iterable[JobObserver] = ()):
        self._observers = list(observers)

    def __iter__(self):
        return iter(self._observers)

    def emit(self, event: str, job: Job, *args):
        if not self._observers:
            return
        snapshot = copy.deepcopy(job)
        for observer in self._observers:
            handler = getattr(observer, f"on_{event}", None)
            if handler is None:
                continue
            try:
                handler(snapshot, *args)
            except Exception:
                log.exception("observer_error", observer=type(observer).__name__,
                              hook=event, job_id=job.id)
