import threading
import time
import uuid
from dataclasses import asdict, is_dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import EngineSettings, queue_options_for
from .errors import ConfigurationError, ManagerClosedError, QueueNotFoundError
from .log import get_logger
from .models import (
    COMPLETED, DELAYED, FAILED, JOB_STATES, STALLED, WAITING,
    Handler, Job, JobOptions, QueueOptions, RecurringSchedule,
)
from .observer import JobObserver, LoggingObserver, ObserverSet
from .ratelimit import RateLimiter
from .retry import merge_options
from .scheduler import Scheduler
from .store import JobStore
from .utils import wall_clock
from .worker import WorkerPool

log = get_logger("jobqueue.manager")

# How long shutdown waits for slots to let go once their jobs were abandoned.
ABANDON_JOIN_S = 2.0


class QueueManager:
    """
    Owns every queue, its worker pool, the recurring scheduler and the observers.

    Build one per process in the composition root and pass it to whatever
    needs to enqueue work::

        manager = QueueManager(SqliteJobStore("jobs.db"))
        manager.register_processor("email", email_processor)
        manager.initialize()
        manager.add_job("email", "send-welcome-email", {"user_id": 7})
        ...
        manager.shutdown()
    """

    def __init__(
        self,
        store: JobStore,
        *,
        observers: Optional[Iterable[JobObserver]] = None,
        settings: Optional[EngineSettings] = None,
        limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = wall_clock,
        queue_defaults: Callable[[str], QueueOptions] = queue_options_for,
    ):
        self.store = store
        self.settings = settings or EngineSettings.from_config(store.get_config())
        self.observers = ObserverSet([LoggingObserver()] if observers is None else observers)
        self.limiter = limiter or RateLimiter(clock=clock)
        self._clock = clock
        self._queue_defaults = queue_defaults
        self._processors: Dict[str, Handler] = {}
        self._queue_options: Dict[str, QueueOptions] = {}
        self._pools: Dict[str, WorkerPool] = {}
        self.scheduler = Scheduler(store, self._spawn_recurring, tick_s=self.settings.scheduler_tick_s, clock=clock)
        self._lock = threading.RLock()
        self._initialized = False
        self._closing = False

    # ---------- Setup ----------
    def register_processor(self, queue_name: str, handler: Handler, options: Optional[QueueOptions] = None):
        if not queue_name or not str(queue_name).strip():
            raise ConfigurationError("Queue name cannot be empty.")
        if not callable(handler):
            raise ConfigurationError(f"Processor for {queue_name} is not callable")
        with self._lock:
            if queue_name in self._processors:
                raise ConfigurationError(f"A processor is already registered for queue: {queue_name}")
            if self._initialized:
                raise ConfigurationError(f"Cannot register {queue_name} after initialize()")
            if options is not None and options.name != queue_name:
                raise ConfigurationError(f"Options are for {options.name}, not {queue_name}")
            self._processors[queue_name] = handler
            self._queue_options[queue_name] = options or self._queue_defaults(queue_name)
        log.debug("processor_registered", queue=queue_name)

    def initialize(self, start_workers: bool = True):
        """Create a pool per registered queue and start it. A second call only warns."""
        with self._lock:
            if self._closing:
                raise ManagerClosedError("Queue manager has been shut down")
            if self._initialized:
                log.warning("queue_manager_already_initialized")
                return
            for name, handler in self._processors.items():
                opts = self._queue_options[name]
                self.limiter.configure(name, opts.rate_limit)
                pool = WorkerPool(
                    opts, handler, self.store,
                    observers=self.observers, limiter=self.limiter,
                    settings=self.settings, clock=self._clock,
                )
                self._pools[name] = pool
            if start_workers:
                for pool in self._pools.values():
                    pool.start()
                self.scheduler.start()
            self._initialized = True
        log.info("queue_manager_initialized", queues=sorted(self._pools), workers_started=start_workers)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def queue_names(self) -> List[str]:
        return sorted(self._pools)

    def get_pool(self, queue_name: str) -> WorkerPool:
        pool = self._pools.get(queue_name)
        if pool is None:
            raise QueueNotFoundError(queue_name)
        return pool

    # ---------- Producers ----------
    def _build_job(self, queue_name: str, job_name: str, payload: Optional[Dict[str, Any]],
                   opts: JobOptions) -> Job:
        now = self._clock()
        delay_s = opts.delay_ms / 1000.0
        return Job(
            id=opts.job_id or uuid.uuid4().hex,
            queue_name=queue_name,
            name=job_name,
            payload=dict(payload or {}),
            state=DELAYED if delay_s > 0 else WAITING,
            priority=opts.priority,
            attempts_limit=opts.attempts,
            backoff=opts.backoff,
            timeout_ms=opts.timeout_ms,
            created_at=now,
            scheduled_at=now + delay_s,
        )

    def add_job(self, queue_name: str, job_name: str, payload: Optional[Dict[str, Any]] = None,
                options: Optional[Dict[str, Any]] = None) -> str:
        if self._closing:
            raise ManagerClosedError("Queue manager is shutting down; no new jobs accepted")
        if not job_name or not str(job_name).strip():
            raise ConfigurationError("Job name cannot be empty.")
        pool = self.get_pool(queue_name)
        opts = merge_options(pool.queue.default_job_options, options)
        job = self._build_job(queue_name, job_name, payload, opts)
        self.store.enqueue(job, complete_retention=opts.remove_on_complete, fail_retention=opts.remove_on_fail)
        log.debug("job_added", queue=queue_name, job_id=job.id, job_name=job_name, state=job.state)
        if job.state == WAITING:
            self.observers.emit("waiting", job)
            pool.notify()
        return job.id

    def add_recurring(self, queue_name: str, job_name: str, payload: Optional[Dict[str, Any]],
                      cron_expression: str, options: Optional[Dict[str, Any]] = None) -> str:
        pool = self.get_pool(queue_name)
        # a fixed job id would collide on the second firing
        options = {k: v for k, v in (options or {}).items() if k not in ("job_id", "delay_ms")}
        merge_options(pool.queue.default_job_options, options)
        # stored as JSON; the option dataclasses go in as plain dicts and are coerced back on firing
        options = {k: asdict(v) if is_dataclass(v) else v for k, v in options.items()}
        return self.scheduler.add(queue_name, job_name, cron_expression, payload, options).id

    def remove_recurring(self, schedule_id: str) -> bool:
        return self.scheduler.remove(schedule_id)

    def list_recurring(self, queue_name: Optional[str] = None) -> List[RecurringSchedule]:
        return self.scheduler.schedules(queue_name)

    def _spawn_recurring(self, schedule: RecurringSchedule, next_run_at: float) -> bool:
        pool = self._pools.get(schedule.queue_name)
        if pool is None or self._closing:
            return False
        opts = merge_options(pool.queue.default_job_options, schedule.options)
        job = self._build_job(schedule.queue_name, schedule.job_name, schedule.payload, opts)
        fired = self.store.fire_schedule(
            schedule, job, next_run_at=next_run_at,
            complete_retention=opts.remove_on_complete, fail_retention=opts.remove_on_fail,
        )
        if fired:
            self.observers.emit("waiting", job)
            pool.notify()
        return fired

    # ---------- Admin ----------
    def get_queue_stats(self, queue_name: str) -> Dict[str, Any]:
        pool = self.get_pool(queue_name)
        counts = self.store.counts(queue_name)
        stats = {
            "name": queue_name,
            "waiting": counts[WAITING],
            "active": counts["active"],
            "completed": counts[COMPLETED],
            "failed": counts[FAILED],
            "delayed": counts[DELAYED],
            "stalled": counts[STALLED],
            "paused": pool.paused,
        }
        stats["total"] = sum(counts.values())
        return stats

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.get_queue_stats(name) for name in sorted(self._pools)}

    def health_check(self) -> Dict[str, Any]:
        try:
            stats = self.get_all_stats()
        except Exception as e:
            log.exception("health_check_error")
            return {"healthy": False, "issues": [f"stats unavailable: {e}"], "stats": {}}
        issues = []
        for name, stat in stats.items():
            if stat["failed"] > self.settings.health_max_failed:
                issues.append(f"{name}: {stat['failed']} failed jobs")
            if stat["waiting"] > self.settings.health_max_waiting:
                issues.append(f"{name}: {stat['waiting']} waiting jobs")
        return {"healthy": not issues, "issues": issues, "stats": stats}

    def pause_queue(self, queue_name: str):
        self.get_pool(queue_name)
        self.store.set_paused(queue_name, True)
        log.info("queue_paused", queue=queue_name)

    def resume_queue(self, queue_name: str):
        pool = self.get_pool(queue_name)
        self.store.set_paused(queue_name, False)
        pool.notify()
        log.info("queue_resumed", queue=queue_name)

    def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        self.get_pool(queue_name)
        job = self.store.get(job_id)
        if job is None or job.queue_name != queue_name:
            return None
        return job

    def get_jobs(self, queue_name: str, state: str = WAITING, start: int = 0, end: int = 10) -> List[Job]:
        self.get_pool(queue_name)
        if state not in JOB_STATES:
            raise ValueError(f"Unknown state: {state}")
        return self.store.list_by_state(queue_name, state, start, end)

    def retry_job(self, queue_name: str, job_id: str) -> bool:
        if self.get_job(queue_name, job_id) is None:
            return False
        if not self.store.retry_failed(job_id, now=self._clock()):
            return False
        log.info("job_retried", queue=queue_name, job_id=job_id)
        job = self.store.get(job_id)
        if job is not None:
            self.observers.emit("waiting", job)
        self.get_pool(queue_name).notify()
        return True

    def retry_all_failed(self, queue_name: str, limit: int = 100) -> Dict[str, int]:
        failed = self.get_jobs(queue_name, FAILED, 0, max(0, int(limit) - 1))
        retried = sum(1 for job in failed if self.retry_job(queue_name, job.id))
        log.info("failed_jobs_retried", queue=queue_name, total=len(failed), retried=retried)
        return {"total": len(failed), "retried": retried, "failed": len(failed) - retried}

    def remove_job(self, queue_name: str, job_id: str) -> bool:
        if self.get_job(queue_name, job_id) is None:
            return False
        return self.store.remove(job_id)

    def clean_queue(self, queue_name: str, grace_ms: int = 86_400_000, state: str = COMPLETED,
                    limit: int = 1000) -> int:
        self.get_pool(queue_name)
        removed = self.store.clean(queue_name, state, older_than=self._clock() - grace_ms / 1000.0, limit=limit)
        log.info("queue_cleaned", queue=queue_name, state=state, removed=removed)
        return removed

    # ---------- Shutdown ----------
    def shutdown(self, grace_s: Optional[float] = None):
        """
        Stop taking jobs, let running handlers finish for up to ``grace_s``
        seconds, then requeue whatever is still running. Waiting jobs stay in
        the store for the next start. Teardown is best effort: a pool that
        fails to close is logged and the rest still close.
        """
        with self._lock:
            if self._closing:
                return
            self._closing = True
        grace = self.settings.shutdown_grace_s if grace_s is None else float(grace_s)
        log.info("queue_manager_shutting_down", grace_s=grace)

        try:
            self.scheduler.stop(timeout=grace)
        except Exception:
            log.exception("scheduler_stop_error")

        for name, pool in self._pools.items():
            try:
                pool.stop()
            except Exception:
                log.exception("worker_pool_stop_error", queue=name)

        deadline = time.monotonic() + grace
        lingering = []
        for name, pool in self._pools.items():
            try:
                if not pool.join(max(0.0, deadline - time.monotonic())):
                    lingering.append((name, pool))
            except Exception:
                log.exception("worker_pool_join_error", queue=name)

        for name, pool in lingering:
            try:
                log.warning("worker_pool_grace_expired", queue=name, active=pool.active_count)
                pool.abandon()
                if not pool.join(ABANDON_JOIN_S):
                    log.error("worker_pool_did_not_stop", queue=name)
            except Exception:
                log.exception("worker_pool_abandon_error", queue=name)

        self._initialized = False
        log.info("queue_manager_shutdown_complete")
