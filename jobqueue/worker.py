import threading
import time
from typing import Callable, Dict, List, Optional

from .config import EngineSettings
from .errors import HandlerExecutionError, JobTimeoutError, RateLimitExceeded, StalledJobError
from .log import get_logger
from .models import (
    ACTIVE, COMPLETED, DELAYED, FAILED, STALLED, WAITING,
    Handler, Job, JobContext, JobResult, QueueOptions, Retention,
)
from .observer import ObserverSet
from .ratelimit import RateLimiter
from .retry import backoff_delay_ms
from .store import JobStore
from .utils import wall_clock

log = get_logger("jobqueue.worker")

# A job may stall this many times before a stall costs it an attempt.
MAX_STALLED_COUNT = 1
# Upper bound on how long a slot waits between checks while a handler runs.
SUPERVISE_STEP_S = 0.05


class WorkerPool:
    """
    ``concurrency`` slot threads for one queue.

    Each slot promotes due delayed jobs, asks the rate limiter for a start,
    claims the next job (CAS in the store) and runs the handler in its own
    thread while renewing the job lock. A separate sweep thread requeues jobs
    whose lock expired.
    """

    def __init__(
        self,
        queue: QueueOptions,
        handler: Handler,
        store: JobStore,
        *,
        observers: Optional[ObserverSet] = None,
        limiter: Optional[RateLimiter] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], float] = wall_clock,
    ):
        self.queue = queue
        self.name = queue.name
        self.concurrency = max(1, int(queue.concurrency))
        self.handler = handler
        self.store = store
        self.observers = observers or ObserverSet()
        self.limiter = limiter or RateLimiter()
        self.settings = settings or EngineSettings()
        self._clock = clock

        self._stop = threading.Event()
        self._abandon = threading.Event()
        self._wake = threading.Event()
        # one unit per running handler thread, released only when that thread exits
        self._capacity = threading.BoundedSemaphore(self.concurrency)
        self._lock = threading.Lock()
        self._active: Dict[str, Job] = {}
        self._threads: List[threading.Thread] = []
        self._sweeper: Optional[threading.Thread] = None

    # ---------- Lifecycle ----------
    def start(self):
        if self._threads:
            return
        self._stop.clear()
        self._abandon.clear()
        for i in range(self.concurrency):
            t = threading.Thread(
                target=self._slot_loop, args=(f"{self.name}-worker-{i+1}",),
                name=f"{self.name}-worker-{i+1}", daemon=True,
            )
            t.start()
            self._threads.append(t)
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name=f"{self.name}-stalled-sweep", daemon=True
        )
        self._sweeper.start()
        log.info("worker_pool_started", queue=self.name, concurrency=self.concurrency)

    def stop(self):
        """Stop dequeuing. Jobs already running keep going."""
        self._stop.set()
        self._wake.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the slots to exit; True if they all did within ``timeout`` seconds."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for t in self._threads + ([self._sweeper] if self._sweeper else []):
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            t.join(remaining)
        return not self.is_alive()

    def abandon(self):
        """Give up on in-flight jobs: each is requeued to waiting and its slot released."""
        self._abandon.set()
        self._wake.set()

    def is_alive(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def notify(self):
        self._wake.set()

    @property
    def paused(self) -> bool:
        """Read from the store so a pause from any process reaches this pool."""
        return self.store.is_paused(self.name)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    # ---------- Loops ----------
    def _idle(self, timeout: float):
        self._wake.wait(timeout)
        self._wake.clear()

    def _slot_loop(self, worker_name: str):
        poll = self.settings.poll_interval_s
        while not self._stop.is_set():
            try:
                if self.paused:
                    self._idle(poll)
                    continue
                if not self._process_next(worker_name):
                    self._idle(poll)
            except RateLimitExceeded as e:
                # throttled: sleep until the window frees a start
                self._stop.wait(e.retry_after_s)
            except Exception:
                log.exception("worker_loop_error", queue=self.name, worker=worker_name)
                self._stop.wait(1.0)
        self.store.release_thread()
        log.info("worker_stopped", queue=self.name, worker=worker_name)

    def _sweep_loop(self):
        while not self._stop.is_set():
            try:
                self.check_stalled()
            except Exception:
                log.exception("stalled_sweep_error", queue=self.name)
            self._stop.wait(self.settings.stalled_interval_s)
        self.store.release_thread()

    # ---------- One job ----------
    def process_one(self, worker_name: str = "inline") -> bool:
        """Claim and run at most one job. Returns False when nothing was started."""
        try:
            return self._process_next(worker_name)
        except RateLimitExceeded:
            return False

    def _process_next(self, worker_name: str) -> bool:
        now = self._clock()
        for job_id in self.store.promote_delayed(self.name, now=now):
            promoted = self.store.get(job_id)
            if promoted is not None:
                self.observers.emit("waiting", promoted)

        # a timed-out handler still running holds its unit
        if not self._capacity.acquire(blocking=False):
            return False
        handed_off = False
        try:
            self.limiter.acquire_or_raise(self.name)
            job = self.store.dequeue_next(self.name, now=now, lock_timeout_s=self.settings.lock_timeout_s)
            if job is None:
                self.limiter.release(self.name)
                return False

            with self._lock:
                self._active[job.id] = job
            try:
                self.observers.emit("active", job)
                log.debug("job_claimed", queue=self.name, job_id=job.id, worker=worker_name,
                          attempt=job.attempts_made)
                handed_off = True
                outcome = self._execute(job)
                if outcome is not None:
                    self._settle(job, outcome)
            finally:
                with self._lock:
                    self._active.pop(job.id, None)
            return True
        finally:
            if not handed_off:
                self._capacity.release()

    def drain(self, max_jobs: int = 1000) -> int:
        """Run due jobs inline on the calling thread until none is left."""
        ran = 0
        while ran < max_jobs and self.process_one():
            ran += 1
        return ran

    def _on_progress(self, job: Job, pct: int):
        if self.store.set_progress(job.id, job.lock_token, pct):
            self.observers.emit("progress", job, pct)

    def _execute(self, job: Job) -> Optional[JobResult]:
        """Run the handler, renewing the lock while it works. None means the job was abandoned."""
        box = {}
        ctx = JobContext(job, on_progress=self._on_progress)

        def target():
            try:
                box["value"] = self.handler(ctx)
            except Exception as e:
                box["error"] = e
            finally:
                self.store.release_thread()
                self._capacity.release()

        runner = threading.Thread(target=target, name=f"{self.name}-job-{job.id[:8]}", daemon=True)
        started = time.monotonic()
        last_renewal = started
        heartbeat = max(SUPERVISE_STEP_S, self.settings.lock_timeout_s / 2.0)
        timeout_s = job.timeout_ms / 1000.0 if job.timeout_ms else None
        try:
            runner.start()
        except RuntimeError:
            self._capacity.release()
            raise

        while True:
            runner.join(SUPERVISE_STEP_S)
            if not runner.is_alive():
                break
            elapsed = time.monotonic() - started
            if timeout_s is not None and elapsed >= timeout_s:
                err = JobTimeoutError(job.timeout_ms, attempt=job.attempts_made)
                log.warning("job_timeout", queue=self.name, job_id=job.id, timeout_ms=job.timeout_ms)
                return JobResult.fail(str(err))
            if self._abandon.is_set():
                if self.store.requeue(job, stalled=False):
                    job.state = WAITING
                    log.warning("job_requeued_on_shutdown", queue=self.name, job_id=job.id)
                    self.observers.emit("waiting", job)
                return None
            if time.monotonic() - last_renewal >= heartbeat:
                last_renewal = time.monotonic()
                until = self._clock() + self.settings.lock_timeout_s
                if not self.store.renew_lock(job.id, job.lock_token, until):
                    log.warning("job_lock_lost", queue=self.name, job_id=job.id)

        if "error" in box:
            e = box["error"]
            err = e if isinstance(e, HandlerExecutionError) else HandlerExecutionError(
                f"{type(e).__name__}: {e}", attempt=job.attempts_made, cause=e
            )
            log.debug("handler_raised", queue=self.name, job_id=job.id, error=str(err))
            return JobResult.fail(str(err))
        value = box.get("value")
        if isinstance(value, JobResult):
            return value
        return JobResult.ok(value)

    def _settle(self, job: Job, outcome: JobResult):
        now = self._clock()
        if not outcome.success:
            self.record_failure(job, outcome.reason or "failed", now=now)
            return
        try:
            completed = self.store.complete(job, outcome.value, now=now)
        except (TypeError, ValueError) as e:
            self.record_failure(job, f"Result is not JSON-serializable: {e}", now=now)
            return
        if not completed:
            log.warning("job_lock_lost", queue=self.name, job_id=job.id, on="complete")
            return
        job.state, job.result, job.finished_at, job.progress = COMPLETED, outcome.value, now, 100
        self.observers.emit("completed", job, outcome.value)
        self._trim(job, COMPLETED, now)

    def record_failure(self, job: Job, reason: str, *, now: float) -> Optional[str]:
        """Book a failed attempt: back off to delayed while attempts remain, else failed."""
        retry_at = None
        delay_ms = 0
        if job.attempts_made < job.attempts_limit:
            delay_ms = backoff_delay_ms(job.backoff, job.attempts_made)
            retry_at = now + delay_ms / 1000.0
        state = self.store.fail_attempt(job, reason, now=now, retry_at=retry_at)
        if state is None:
            log.warning("job_lock_lost", queue=self.name, job_id=job.id, on="fail")
            return None
        job.state, job.failure_reason = state, reason
        if state == DELAYED:
            job.scheduled_at = retry_at
            self.observers.emit("retrying", job, reason, delay_ms)
        else:
            job.finished_at = now
            self.observers.emit("failed", job, reason)
            self._trim(job, FAILED, now)
        return state

    def _trim(self, job: Job, state: str, now: float):
        retention = self.store.retention_for(job.id)
        policy = retention.get("complete" if state == COMPLETED else "fail", Retention())
        if policy.age_s is None and policy.count is None:
            return
        removed = self.store.trim_history(self.name, state, policy, now=now)
        if removed:
            log.debug("history_trimmed", queue=self.name, state=state, removed=removed)

    # ---------- Stalled jobs ----------
    def check_stalled(self) -> int:
        """Recover active jobs whose lock expired. Returns how many were recovered."""
        now = self._clock()
        recovered = 0
        for job in self.store.find_stalled(self.name, now=now):
            with self._lock:
                if job.id in self._active:
                    continue
            if job.state == ACTIVE and job.stalled_count >= MAX_STALLED_COUNT:
                self.observers.emit("stalled", job)
                if self.record_failure(job, str(StalledJobError(job.id)), now=now):
                    recovered += 1
                continue
            # active -> stalled -> waiting; a job already in stalled was left there by a dead sweeper
            if job.state == ACTIVE:
                if not self.store.mark_stalled(job):
                    continue
                job.state, job.stalled_count, job.lock_token = STALLED, job.stalled_count + 1, None
                self.observers.emit("stalled", job)
            if self.store.requeue(job, stalled=True):
                recovered += 1
                job.state = WAITING
                self.observers.emit("waiting", job)
                self._wake.set()
        if recovered:
            log.warning("stalled_jobs_recovered", queue=self.name, count=recovered)
        return recovered
