import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter

from .errors import ConfigurationError, DuplicateJobError
from .log import get_logger
from .models import RecurringSchedule
from .store import JobStore
from .utils import wall_clock

log = get_logger("jobqueue.scheduler")


def validate_cron(expression: str) -> str:
    expression = (expression or "").strip()
    if not expression or not croniter.is_valid(expression):
        raise ConfigurationError(f"Invalid cron expression: {expression!r}")
    return expression


def next_fire_after(expression: str, ts: float) -> float:
    """First cron tick strictly after ``ts`` (UTC), as epoch seconds."""
    base = datetime.fromtimestamp(ts, tz=timezone.utc)
    return croniter(expression, base).get_next(datetime).timestamp()


def schedule_id(queue_name: str, job_name: str, cron: str) -> str:
    return f"{queue_name}:{job_name}:{cron}"


class Scheduler:
    """
    Fires recurring schedules on a fixed tick.

    ``next_run_at`` lives in the store. A tick fires a schedule once when the
    clock has passed it and moves it to the first tick after *now*, so missed
    ticks while the process was down collapse into a single run.
    """

    def __init__(
        self,
        store: JobStore,
        spawn: Callable[[RecurringSchedule, float], bool],
        *,
        tick_s: float = 5.0,
        clock: Callable[[], float] = wall_clock,
    ):
        self.store = store
        self._spawn = spawn
        self.tick_s = tick_s
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add(self, queue_name: str, job_name: str, cron: str,
            payload: Optional[Dict[str, Any]] = None,
            options: Optional[Dict[str, Any]] = None) -> RecurringSchedule:
        cron = validate_cron(cron)
        schedule = RecurringSchedule(
            id=schedule_id(queue_name, job_name, cron),
            queue_name=queue_name,
            job_name=job_name,
            cron=cron,
            next_run_at=next_fire_after(cron, self._clock()),
            payload=dict(payload or {}),
            options=dict(options or {}),
        )
        saved = self.store.upsert_schedule(schedule)
        log.info("recurring_job_added", schedule_id=saved.id, cron=cron, next_run_at=saved.next_run_at)
        return saved

    def remove(self, sched_id: str) -> bool:
        return self.store.delete_schedule(sched_id)

    def schedules(self, queue_name: Optional[str] = None) -> List[RecurringSchedule]:
        return self.store.list_schedules(queue_name)

    def tick(self) -> int:
        """Fire every due schedule once. Returns the number of jobs spawned."""
        now = self._clock()
        fired = 0
        for schedule in self.store.list_schedules():
            if schedule.next_run_at > now:
                continue
            try:
                if self._spawn(schedule, next_fire_after(schedule.cron, now)):
                    fired += 1
                    log.debug("recurring_job_fired", schedule_id=schedule.id)
            except DuplicateJobError:
                log.warning("recurring_job_duplicate", schedule_id=schedule.id)
            except Exception:
                log.exception("recurring_job_error", schedule_id=schedule.id)
        return fired

    # ---------- Thread ----------
    def start(self):
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="jobqueue-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                log.exception("scheduler_tick_error")
            self._stop.wait(self.tick_s)
        self.store.release_thread()
