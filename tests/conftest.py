import time

import pytest

from jobqueue.config import EngineSettings
from jobqueue.manager import QueueManager
from jobqueue.models import Job, JobOptions, QueueOptions, Retention, WAITING
from jobqueue.store import SqliteJobStore

# 2025-01-01T12:00:00Z
EPOCH = 1_735_732_800.0

FAST = EngineSettings(
    poll_interval_s=0.02,
    lock_timeout_s=5.0,
    stalled_interval_s=0.1,
    scheduler_tick_s=0.05,
    shutdown_grace_s=1.0,
)


class ManualClock:
    def __init__(self, start: float = EPOCH):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def queue_opts(name: str, concurrency: int = 1, rate_limit=None, **job_opts) -> QueueOptions:
    return QueueOptions(
        name=name,
        concurrency=concurrency,
        rate_limit=rate_limit,
        default_job_options=JobOptions(**job_opts),
    )


def make_job(job_id, queue="q", name="work", *, priority=0, at=EPOCH, attempts=3, state=WAITING, payload=None):
    return Job(
        id=job_id, queue_name=queue, name=name, payload=payload or {}, state=state,
        priority=priority, attempts_limit=attempts, created_at=at, scheduled_at=at,
    )


def put(store, job, complete=None, fail=None):
    return store.enqueue(job, complete_retention=complete or Retention(), fail_retention=fail or Retention())


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def db_file(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def store(db_file):
    s = SqliteJobStore(db_file)
    yield s
    s.close()


@pytest.fixture
def make_manager(store, clock):
    """Managers built here are shut down after the test; the store fixture outlives them."""
    managers = []

    def factory(*, clock=clock, settings=FAST, observers=(), store=store):
        manager = QueueManager(store, observers=list(observers), settings=settings, clock=clock)
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.shutdown(grace_s=0.5)


def wait_for(predicate, timeout=3.0, step=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step)
    return predicate()
