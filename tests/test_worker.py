import threading
import time

import pytest

from conftest import queue_opts, wait_for
from jobqueue.models import COMPLETED, DELAYED, FAILED, STALLED, WAITING, Backoff, JobContext, JobResult, RateLimit
from jobqueue.observer import JobObserver, StatsObserver


def always_fail(job):
    raise RuntimeError("smtp down")


def test_success_stores_result_and_progress(make_manager, store):
    stats = StatsObserver()
    manager = make_manager(observers=[stats])

    def handler(job):
        job.update_progress(40)
        return {"sent": job.payload["to"]}

    manager.register_processor("q", handler, queue_opts("q"))
    manager.initialize(start_workers=False)
    job_id = manager.add_job("q", "send", {"to": "a@example.com"})

    assert manager.get_pool("q").process_one()
    job = store.get(job_id)
    assert job.state == COMPLETED
    assert job.result == {"sent": "a@example.com"}
    assert job.progress == 100
    assert job.attempts_made == 1
    snap = stats.snapshot("q")["q"]
    assert snap["completed"] == 1
    assert snap["progress"] == 1


def test_retries_until_failed(make_manager, store, clock):
    stats = StatsObserver()
    manager = make_manager(observers=[stats])
    manager.register_processor("q", always_fail, queue_opts("q", attempts=3, backoff=Backoff(base_delay_ms=1000)))
    manager.initialize(start_workers=False)
    pool = manager.get_pool("q")
    job_id = manager.add_job("q", "send")

    assert pool.process_one()
    job = store.get(job_id)
    assert job.state == DELAYED
    assert job.scheduled_at == clock() + 1.0
    assert "smtp down" in job.failure_reason

    # not due yet
    assert not pool.process_one()
    clock.advance(1.0)
    assert pool.process_one()
    assert store.get(job_id).scheduled_at == clock() + 2.0

    clock.advance(2.0)
    assert pool.process_one()
    job = store.get(job_id)
    assert job.state == FAILED
    assert job.attempts_made == 3
    assert job.finished_at == clock()

    clock.advance(3600)
    assert not pool.process_one()
    assert store.get(job_id).attempts_made == 3
    snap = stats.snapshot("q")["q"]
    assert (snap["retrying"], snap["failed"]) == (2, 1)


def test_third_retry_waits_eight_seconds(make_manager, store, clock):
    manager = make_manager()
    manager.register_processor("q", always_fail, queue_opts("q", attempts=5, backoff=Backoff(base_delay_ms=2000)))
    manager.initialize(start_workers=False)
    pool = manager.get_pool("q")
    job_id = manager.add_job("q", "send")

    for _ in range(3):
        clock.advance(60)
        failed_at = clock()
        assert pool.process_one()
    assert store.get(job_id).scheduled_at >= failed_at + 8.0


def test_job_result_fail_counts_as_attempt(make_manager, store):
    manager = make_manager()
    manager.register_processor("q", lambda job: JobResult.fail("gateway says pending"), queue_opts("q", attempts=1))
    manager.initialize(start_workers=False)
    job_id = manager.add_job("q", "verify")

    manager.get_pool("q").process_one()
    job = store.get(job_id)
    assert job.state == FAILED
    assert job.failure_reason == "gateway says pending"


def test_timeout_fails_the_attempt(make_manager, store):
    release = threading.Event()
    manager = make_manager()
    manager.register_processor("q", lambda job: release.wait(5), queue_opts("q", attempts=1, timeout_ms=100))
    manager.initialize(start_workers=False)
    job_id = manager.add_job("q", "slow")

    started = time.monotonic()
    manager.get_pool("q").process_one()
    release.set()
    assert time.monotonic() - started < 4
    job = store.get(job_id)
    assert job.state == FAILED
    assert "timed out after 100ms" in job.failure_reason


def test_first_stall_requeues_second_fails(make_manager, store, clock):
    stats = StatsObserver()
    manager = make_manager(observers=[stats])
    manager.register_processor("q", lambda job: None, queue_opts("q", attempts=1))
    manager.initialize(start_workers=False)
    pool = manager.get_pool("q")
    job_id = manager.add_job("q", "crashy")

    # a worker that died mid-job: claimed, never settled
    store.dequeue_next("q", now=clock(), lock_timeout_s=30)
    clock.advance(31)
    assert pool.check_stalled() == 1
    job = store.get(job_id)
    assert (job.state, job.attempts_made, job.stalled_count) == (WAITING, 0, 1)

    store.dequeue_next("q", now=clock(), lock_timeout_s=30)
    clock.advance(31)
    assert pool.check_stalled() == 1
    job = store.get(job_id)
    assert job.state == FAILED
    assert job.attempts_made == 1
    assert "stalled more than once" in job.failure_reason
    assert stats.snapshot("q")["q"]["stalled"] == 2


def test_side_effect_applied_once_across_retries(make_manager, store, clock):
    effects = {}
    calls = []

    def charge(job):
        calls.append(job.attempts_made)
        key = job.payload["order_id"]
        if key not in effects:
            effects[key] = job.id
            raise ConnectionError("response lost after the charge went through")
        return effects[key]

    manager = make_manager()
    manager.register_processor("q", charge, queue_opts("q", backoff=Backoff(base_delay_ms=10)))
    manager.initialize(start_workers=False)
    job_id = manager.add_job("q", "charge", {"order_id": "o-1"})
    pool = manager.get_pool("q")

    pool.process_one()
    clock.advance(1)
    pool.process_one()

    assert calls == [1, 2]
    assert len(effects) == 1
    assert store.get(job_id).state == COMPLETED


def test_rate_limited_queue_holds_jobs(make_manager, store, clock):
    manager = make_manager(clock=clock)
    manager.register_processor("q", lambda job: "ok", queue_opts("q", rate_limit=RateLimit(max=2, duration_ms=1000)))
    manager.initialize(start_workers=False)
    pool = manager.get_pool("q")
    ids = [manager.add_job("q", "n") for _ in range(3)]

    assert pool.process_one()
    assert pool.process_one()
    assert not pool.process_one()
    assert store.get(ids[2]).state == WAITING
    clock.advance(1.0)
    assert pool.process_one()
    assert store.get(ids[2]).state == COMPLETED


def test_empty_queue_does_not_use_rate_budget(make_manager, clock):
    manager = make_manager(clock=clock)
    manager.register_processor("q", lambda job: "ok", queue_opts("q", rate_limit=RateLimit(max=1, duration_ms=1000)))
    manager.initialize(start_workers=False)
    pool = manager.get_pool("q")

    assert not pool.process_one()
    manager.add_job("q", "n")
    assert pool.process_one()


def test_side_effect_applied_once_after_a_stall(make_manager, store, clock):
    effects = {}
    calls = []

    def charge(job):
        calls.append(job.attempts_made)
        effects.setdefault(job.payload["order_id"], job.id)
        return effects[job.payload["order_id"]]

    manager = make_manager()
    manager.register_processor("q", charge, queue_opts("q"))
    manager.initialize(start_workers=False)
    job_id = manager.add_job("q", "charge", {"order_id": "o-1"})
    pool = manager.get_pool("q")

    # a worker ran the handler and died before settling the job
    claimed = store.dequeue_next("q", now=clock(), lock_timeout_s=30)
    charge(JobContext(claimed))
    clock.advance(31)
    assert pool.check_stalled() == 1
    assert store.get(job_id).state == WAITING

    assert pool.process_one()
    assert calls == [1, 1]
    assert effects == {"o-1": job_id}
    job = store.get(job_id)
    assert job.state == COMPLETED
    assert job.result == job_id


def test_stalled_state_is_visible_to_observers(make_manager, store, clock):
    seen = []

    class Watcher(JobObserver):
        def on_stalled(self, job):
            seen.append((store.get(job.id).state, manager.get_queue_stats("q")["stalled"]))

    manager = make_manager(observers=[Watcher()])
    manager.register_processor("q", lambda job: None, queue_opts("q"))
    manager.initialize(start_workers=False)
    job_id = manager.add_job("q", "crashy")
    store.dequeue_next("q", now=clock(), lock_timeout_s=30)
    clock.advance(31)

    assert manager.get_pool("q").check_stalled() == 1
    assert seen == [(STALLED, 1)]
    assert store.get(job_id).state == WAITING
    assert manager.get_queue_stats("q")["stalled"] == 0


def test_timed_out_handler_still_holds_its_slot(make_manager, store):
    running, peak, lock = [0], [0], threading.Lock()

    def slow(job):
        with lock:
            running[0] += 1
            peak[0] = max(peak[0], running[0])
        time.sleep(0.3)
        with lock:
            running[0] -= 1

    manager = make_manager(clock=time.time)
    manager.register_processor("q", slow, queue_opts("q", concurrency=1, attempts=1, timeout_ms=50))
    manager.initialize()
    ids = [manager.add_job("q", "slow") for _ in range(3)]

    assert wait_for(lambda: all(store.get(i).state == FAILED for i in ids), timeout=5)
    assert peak[0] == 1
    assert all("timed out" in store.get(i).failure_reason for i in ids)


def test_rate_limited_slot_waits_instead_of_failing(make_manager, store):
    manager = make_manager(clock=time.time)
    manager.register_processor("q", lambda job: "ok", queue_opts("q", rate_limit=RateLimit(max=2, duration_ms=500)))
    manager.initialize()
    ids = [manager.add_job("q", "n") for _ in range(3)]

    assert wait_all_completed(store, ids)
    assert all(store.get(i).attempts_made == 1 for i in ids)
    finished = sorted(store.get(i).finished_at for i in ids)
    assert finished[2] - finished[0] >= 0.4


def test_observer_crash_does_not_stop_the_job(make_manager, store):
    class Broken(JobObserver):
        def on_active(self, job):
            raise RuntimeError("observer bug")

        def on_waiting(self, job):
            raise RuntimeError("observer bug")

    ran = []
    manager = make_manager(observers=[Broken()])
    manager.register_processor("q", lambda job: ran.append(job.id) or "ok", queue_opts("q"))
    manager.initialize(start_workers=False)
    job_id = manager.add_job("q", "n")

    assert manager.get_pool("q").process_one()
    assert ran == [job_id]
    job = store.get(job_id)
    assert job.state == COMPLETED
    assert job.attempts_made == 1


def test_observer_crash_is_isolated(make_manager, store):
    class Broken(JobObserver):
        def on_completed(self, job, result):
            raise RuntimeError("observer bug")

        def on_active(self, job):
            job.payload["tampered"] = True

    stats = StatsObserver()
    seen = []
    manager = make_manager(observers=[Broken(), stats])
    manager.register_processor("q", lambda job: seen.append(dict(job.payload)) or "ok", queue_opts("q"))
    manager.initialize(start_workers=False)
    job_id = manager.add_job("q", "n", {"a": 1})

    manager.get_pool("q").process_one()
    assert store.get(job_id).state == COMPLETED
    assert stats.snapshot("q")["q"]["completed"] == 1
    # observers only ever see copies
    assert seen == [{"a": 1}]


def test_workers_run_in_background(make_manager, store):
    manager = make_manager(clock=time.time)
    done = []
    manager.register_processor("q", lambda job: done.append(job.id), queue_opts("q", concurrency=3))
    manager.initialize()
    ids = [manager.add_job("q", "n") for _ in range(10)]

    assert wait_all_completed(store, ids)
    assert sorted(done) == sorted(ids)


def wait_all_completed(store, ids, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if all(store.get(i).state == COMPLETED for i in ids):
            return True
        time.sleep(0.02)
    return False


@pytest.mark.parametrize("attempts", [1, 2, 4])
def test_attempts_never_exceed_limit(make_manager, store, clock, attempts):
    manager = make_manager()
    manager.register_processor("q", always_fail, queue_opts("q", attempts=attempts, backoff=Backoff(base_delay_ms=1)))
    manager.initialize(start_workers=False)
    job_id = manager.add_job("q", "n")
    pool = manager.get_pool("q")
    for _ in range(attempts + 3):
        pool.process_one()
        clock.advance(1)
    job = store.get(job_id)
    assert job.state == FAILED
    assert job.attempts_made == attempts
