from datetime import datetime, timezone

import pytest

from conftest import queue_opts
from jobqueue.errors import ConfigurationError
from jobqueue.models import WAITING, Backoff, Retention
from jobqueue.scheduler import next_fire_after, schedule_id, validate_cron


def ts(*args):
    return datetime(*args, tzinfo=timezone.utc).timestamp()


def test_next_fire_after_is_strictly_later():
    assert next_fire_after("*/5 * * * *", ts(2025, 1, 1, 12, 0, 30)) == ts(2025, 1, 1, 12, 5)
    assert next_fire_after("*/5 * * * *", ts(2025, 1, 1, 12, 5)) == ts(2025, 1, 1, 12, 10)
    assert next_fire_after("0 2 * * *", ts(2025, 1, 1, 12, 0)) == ts(2025, 1, 2, 2, 0)


@pytest.mark.parametrize("expr", ["", "every minute", "61 * * * *"])
def test_invalid_cron_rejected(expr):
    with pytest.raises(ConfigurationError):
        validate_cron(expr)


def manager_with_queue(make_manager, **kw):
    manager = make_manager(**kw)
    manager.register_processor("sync", lambda job: "ok", queue_opts("sync"))
    manager.initialize(start_workers=False)
    return manager


def test_add_recurring_is_an_upsert(make_manager):
    manager = manager_with_queue(make_manager)
    first = manager.add_recurring("sync", "periodic-sync", {}, "*/5 * * * *")
    second = manager.add_recurring("sync", "periodic-sync", {"full": False}, "*/5 * * * *")
    assert first == second == schedule_id("sync", "periodic-sync", "*/5 * * * *")
    schedules = manager.list_recurring()
    assert len(schedules) == 1
    assert schedules[0].payload == {"full": False}


def test_add_recurring_rejects_bad_cron(make_manager):
    manager = manager_with_queue(make_manager)
    with pytest.raises(ConfigurationError):
        manager.add_recurring("sync", "periodic-sync", {}, "not a cron")


def test_missed_ticks_fire_once(make_manager, store, clock):
    manager = manager_with_queue(make_manager)
    clock.now = ts(2025, 1, 1, 12, 0, 30)
    manager.add_recurring("sync", "periodic-sync", {}, "*/5 * * * *")

    assert manager.scheduler.tick() == 0
    # offline across the 12:05, 12:10 and 12:15 ticks
    clock.now = ts(2025, 1, 1, 12, 15, 30)
    assert manager.scheduler.tick() == 1
    assert manager.scheduler.tick() == 0

    schedule = manager.list_recurring()[0]
    assert schedule.next_run_at == ts(2025, 1, 1, 12, 20)
    assert schedule.last_run_at == clock()
    jobs = manager.get_jobs("sync", WAITING)
    assert [j.name for j in jobs] == ["periodic-sync"]


def test_restart_does_not_fire_twice(make_manager, store, clock):
    clock.now = ts(2025, 1, 1, 12, 0, 30)
    first = manager_with_queue(make_manager)
    first.add_recurring("sync", "periodic-sync", {}, "*/5 * * * *")
    clock.now = ts(2025, 1, 1, 12, 5, 10)
    assert first.scheduler.tick() == 1
    first.shutdown(grace_s=0)

    clock.now = ts(2025, 1, 1, 12, 5, 20)
    second = manager_with_queue(make_manager)
    second.add_recurring("sync", "periodic-sync", {}, "*/5 * * * *")
    assert second.scheduler.tick() == 0
    assert store.counts("sync")[WAITING] == 1


def test_fired_jobs_take_schedule_options(make_manager, store, clock):
    manager = manager_with_queue(make_manager)
    manager.add_recurring("sync", "periodic-sync", {"scope": "changes"}, "* * * * *",
                          {"priority": 7, "job_id": "fixed"})
    clock.advance(120)
    manager.scheduler.tick()
    job = manager.get_jobs("sync", WAITING)[0]
    assert job.priority == 7
    assert job.payload == {"scope": "changes"}
    assert job.id != "fixed"


def test_remove_recurring(make_manager, clock):
    manager = manager_with_queue(make_manager)
    sid = manager.add_recurring("sync", "periodic-sync", {}, "* * * * *")
    assert manager.remove_recurring(sid)
    assert not manager.remove_recurring(sid)
    clock.advance(120)
    assert manager.scheduler.tick() == 0


def test_recurring_options_accept_dataclasses(make_manager, store, clock):
    manager = manager_with_queue(make_manager)
    clock.now = ts(2025, 1, 1, 12, 0, 30)
    manager.add_recurring("sync", "periodic-sync", {}, "*/5 * * * *", {
        "backoff": Backoff("fixed", 10),
        "remove_on_complete": Retention(count=3),
        "attempts": 2,
    })
    assert manager.list_recurring()[0].options["backoff"] == {"type": "fixed", "base_delay_ms": 10}

    clock.now = ts(2025, 1, 1, 12, 5)
    assert manager.scheduler.tick() == 1
    (job,) = manager.get_jobs("sync", WAITING)
    assert job.backoff == Backoff("fixed", 10)
    assert job.attempts_limit == 2
    assert store.retention_for(job.id)["complete"] == Retention(count=3)
