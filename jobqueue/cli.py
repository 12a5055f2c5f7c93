import json
import signal
import threading
from contextlib import contextmanager

import click

from .app import build_manager, schedule_defaults
from .config import db_path
from .db import init_db
from .errors import JobQueueError
from .log import setup_logging
from .models import COMPLETED, FAILED, JOB_STATES, WAITING
from .store import SqliteJobStore
from .utils import iso_from_ts, parse_delay_to_ms


@click.group(help="jobqueue: multi-queue background job engine")
@click.option("--log-level", default=None,
              help="Log level for engine messages [default: INFO for workers, WARNING otherwise]")
@click.option("--json-logs", is_flag=True, default=False, help="Emit logs as JSON lines")
@click.pass_context
def cli(ctx, log_level, json_logs):
    # Ensure DB/schema exist before any command runs
    init_db(db_path())
    if log_level is None:
        log_level = "INFO" if ctx.invoked_subcommand == "worker" else "WARNING"
    setup_logging(log_level, json_logs=json_logs)


@contextmanager
def open_manager():
    """A manager with pools but no running workers, for producer and admin commands."""
    manager = build_manager(db_path(), observers=[])
    manager.initialize(start_workers=False)
    try:
        yield manager
    finally:
        manager.shutdown(grace_s=0)
        manager.store.close()


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


def _job_line(job) -> str:
    return (
        f"{job.id:>32} | {job.name:<28} | {job.state:<9} | prio={job.priority} "
        f"| attempts={job.attempts_made}/{job.attempts_limit} | progress={job.progress} "
        f"| next={iso_from_ts(job.scheduled_at)} | reason={job.failure_reason}"
    )


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a job to a queue")
@click.argument("queue")
@click.argument("job_name")
@click.option("--payload", default="{}", show_default=True, help="JSON object handed to the handler")
@click.option("--priority", default=None, type=int, help="Lower number = higher priority")
@click.option("--delay", "delay_str", default=None, help="Run after a delay, e.g. 500ms, 20s, 5m, 1h30m")
@click.option("--attempts", default=None, type=int, help="Override the queue's attempt limit")
@click.option("--id", "job_id", default=None, help="Explicit job id (duplicates are rejected)")
def enqueue_cmd(queue, job_name, payload, priority, delay_str, attempts, job_id):
    try:
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("--payload must be a JSON object")
        options = {"priority": priority, "attempts": attempts, "job_id": job_id}
        if delay_str:
            options["delay_ms"] = parse_delay_to_ms(delay_str)
        options = {k: v for k, v in options.items() if v is not None}
        with open_manager() as manager:
            new_id = manager.add_job(queue, job_name, data, options)
        click.secho(
            f"Enqueued {new_id} -> {queue}/{job_name}"
            f" ({'delay=' + delay_str if delay_str else 'run now'})",
            fg="green",
        )
    except (ValueError, JobQueueError) as e:
        _fail(e)


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--grace", type=float, default=None, help="Seconds to let running jobs finish on shutdown")
@click.option("--no-schedules", is_flag=True, default=False, help="Do not register the bundled recurring jobs")
def worker_start(grace, no_schedules):
    stop = threading.Event()

    def _handler(signum, frame):
        click.secho(f"\nReceived signal {signum}. Stopping workers", fg="yellow")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)

    manager = build_manager(db_path())
    try:
        manager.initialize()
        if not no_schedules:
            schedule_defaults(manager)
        click.secho(f"Workers running for: {', '.join(manager.queue_names)}. Press Ctrl+C to stop…", fg="cyan")
        while not stop.is_set():
            stop.wait(1.0)
    finally:
        manager.shutdown(grace_s=grace)
        manager.store.close()
    click.secho("Workers stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list", help="List jobs of a queue in one state")
@click.argument("queue")
@click.option("--state", type=click.Choice(list(JOB_STATES)), default=WAITING, show_default=True)
@click.option("--limit", type=int, default=20, show_default=True)
def list_cmd(queue, state, limit):
    try:
        with open_manager() as manager:
            jobs = manager.get_jobs(queue, state, 0, limit - 1)
    except JobQueueError as e:
        _fail(e)

    if not jobs:
        click.echo("No jobs.")
        return
    for job in jobs:
        click.echo(_job_line(job))


@cli.command("show", help="Show one job as JSON")
@click.argument("queue")
@click.argument("job_id")
def show_cmd(queue, job_id):
    try:
        with open_manager() as manager:
            job = manager.get_job(queue, job_id)
    except JobQueueError as e:
        _fail(e)
    if job is None:
        _fail(f"Job {job_id} not found in {queue}.")
    click.echo(json.dumps(job.to_dict(), indent=2, default=str))


@cli.command("status", help="Job counts per queue")
@click.argument("queue", required=False)
def status_cmd(queue):
    try:
        with open_manager() as manager:
            stats = manager.get_queue_stats(queue) if queue else manager.get_all_stats()
    except JobQueueError as e:
        _fail(e)
    click.echo(json.dumps(stats, indent=2))


@cli.command("health", help="Health summary; exits 1 when unhealthy")
def health_cmd():
    with open_manager() as manager:
        report = manager.health_check()
    click.echo(json.dumps(report, indent=2))
    if not report["healthy"]:
        raise SystemExit(1)


# ---------- Queue control ----------
@cli.command("pause", help="Stop workers from taking new jobs on a queue")
@click.argument("queue")
def pause_cmd(queue):
    try:
        with open_manager() as manager:
            manager.pause_queue(queue)
    except JobQueueError as e:
        _fail(e)
    click.secho(f"Paused {queue}.", fg="yellow")


@cli.command("resume", help="Resume a paused queue")
@click.argument("queue")
def resume_cmd(queue):
    try:
        with open_manager() as manager:
            manager.resume_queue(queue)
    except JobQueueError as e:
        _fail(e)
    click.secho(f"Resumed {queue}.", fg="green")


@cli.command("retry", help="Move a failed job back to waiting")
@click.argument("queue")
@click.argument("job_id")
def retry_cmd(queue, job_id):
    try:
        with open_manager() as manager:
            ok = manager.retry_job(queue, job_id)
    except JobQueueError as e:
        _fail(e)
    if not ok:
        _fail(f"Job {job_id} is not a failed job in {queue}.")
    click.secho(f"Re-queued failed job {job_id}.", fg="green")


@cli.command("retry-failed", help="Retry every failed job of a queue")
@click.argument("queue")
@click.option("--limit", type=int, default=100, show_default=True)
def retry_failed_cmd(queue, limit):
    try:
        with open_manager() as manager:
            summary = manager.retry_all_failed(queue, limit=limit)
    except JobQueueError as e:
        _fail(e)
    click.echo(json.dumps(summary, indent=2))


@cli.command("remove", help="Delete a job that is not running")
@click.argument("queue")
@click.argument("job_id")
def remove_cmd(queue, job_id):
    try:
        with open_manager() as manager:
            ok = manager.remove_job(queue, job_id)
    except JobQueueError as e:
        _fail(e)
    if not ok:
        _fail(f"Job {job_id} not found in {queue} or still active.")
    click.secho(f"Removed {job_id}.", fg="green")


@cli.command("clean", help="Delete old finished jobs")
@click.argument("queue")
@click.option("--state", type=click.Choice([COMPLETED, FAILED]), default=COMPLETED, show_default=True)
@click.option("--grace", "grace_str", default="1d", show_default=True, help="Keep jobs newer than this, e.g. 12h")
@click.option("--limit", type=int, default=1000, show_default=True)
def clean_cmd(queue, state, grace_str, limit):
    try:
        grace_ms = parse_delay_to_ms(grace_str)
        with open_manager() as manager:
            removed = manager.clean_queue(queue, grace_ms=grace_ms, state=state, limit=limit)
    except (ValueError, JobQueueError) as e:
        _fail(e)
    click.secho(f"Removed {removed} {state} job(s) from {queue}.", fg="green")


# ---------- Schedules ----------
@cli.command("schedules", help="List recurring jobs")
@click.argument("queue", required=False)
def schedules_cmd(queue):
    store = SqliteJobStore(db_path())
    try:
        rows = store.list_schedules(queue)
    finally:
        store.close()

    if not rows:
        click.echo("No recurring jobs.")
        return
    for s in rows:
        click.echo(f"{s.id} | next={iso_from_ts(s.next_run_at)} | last={iso_from_ts(s.last_run_at)}")


# ---------- Config ----------
@cli.group("config", help="Engine configuration")
def config_group():
    pass


@config_group.command("get")
def config_get():
    store = SqliteJobStore(db_path())
    try:
        click.echo(json.dumps(store.get_config(), indent=2))
    finally:
        store.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set_cmd(key, value):
    store = SqliteJobStore(db_path())
    try:
        if not value.strip().isdigit():
            raise ValueError(f"{key} must be a non-negative integer")
        store.set_config(key, value.strip())
        click.secho(f"Config updated: {key}={value.strip()}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        store.close()


def main():
    cli()
