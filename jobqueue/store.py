import json
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .config import ALLOWED_CONFIG_KEYS
from .db import connect_db, init_db
from .errors import DuplicateJobError
from .models import (
    ACTIVE, COMPLETED, DELAYED, FAILED, JOB_STATES, PENDING_STATES, STALLED, TERMINAL_STATES, WAITING,
    Backoff, Job, RecurringSchedule, Retention,
)

CLAIM_RETRIES = 5


class JobStore(ABC):
    """
    Persistence contract for queues.

    Every mutation is a compare-and-swap keyed by job id (and lock token for
    active jobs), so a lost race shows up as ``False``/``None`` rather than a
    double-processed job.
    """

    # ---------- Jobs ----------
    @abstractmethod
    def enqueue(self, job: Job, *, complete_retention: Retention, fail_retention: Retention) -> Job: ...

    @abstractmethod
    def dequeue_next(self, queue: str, *, now: float, lock_timeout_s: float) -> Optional[Job]: ...

    @abstractmethod
    def mark_state(self, job_id: str, from_state: str, to_state: str) -> bool: ...

    @abstractmethod
    def list_by_state(self, queue: str, state: str, start: int = 0, end: int = -1) -> List[Job]: ...

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    def promote_delayed(self, queue: str, *, now: float) -> List[str]: ...

    @abstractmethod
    def renew_lock(self, job_id: str, token: str, until: float) -> bool: ...

    @abstractmethod
    def set_progress(self, job_id: str, token: str, progress: int) -> bool: ...

    @abstractmethod
    def complete(self, job: Job, result: Any, *, now: float) -> bool: ...

    @abstractmethod
    def fail_attempt(self, job: Job, reason: str, *, now: float, retry_at: Optional[float]) -> Optional[str]: ...

    @abstractmethod
    def mark_stalled(self, job: Job) -> bool: ...

    @abstractmethod
    def requeue(self, job: Job, *, stalled: bool) -> bool: ...

    @abstractmethod
    def find_stalled(self, queue: str, *, now: float) -> List[Job]: ...

    @abstractmethod
    def counts(self, queue: str) -> Dict[str, int]: ...

    @abstractmethod
    def retention_for(self, job_id: str) -> Dict[str, Retention]: ...

    @abstractmethod
    def trim_history(self, queue: str, state: str, retention: Retention, *, now: float) -> int: ...

    @abstractmethod
    def clean(self, queue: str, state: str, *, older_than: float, limit: int = 1000) -> int: ...

    @abstractmethod
    def retry_failed(self, job_id: str, *, now: float) -> bool: ...

    @abstractmethod
    def remove(self, job_id: str) -> bool: ...

    # ---------- Queues ----------
    @abstractmethod
    def set_paused(self, queue: str, paused: bool): ...

    @abstractmethod
    def is_paused(self, queue: str) -> bool: ...

    # ---------- Schedules ----------
    @abstractmethod
    def upsert_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule: ...

    @abstractmethod
    def list_schedules(self, queue: Optional[str] = None) -> List[RecurringSchedule]: ...

    @abstractmethod
    def delete_schedule(self, schedule_id: str) -> bool: ...

    @abstractmethod
    def fire_schedule(self, schedule: RecurringSchedule, job: Job, *, next_run_at: float,
                      complete_retention: Retention, fail_retention: Retention) -> bool: ...

    # ---------- Config ----------
    @abstractmethod
    def get_config(self) -> Dict[str, str]: ...

    @abstractmethod
    def set_config(self, key: str, value: str): ...

    def release_thread(self):
        """Drop whatever the calling thread holds; called when a short-lived thread ends."""

    def close(self):
        pass


def _dump(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def _load(text: Optional[str]) -> Any:
    if text is None:
        return None
    return json.loads(text)


def _row_to_job(r: sqlite3.Row) -> Job:
    return Job(
        id=r["id"],
        queue_name=r["queue"],
        name=r["name"],
        payload=_load(r["payload"]) or {},
        state=r["state"],
        priority=r["priority"],
        attempts_made=r["attempts_made"],
        attempts_limit=r["attempts_limit"],
        backoff=Backoff(type=r["backoff_type"], base_delay_ms=r["backoff_delay_ms"]),
        timeout_ms=r["timeout_ms"],
        progress=r["progress"],
        seq=r["seq"],
        created_at=r["created_at"],
        scheduled_at=r["scheduled_at"],
        processed_at=r["processed_at"],
        finished_at=r["finished_at"],
        result=_load(r["result"]),
        failure_reason=r["failure_reason"],
        lock_token=r["lock_token"],
        lock_expires_at=r["lock_expires_at"],
        stalled_count=r["stalled_count"],
    )


def _row_to_schedule(r: sqlite3.Row) -> RecurringSchedule:
    return RecurringSchedule(
        id=r["id"],
        queue_name=r["queue"],
        job_name=r["job_name"],
        cron=r["cron"],
        next_run_at=r["next_run_at"],
        payload=_load(r["payload"]) or {},
        options=_load(r["options"]) or {},
        last_run_at=r["last_run_at"],
    )


class SqliteJobStore(JobStore):
    """SQLite-backed store. One connection per thread, WAL journal."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        init_db(path)
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = connect_db(self.path)
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def release_thread(self):
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._conns_lock:
            if conn in self._conns:
                self._conns.remove(conn)
        conn.close()

    def close(self):
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()
        self._local = threading.local()

    # ---------- Jobs: enqueue / claim / complete / retry ----------
    def enqueue(self, job: Job, *, complete_retention: Retention, fail_retention: Retention) -> Job:
        return self._insert(self.conn, job, complete_retention, fail_retention)

    def _insert(self, conn, job, complete_retention, fail_retention) -> Job:
        try:
            with conn:
                self._insert_in_tx(conn, job, complete_retention, fail_retention)
        except sqlite3.IntegrityError:
            raise DuplicateJobError(job.id)
        return job

    def dequeue_next(self, queue: str, *, now: float, lock_timeout_s: float) -> Optional[Job]:
        conn = self.conn
        for _ in range(CLAIM_RETRIES):
            row = conn.execute(
                """SELECT id FROM jobs
                   WHERE queue=? AND state IN (?, ?) AND scheduled_at <= ?
                     AND attempts_made < attempts_limit
                   ORDER BY priority ASC, scheduled_at ASC, seq ASC
                   LIMIT 1""",
                (queue, WAITING, DELAYED, now),
            ).fetchone()
            if not row:
                return None
            token = uuid.uuid4().hex
            with conn:
                updated = conn.execute(
                    """UPDATE jobs
                       SET state=?, attempts_made=attempts_made+1, lock_token=?, lock_expires_at=?,
                           processed_at=?, progress=0
                       WHERE id=? AND state IN (?, ?) AND attempts_made < attempts_limit""",
                    (ACTIVE, token, now + lock_timeout_s, now, row["id"], WAITING, DELAYED),
                )
            if updated.rowcount == 1:
                return self.get(row["id"])
            # another worker won the race for this row; look again
        return None

    # alias kept for callers that think in terms of claiming
    claim_next = dequeue_next

    def mark_state(self, job_id: str, from_state: str, to_state: str) -> bool:
        if to_state not in JOB_STATES:
            raise ValueError(f"Unknown state: {to_state}")
        with self.conn:
            cur = self.conn.execute(
                "UPDATE jobs SET state=? WHERE id=? AND state=?", (to_state, job_id, from_state)
            )
        return cur.rowcount == 1

    def promote_delayed(self, queue: str, *, now: float) -> List[str]:
        conn = self.conn
        rows = conn.execute(
            "SELECT id FROM jobs WHERE queue=? AND state=? AND scheduled_at <= ? ORDER BY seq",
            (queue, DELAYED, now),
        ).fetchall()
        promoted = []
        for r in rows:
            with conn:
                cur = conn.execute(
                    "UPDATE jobs SET state=? WHERE id=? AND state=?", (WAITING, r["id"], DELAYED)
                )
            if cur.rowcount == 1:
                promoted.append(r["id"])
        return promoted

    def renew_lock(self, job_id: str, token: str, until: float) -> bool:
        with self.conn:
            cur = self.conn.execute(
                "UPDATE jobs SET lock_expires_at=? WHERE id=? AND state=? AND lock_token=?",
                (until, job_id, ACTIVE, token),
            )
        return cur.rowcount == 1

    def set_progress(self, job_id: str, token: str, progress: int) -> bool:
        with self.conn:
            cur = self.conn.execute(
                "UPDATE jobs SET progress=? WHERE id=? AND state=? AND lock_token=?",
                (int(progress), job_id, ACTIVE, token),
            )
        return cur.rowcount == 1

    def complete(self, job: Job, result: Any, *, now: float) -> bool:
        with self.conn:
            cur = self.conn.execute(
                """UPDATE jobs
                   SET state=?, result=?, finished_at=?, progress=100, lock_token=NULL, lock_expires_at=NULL
                   WHERE id=? AND state=? AND lock_token=?""",
                (COMPLETED, _dump(result), now, job.id, ACTIVE, job.lock_token),
            )
        return cur.rowcount == 1

    def fail_attempt(self, job: Job, reason: str, *, now: float, retry_at: Optional[float]) -> Optional[str]:
        if retry_at is not None:
            new_state, finished, scheduled = DELAYED, None, retry_at
        else:
            new_state, finished, scheduled = FAILED, now, job.scheduled_at
        with self.conn:
            cur = self.conn.execute(
                """UPDATE jobs
                   SET state=?, failure_reason=?, finished_at=?, scheduled_at=?,
                       lock_token=NULL, lock_expires_at=NULL
                   WHERE id=? AND state=? AND lock_token=?""",
                (new_state, reason[:2000], finished, scheduled, job.id, ACTIVE, job.lock_token),
            )
        return new_state if cur.rowcount == 1 else None

    def mark_stalled(self, job: Job) -> bool:
        with self.conn:
            cur = self.conn.execute(
                """UPDATE jobs
                   SET state=?, stalled_count=stalled_count+1, lock_token=NULL, lock_expires_at=NULL
                   WHERE id=? AND state=? AND lock_token=?""",
                (STALLED, job.id, ACTIVE, job.lock_token),
            )
        return cur.rowcount == 1

    def requeue(self, job: Job, *, stalled: bool) -> bool:
        # The interrupted attempt does not count against attempts_limit.
        # A stalled job has already given up its lock in mark_stalled.
        if stalled:
            where, params = "id=? AND state=?", (job.id, STALLED)
        else:
            where, params = "id=? AND state=? AND lock_token=?", (job.id, ACTIVE, job.lock_token)
        with self.conn:
            cur = self.conn.execute(
                f"""UPDATE jobs
                   SET state=?, attempts_made=MAX(attempts_made-1, 0),
                       lock_token=NULL, lock_expires_at=NULL
                   WHERE {where}""",
                (WAITING,) + params,
            )
        return cur.rowcount == 1

    def find_stalled(self, queue: str, *, now: float) -> List[Job]:
        # rows left in stalled by a process that died before requeueing them are picked up too
        rows = self.conn.execute(
            "SELECT * FROM jobs WHERE queue=? AND ((state=? AND lock_expires_at < ?) OR state=?) ORDER BY seq",
            (queue, ACTIVE, now, STALLED),
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    # ---------- Queries ----------
    def get(self, job_id: str) -> Optional[Job]:
        row = self.conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def list_by_state(self, queue: str, state: str, start: int = 0, end: int = -1) -> List[Job]:
        if state in TERMINAL_STATES:
            order = "finished_at DESC, seq DESC"
        else:
            order = "priority ASC, scheduled_at ASC, seq ASC"
        limit = -1 if end < 0 else max(0, end - start + 1)
        rows = self.conn.execute(
            f"SELECT * FROM jobs WHERE queue=? AND state=? ORDER BY {order} LIMIT ? OFFSET ?",
            (queue, state, limit, max(0, start)),
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def counts(self, queue: str) -> Dict[str, int]:
        out = {s: 0 for s in JOB_STATES}
        for r in self.conn.execute(
            "SELECT state, COUNT(1) AS c FROM jobs WHERE queue=? GROUP BY state", (queue,)
        ).fetchall():
            out[r["state"]] = r["c"]
        return out

    # ---------- Retention ----------
    def trim_history(self, queue: str, state: str, retention: Retention, *, now: float) -> int:
        removed = 0
        with self.conn:
            if retention.age_s is not None:
                removed += self.conn.execute(
                    "DELETE FROM jobs WHERE queue=? AND state=? AND finished_at < ?",
                    (queue, state, now - float(retention.age_s)),
                ).rowcount
            if retention.count is not None:
                removed += self.conn.execute(
                    """DELETE FROM jobs WHERE queue=? AND state=? AND seq NOT IN (
                           SELECT seq FROM jobs WHERE queue=? AND state=?
                           ORDER BY finished_at DESC, seq DESC LIMIT ?)""",
                    (queue, state, queue, state, int(retention.count)),
                ).rowcount
        return removed

    def retention_for(self, job_id: str) -> Dict[str, Retention]:
        row = self.conn.execute("SELECT retention FROM jobs WHERE id=?", (job_id,)).fetchone()
        raw = _load(row["retention"]) if row else {}
        return {
            key: Retention(age_s=vals[0], count=vals[1])
            for key, vals in (raw or {}).items()
        }

    def clean(self, queue: str, state: str, *, older_than: float, limit: int = 1000) -> int:
        if state not in TERMINAL_STATES + PENDING_STATES:
            raise ValueError(f"Cannot clean jobs in state {state!r}")
        stamp = "finished_at" if state in TERMINAL_STATES else "created_at"
        with self.conn:
            cur = self.conn.execute(
                f"""DELETE FROM jobs WHERE seq IN (
                        SELECT seq FROM jobs WHERE queue=? AND state=? AND {stamp} < ?
                        ORDER BY seq LIMIT ?)""",
                (queue, state, older_than, int(limit)),
            )
        return cur.rowcount

    # ---------- Admin ----------
    def retry_failed(self, job_id: str, *, now: float) -> bool:
        with self.conn:
            cur = self.conn.execute(
                """UPDATE jobs
                   SET state=?, attempts_made=0, stalled_count=0, scheduled_at=?, finished_at=NULL,
                       failure_reason=NULL, progress=0
                   WHERE id=? AND state=?""",
                (WAITING, now, job_id, FAILED),
            )
        return cur.rowcount == 1

    def remove(self, job_id: str) -> bool:
        with self.conn:
            cur = self.conn.execute("DELETE FROM jobs WHERE id=? AND state<>?", (job_id, ACTIVE))
        return cur.rowcount == 1

    # ---------- Queues ----------
    def set_paused(self, queue: str, paused: bool):
        with self.conn:
            self.conn.execute(
                "INSERT INTO queue_state(queue, paused) VALUES(?,?) "
                "ON CONFLICT(queue) DO UPDATE SET paused=excluded.paused",
                (queue, 1 if paused else 0),
            )

    def is_paused(self, queue: str) -> bool:
        row = self.conn.execute("SELECT paused FROM queue_state WHERE queue=?", (queue,)).fetchone()
        return bool(row and row["paused"])

    # ---------- Schedules ----------
    def upsert_schedule(self, schedule: RecurringSchedule) -> RecurringSchedule:
        conn = self.conn
        with conn:
            existing = conn.execute("SELECT * FROM schedules WHERE id=?", (schedule.id,)).fetchone()
            if existing:
                # keep the persisted next_run_at so a restart cannot fire the same tick twice
                conn.execute(
                    "UPDATE schedules SET payload=?, options=? WHERE id=?",
                    (_dump(schedule.payload), _dump(schedule.options), schedule.id),
                )
            else:
                conn.execute(
                    """INSERT INTO schedules(id, queue, job_name, cron, payload, options, next_run_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (schedule.id, schedule.queue_name, schedule.job_name, schedule.cron,
                     _dump(schedule.payload), _dump(schedule.options), schedule.next_run_at),
                )
        row = conn.execute("SELECT * FROM schedules WHERE id=?", (schedule.id,)).fetchone()
        return _row_to_schedule(row)

    def list_schedules(self, queue: Optional[str] = None) -> List[RecurringSchedule]:
        if queue:
            rows = self.conn.execute(
                "SELECT * FROM schedules WHERE queue=? ORDER BY next_run_at", (queue,)
            ).fetchall()
        else:
            rows = self.conn.execute("SELECT * FROM schedules ORDER BY next_run_at").fetchall()
        return [_row_to_schedule(r) for r in rows]

    def delete_schedule(self, schedule_id: str) -> bool:
        with self.conn:
            cur = self.conn.execute("DELETE FROM schedules WHERE id=?", (schedule_id,))
        return cur.rowcount == 1

    def fire_schedule(self, schedule: RecurringSchedule, job: Job, *, next_run_at: float,
                      complete_retention: Retention, fail_retention: Retention) -> bool:
        """Advance the schedule and insert its job atomically; False if someone else fired it."""
        conn = self.conn
        try:
            with conn:
                cur = conn.execute(
                    "UPDATE schedules SET next_run_at=?, last_run_at=? WHERE id=? AND next_run_at=?",
                    (next_run_at, job.created_at, schedule.id, schedule.next_run_at),
                )
                if cur.rowcount != 1:
                    return False
                self._insert_in_tx(conn, job, complete_retention, fail_retention)
        except sqlite3.IntegrityError:
            raise DuplicateJobError(job.id)
        return True

    def _insert_in_tx(self, conn, job, complete_retention, fail_retention):
        retention = {
            "complete": [complete_retention.age_s, complete_retention.count],
            "fail": [fail_retention.age_s, fail_retention.count],
        }
        cur = conn.execute(
            """INSERT INTO jobs
               (id, queue, name, payload, state, priority, attempts_made, attempts_limit,
                backoff_type, backoff_delay_ms, timeout_ms, retention, created_at, scheduled_at)
               VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?)""",
            (job.id, job.queue_name, job.name, _dump(job.payload), job.state, int(job.priority),
             int(job.attempts_limit), job.backoff.type, int(job.backoff.base_delay_ms),
             job.timeout_ms, _dump(retention), job.created_at, job.scheduled_at),
        )
        job.seq = cur.lastrowid

    # ---------- Config ----------
    def get_config(self) -> Dict[str, str]:
        cur = self.conn.execute("SELECT key, value FROM config")
        return {r["key"]: r["value"] for r in cur.fetchall()}

    def set_config(self, key: str, value: str):
        if key not in ALLOWED_CONFIG_KEYS:
            raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
        with self.conn:
            self.conn.execute(
                "INSERT INTO config(key,value) VALUES(?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, str(value)),
            )
