import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG, db_path

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    queue TEXT NOT NULL,
    name TEXT NOT NULL,
    payload TEXT NOT NULL,
    state TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    attempts_made INTEGER NOT NULL DEFAULT 0,
    attempts_limit INTEGER NOT NULL,
    backoff_type TEXT NOT NULL,
    backoff_delay_ms INTEGER NOT NULL,
    timeout_ms INTEGER,
    retention TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    scheduled_at REAL NOT NULL,
    processed_at REAL,
    finished_at REAL,
    result TEXT,
    failure_reason TEXT,
    lock_token TEXT,
    lock_expires_at REAL,
    stalled_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_jobs_pending ON jobs(queue, state, priority, scheduled_at, seq);
CREATE INDEX IF NOT EXISTS idx_jobs_history ON jobs(queue, state, finished_at);

CREATE TABLE IF NOT EXISTS schedules (
    id TEXT PRIMARY KEY,
    queue TEXT NOT NULL,
    job_name TEXT NOT NULL,
    cron TEXT NOT NULL,
    payload TEXT NOT NULL,
    options TEXT NOT NULL,
    next_run_at REAL NOT NULL,
    last_run_at REAL
);

CREATE TABLE IF NOT EXISTS queue_state (
    queue TEXT PRIMARY KEY,
    paused INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(path or db_path(), timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout=30000")
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    try:
        conn.executescript(SCHEMA)
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()
