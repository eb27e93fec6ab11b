import os
import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG

DEFAULT_DB_FILE = "routectl.db"

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    run_at TEXT NOT NULL,
    last_error TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    picked_by TEXT,
    recurring INTEGER NOT NULL DEFAULT 0,
    slot TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_priority_run
    ON jobs(status, priority DESC, run_at ASC);
-- one waiting occurrence per recurring name; claim clears the slot so
-- retries and re-queued failures never collide with the next occurrence
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_recurring_slot
    ON jobs(slot) WHERE slot IS NOT NULL;

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS zones (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    center_lat REAL NOT NULL,
    center_lng REAL NOT NULL,
    radius_mi REAL NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    job_number TEXT NOT NULL,
    customer_name TEXT NOT NULL,
    customer_email TEXT NOT NULL,
    address TEXT NOT NULL,
    city TEXT NOT NULL,
    state TEXT NOT NULL,
    zip TEXT NOT NULL,
    lat REAL,
    lng REAL,
    status TEXT NOT NULL,
    zone_id TEXT,
    service_date TEXT,
    time_of_day TEXT,
    route_group_id TEXT,
    route_order INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS route_groups (
    id TEXT PRIMARY KEY,
    zone_id TEXT NOT NULL,
    date TEXT NOT NULL,
    time_of_day TEXT NOT NULL,
    house_count INTEGER NOT NULL DEFAULT 0,
    optimized_route TEXT,
    estimated_distance REAL,
    estimated_duration INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(zone_id, date, time_of_day)
);

CREATE TABLE IF NOT EXISTS email_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    booking_id TEXT NOT NULL,
    email_type TEXT NOT NULL,
    to_addr TEXT NOT NULL,
    subject TEXT NOT NULL,
    success INTEGER NOT NULL,
    error TEXT,
    sent_at TEXT NOT NULL
);
"""


def db_path(path: Optional[str] = None) -> str:
    return path or os.environ.get("ROUTECTL_DB", DEFAULT_DB_FILE)


def connect_db(path: Optional[str] = None):
    conn = sqlite3.connect(db_path(path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    with conn:
        # seed defaults
        for k, v in DEFAULT_CONFIG.items():
            conn.execute(
                "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
            )
    conn.close()
