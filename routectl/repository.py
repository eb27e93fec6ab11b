import json
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

from .utils import now_iso
from .models import Job, PENDING, PROCESSING, COMPLETED, FAILED, JOB_STATES
from .config import ALLOWED_CONFIG_KEYS, DEFAULT_CONFIG

MAX_ERROR_LENGTH = 500


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    cfg = dict(DEFAULT_CONFIG)
    cfg.update({r["key"]: r["value"] for r in cur.fetchall()})
    return cfg


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Jobs: insert / claim / complete / retry ----------
def insert_job(
    conn,
    *,
    name: str,
    payload: Dict[str, Any],
    priority: int,
    max_attempts: int,
    run_at: str,
    recurring: bool = False,
) -> Optional[Job]:
    """
    Insert a PENDING job and return it.

    Recurring inserts take the `slot` for their name and are
    `INSERT OR IGNORE`; None means another occurrence already holds it.
    """
    ts = now_iso()
    job_id = uuid.uuid4().hex
    verb = "INSERT OR IGNORE" if recurring else "INSERT"
    try:
        with conn:
            cur = conn.execute(
                f"""{verb} INTO jobs
                   (id, name, payload, status, priority, attempts, max_attempts,
                    run_at, created_at, updated_at, recurring, slot)
                   VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)""",
                (job_id, name, json.dumps(payload), PENDING, int(priority),
                 int(max_attempts), run_at, ts, ts, int(recurring),
                 name if recurring else None),
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while inserting job: {e}")
    if cur.rowcount != 1:
        return None
    return get_job(conn, job_id)


def pending_recurring(conn, name: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE slot=?", (name,)).fetchone()
    return Job.from_row(row) if row else None


def next_eligible_id(conn, now: str) -> Optional[str]:
    row = conn.execute(
        """SELECT id FROM jobs
           WHERE status=? AND run_at <= ?
           ORDER BY priority DESC, run_at ASC, created_at ASC
           LIMIT 1""",
        (PENDING, now),
    ).fetchone()
    return row["id"] if row else None


def claim(conn, job_id: str, worker_name: str) -> Optional[Job]:
    """PENDING -> PROCESSING for one job; None if another worker got there first."""
    now = now_iso()
    with conn:
        updated = conn.execute(
            """UPDATE jobs
               SET status=?, attempts=attempts+1, picked_by=?, updated_at=?, slot=NULL
               WHERE id=? AND status=?""",
            (PROCESSING, worker_name, now, job_id, PENDING),
        )
    if updated.rowcount != 1:
        return None
    return get_job(conn, job_id)


# Writes after a handler run only land while this claim still owns the
# row: status PROCESSING with the attempt count the claim produced.
_OWNED = f"WHERE id=? AND status='{PROCESSING}' AND attempts=?"


def complete(conn, job: Job) -> bool:
    now = now_iso()
    with conn:
        res = conn.execute(
            f"UPDATE jobs SET status=?, completed_at=?, updated_at=?, picked_by=NULL {_OWNED}",
            (COMPLETED, now, now, job.id, job.attempts),
        )
    return res.rowcount == 1


def schedule_retry(conn, job: Job, run_at: str, error: str) -> bool:
    with conn:
        res = conn.execute(
            f"""UPDATE jobs
               SET status=?, run_at=?, last_error=?, updated_at=?, picked_by=NULL
               {_OWNED}""",
            (PENDING, run_at, error[:MAX_ERROR_LENGTH], now_iso(), job.id, job.attempts),
        )
    return res.rowcount == 1


def fail(conn, job: Job, error: str) -> bool:
    with conn:
        res = conn.execute(
            f"UPDATE jobs SET status=?, last_error=?, updated_at=?, picked_by=NULL {_OWNED}",
            (FAILED, error[:MAX_ERROR_LENGTH], now_iso(), job.id, job.attempts),
        )
    return res.rowcount == 1


def requeue_stale(conn, older_than: str, error: str) -> List[Job]:
    """
    Release PROCESSING jobs whose claim is older than `older_than`.

    Jobs with attempts left go back to PENDING right away; the rest are
    FAILED. Returns the jobs as they were after the update.
    """
    now = now_iso()
    stale = conn.execute(
        "SELECT id FROM jobs WHERE status=? AND updated_at < ?",
        (PROCESSING, older_than),
    ).fetchall()

    released = []
    for row in stale:
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET status=CASE WHEN attempts >= max_attempts THEN ? ELSE ? END,
                       run_at=?, last_error=?, updated_at=?, picked_by=NULL
                   WHERE id=? AND status=? AND updated_at < ?""",
                (FAILED, PENDING, now, error[:MAX_ERROR_LENGTH], now,
                 row["id"], PROCESSING, older_than),
            )
        if res.rowcount == 1:
            released.append(get_job(conn, row["id"]))
    return released


# ---------- Queries ----------
def get_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(conn, status: Optional[str] = None, name: Optional[str] = None) -> List[Job]:
    sql = "SELECT * FROM jobs"
    clauses, params = [], []
    if status:
        clauses.append("status=?")
        params.append(status)
    if name:
        clauses.append("name=?")
        params.append(name)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY priority DESC, run_at ASC, created_at ASC"
    return [Job.from_row(r) for r in conn.execute(sql, params).fetchall()]


def counts(conn) -> Dict[str, int]:
    out = {}
    for s in JOB_STATES:
        out[s.lower()] = conn.execute(
            "SELECT COUNT(1) AS c FROM jobs WHERE status=?",
            (s,),
        ).fetchone()["c"]
    return out


# ---------- Failed jobs ----------
def failed_list(conn) -> List[Job]:
    return [
        Job.from_row(r)
        for r in conn.execute(
            "SELECT * FROM jobs WHERE status=? ORDER BY updated_at DESC", (FAILED,)
        ).fetchall()
    ]


def retry_failed(conn, job_id: str) -> bool:
    if not job_id or not job_id.strip():
        raise ValueError("Job id cannot be empty.")
    now = now_iso()
    try:
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET status=?, attempts=0, run_at=?, last_error=NULL, updated_at=?, picked_by=NULL
                   WHERE id=? AND status=?""",
                (PENDING, now, now, job_id, FAILED),
            )
        return res.rowcount == 1
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error during failed-job retry: {e}")
