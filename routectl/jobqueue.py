"""
Durable job queue on top of the `jobs` table.

A JobQueue wraps one SQLite connection; each worker thread owns its own
queue and connection and they coordinate only through the conditional
claim in `repository.claim`.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from . import repository
from .config import RECURRING_PRIORITY
from .cron import next_fire_time, parse_daily_cron, get_zone
from .models import FAILED, Job
from .utils import now_iso, to_iso, iso_from_ms_from_now

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Any]


class HandlerRegistry:
    """Task name -> handler. A name can only be registered once."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, name: str, handler: Handler):
        key = str(getattr(name, "value", name))
        if not key.strip():
            raise ValueError("Handler name cannot be empty.")
        if key in self._handlers:
            raise ValueError(f"Handler already registered for '{key}'")
        self._handlers[key] = handler

    def get(self, name: str) -> Optional[Handler]:
        return self._handlers.get(name)

    def __contains__(self, name) -> bool:
        return str(getattr(name, "value", name)) in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


def backoff_ms(attempts: int, base_ms: int = 1000, cap_ms: int = 300000) -> int:
    """Delay before the next try after `attempts` failed attempts."""
    return min(base_ms * 2 ** max(attempts - 1, 0), cap_ms)


class JobQueue:
    def __init__(self, conn, registry: Optional[HandlerRegistry] = None, worker_name: str = "worker"):
        self.conn = conn
        self.registry = registry if registry is not None else HandlerRegistry()
        self.worker_name = worker_name
        cfg = repository.get_config(conn)
        self.backoff_base_ms = int(cfg["backoff_base_ms"])
        self.backoff_cap_ms = int(cfg["backoff_cap_ms"])
        self.default_max_attempts = int(cfg["max_attempts_default"])
        self.processing_timeout_ms = int(cfg["processing_timeout_ms"])

    def register_handler(self, name: str, handler: Handler):
        self.registry.register(name, handler)

    # ---------- Scheduling ----------
    def schedule(
        self,
        name: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        run_at: Optional[datetime] = None,
        priority: int = 0,
        max_attempts: Optional[int] = None,
    ) -> Job:
        name = str(getattr(name, "value", name))
        if not name or not name.strip():
            raise ValueError("Job name cannot be empty.")
        mret = self.default_max_attempts if max_attempts is None else int(max_attempts)
        if mret < 1:
            raise ValueError("max_attempts must be >= 1")

        return repository.insert_job(
            self.conn,
            name=name,
            payload=payload or {},
            priority=priority,
            max_attempts=mret,
            run_at=to_iso(run_at) if run_at else now_iso(),
        )

    def schedule_recurring(self, name: str, cron_expr: str, *, timezone: str = "UTC", payload=None) -> Job:
        """
        Make sure one pending occurrence of a daily recurring job exists.

        Idempotent across workers: the insert is ignored when a pending
        occurrence is already stored, and that occurrence is returned.
        """
        name = str(getattr(name, "value", name))
        # reject bad input before touching the store
        parse_daily_cron(cron_expr)
        get_zone(timezone)

        existing = repository.pending_recurring(self.conn, name)
        if existing:
            return existing

        body = dict(payload or {})
        body.update({"recurring": True, "cron": cron_expr, "timezone": timezone})
        fire_at = next_fire_time(cron_expr, timezone)
        job = repository.insert_job(
            self.conn,
            name=name,
            payload=body,
            priority=RECURRING_PRIORITY,
            max_attempts=self.default_max_attempts,
            run_at=to_iso(fire_at),
            recurring=True,
        )
        if job is None:
            # lost the insert race to another worker
            job = repository.pending_recurring(self.conn, name)
        else:
            logger.info(f"[{self.worker_name}] Scheduled recurring {name} for {job.run_at}")
        return job

    # ---------- Processing ----------
    def process_one(self) -> bool:
        """
        Claim and run the best eligible job.

        Returns False only when nothing was eligible; a lost claim race
        still returns True so callers keep draining.
        """
        job_id = repository.next_eligible_id(self.conn, now_iso())
        if not job_id:
            return False

        job = repository.claim(self.conn, job_id, self.worker_name)
        if not job:
            logger.debug(f"[{self.worker_name}] Job {job_id} claimed by another worker")
            return True

        handler = self.registry.get(job.name)
        if handler is None:
            error = f"No handler registered for job '{job.name}'"
            logger.error(f"[{self.worker_name}] {error} ({job.id})")
            self._settle(job, lambda: repository.fail(self.conn, job, error))
            return True

        logger.info(f"[{self.worker_name}] Executing job: {job.id} -> {job.name} (attempt {job.attempts}/{job.max_attempts})")
        try:
            handler(job.payload)
        except Exception as e:
            self._settle(job, lambda: self._handle_failure(job, e))
            return True

        self._settle(job, lambda: self._handle_success(job))
        return True

    def drain(self, should_stop: Optional[Callable[[], bool]] = None) -> int:
        """Run process_one until the queue has no eligible work. Returns iterations."""
        n = 0
        while not (should_stop and should_stop()) and self.process_one():
            n += 1
        return n

    def requeue_stale(self, timeout_ms: Optional[int] = None) -> List[Job]:
        """
        Release jobs left in PROCESSING longer than `timeout_ms`, e.g. by a
        worker that died mid-handler. Recurring jobs that end up FAILED
        still schedule their next occurrence.
        """
        timeout_ms = self.processing_timeout_ms if timeout_ms is None else int(timeout_ms)
        cutoff = iso_from_ms_from_now(-timeout_ms)
        error = f"Timed out after {timeout_ms}ms in PROCESSING"
        released = repository.requeue_stale(self.conn, cutoff, error)
        for job in released:
            logger.warning(f"[{self.worker_name}] Released stale job {job.id} ({job.name}) -> {job.status}")
            if job.status == FAILED and job.payload.get("cron"):
                self._reschedule(job)
        return released

    def _settle(self, job: Job, write: Callable[[], Any]):
        """Run the post-handler state write; a store error marks the job FAILED."""
        try:
            if write() is False:
                logger.warning(f"[{self.worker_name}] Job {job.id} was released before it finished")
        except (sqlite3.Error, RuntimeError) as e:
            logger.exception(f"[{self.worker_name}] Could not record outcome of job {job.id}: {e}")
            try:
                repository.fail(self.conn, job, f"Store error recording outcome: {e}")
            except sqlite3.Error:
                # left in PROCESSING; requeue_stale releases it later
                logger.exception(f"[{self.worker_name}] Job {job.id} stays PROCESSING")

    def _handle_success(self, job: Job) -> bool:
        if not repository.complete(self.conn, job):
            return False
        logger.info(f"[{self.worker_name}] Job {job.id} completed successfully.")
        if job.payload.get("recurring") and job.payload.get("cron"):
            self._reschedule(job)
        return True

    def _handle_failure(self, job: Job, exc: Exception) -> bool:
        error = str(exc) or type(exc).__name__
        if job.attempts < job.max_attempts:
            delay = backoff_ms(job.attempts, self.backoff_base_ms, self.backoff_cap_ms)
            logger.warning(
                f"[{self.worker_name}] Job {job.id} failed ({error}); retry in {delay}ms"
            )
            return repository.schedule_retry(self.conn, job, iso_from_ms_from_now(delay), error)

        logger.error(
            f"[{self.worker_name}] Job {job.id} failed permanently after {job.attempts} attempts: {error}"
        )
        if not repository.fail(self.conn, job, error):
            return False
        # a failed occurrence must not end the series
        if job.payload.get("recurring") and job.payload.get("cron"):
            self._reschedule(job)
        return True

    def _reschedule(self, job: Job):
        payload = {k: v for k, v in job.payload.items() if k not in ("recurring", "cron", "timezone")}
        try:
            self.schedule_recurring(
                job.name,
                job.payload["cron"],
                timezone=job.payload.get("timezone", "UTC"),
                payload=payload,
            )
        except ValueError as e:
            logger.error(f"[{self.worker_name}] Could not reschedule recurring {job.name}: {e}")
