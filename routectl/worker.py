import logging
import signal
import threading
import time
from typing import Callable, List, Optional

from .db import connect_db
from .jobqueue import JobQueue
from .repository import get_config

logger = logging.getLogger(__name__)

Setup = Callable[[JobQueue], None]


class Worker:
    """
    Polling loop around one JobQueue.

    The loop drains every eligible job, then waits `poll_interval_ms`
    on an Event, so stop() wakes it immediately instead of leaving a
    sleeping timer behind.
    """

    def __init__(
        self,
        name: str,
        setup: Optional[Setup] = None,
        db_path: Optional[str] = None,
        poll_interval_ms: Optional[int] = None,
    ):
        self.name = name
        self.setup = setup
        self.db_path = db_path
        self.poll_interval_ms = poll_interval_ms
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_alive():
            raise RuntimeError(f"Worker {self.name} already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"[System] Started {self.name}")

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def run_forever(self, poll_interval_ms: Optional[int] = None):
        conn = connect_db(self.db_path)
        try:
            queue = JobQueue(conn, worker_name=self.name)
            if self.setup:
                self.setup(queue)

            interval = poll_interval_ms or self.poll_interval_ms
            if not interval:
                try:
                    interval = int(get_config(conn)["poll_interval_ms"])
                except (KeyError, ValueError) as e:
                    logger.warning(f"[{self.name}] Could not load poll interval ({e}); using 2000ms.")
                    interval = 2000

            while not self._stop.is_set():
                try:
                    queue.requeue_stale()
                    queue.drain(self._stop.is_set)
                except Exception as e:
                    logger.exception(f"[{self.name}] Unexpected error: {e}")
                self._stop.wait(interval / 1000)
        finally:
            conn.close()
            logger.info(f"[{self.name}] Worker stopped.")


def setup_signal_handlers(workers: List[Worker]):
    def _handler(signum, frame):
        logger.info(f"[Main] Received signal {signum}. Stopping workers")
        for w in workers:
            w.stop(timeout=0)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not on the main thread
            logger.warning(f"[Main] Could not install handler for signal {sig}")


def start_workers(
    count: int,
    setup: Optional[Setup] = None,
    db_path: Optional[str] = None,
    poll_interval_ms: Optional[int] = None,
) -> List[Worker]:
    """Start `count` worker threads and block until all of them stop."""
    workers = [
        Worker(f"worker-{i+1}", setup=setup, db_path=db_path, poll_interval_ms=poll_interval_ms)
        for i in range(count)
    ]
    setup_signal_handlers(workers)

    for w in workers:
        w.start()

    try:
        while any(w.is_alive() for w in workers):
            time.sleep(0.5)
    finally:
        for w in workers:
            w.stop()
        logger.info("[System] All workers stopped gracefully.")
    return workers
