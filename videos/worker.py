import logging
import os
import signal
import socket
import threading

from django.conf import settings
from django.db import close_old_connections, connection

from .orchestrator import Orchestrator
from .store import JobStore

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers(stop: threading.Event = _stop):
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping workers", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not on the main thread
            logger.debug("Cannot install handler for signal %s", sig)


def worker_token(name: str) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{name}"


def run_once(orchestrator: Orchestrator, store: JobStore, batch: int = 5) -> bool:
    """Try claimable jobs in age order; drive the first one we win. True if a job was handled."""
    for job_id in store.claimable_ids(limit=batch):
        if orchestrator.process(job_id) is not None:
            return True
    return False


def worker_loop(name: str, stop: threading.Event = _stop, poll_seconds: float | None = None):
    poll = settings.WORKER_POLL_SECONDS if poll_seconds is None else poll_seconds
    store = JobStore()
    orchestrator = Orchestrator(worker_token(name), store=store)
    logger.info("[%s] Worker started", name)
    try:
        while not stop.is_set():
            close_old_connections()
            try:
                if not run_once(orchestrator, store):
                    stop.wait(poll)
            except Exception:
                logger.exception("[%s] Unexpected error", name)
                stop.wait(1)
    finally:
        connection.close()
        logger.info("[%s] Worker stopped.", name)


def start_workers(count: int, stop: threading.Event = _stop):
    """Start `count` worker threads; each processes one job at a time."""
    setup_signal_handlers(stop)
    threads = []

    for i in range(count):
        t = threading.Thread(target=worker_loop, args=(f"worker-{i + 1}", stop), name=f"worker-{i + 1}", daemon=True)
        t.start()
        threads.append(t)
        logger.info("Started %s", t.name)

    try:
        while any(t.is_alive() for t in threads):
            stop.wait(0.5)
    finally:
        stop.set()
        for t in threads:
            t.join()
        logger.info("All workers stopped gracefully.")
