"""
In-process progress/status feed.

Events for one job are delivered in publish order, progress never goes
backwards, and exactly one terminal event is delivered per job. The last event
of each job is retained so late subscribers get a replay instead of hanging.
Terminal events are kept for NOTIFIER_TERMINAL_RETENTION_SECONDS and at most
NOTIFIER_MAX_TERMINAL_EVENTS of them, so a long-lived worker process does not
hold every finished job forever.
"""
import logging
import queue
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass

from django.conf import settings

from .models import Job

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    status: str
    progress: int
    compressed_size_bytes: int | None = None
    published_url: str | None = None
    error_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in Job.TERMINAL

    @classmethod
    def from_job(cls, job: Job) -> "ProgressEvent":
        return cls(
            job_id=str(job.id),
            status=job.status,
            progress=job.progress,
            compressed_size_bytes=job.compressed_size_bytes,
            published_url=job.published_url or None,
            error_reason=job.error_reason or None,
        )

    def as_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


class Subscription:
    def __init__(self, job_id: str):
        self.job_id = job_id
        self._queue: queue.Queue = queue.Queue()
        self.closed = False

    def _put(self, event: ProgressEvent):
        self._queue.put(event)

    def _close(self):
        if not self.closed:
            self.closed = True
            self._queue.put(_CLOSED)

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None once the stream is finished. Raises queue.Empty on timeout."""
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self._queue.put(_CLOSED)  # keep later get() calls returning None
            return None
        return item

    def __iter__(self):
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class ProgressNotifier:
    def __init__(self, retention_seconds: float | None = None, max_terminal: int | None = None, clock=time.monotonic):
        self._lock = threading.Lock()
        self._last: dict[str, ProgressEvent] = {}
        self._subscribers: dict[str, list[Subscription]] = {}
        # job_id -> time its terminal event was published, oldest first
        self._finished: OrderedDict[str, float] = OrderedDict()
        self._retention_seconds = retention_seconds
        self._max_terminal = max_terminal
        self._clock = clock

    @property
    def retention_seconds(self) -> float:
        if self._retention_seconds is None:
            return settings.NOTIFIER_TERMINAL_RETENTION_SECONDS
        return self._retention_seconds

    @property
    def max_terminal(self) -> int:
        if self._max_terminal is None:
            return settings.NOTIFIER_MAX_TERMINAL_EVENTS
        return self._max_terminal

    def publish(self, job_id, event: ProgressEvent) -> bool:
        job_id = str(job_id)
        with self._lock:
            self._prune()
            last = self._last.get(job_id)
            if last is not None and last.is_terminal:
                logger.warning("Dropping %s event for job %s: already terminal (%s)", event.status, job_id, last.status)
                return False
            if last is not None and event.progress < last.progress:
                event = ProgressEvent(**{**asdict(event), "progress": last.progress})
            self._last[job_id] = event
            subs = self._subscribers.get(job_id, [])
            for sub in subs:
                sub._put(event)
            if event.is_terminal:
                for sub in subs:
                    sub._close()
                self._subscribers.pop(job_id, None)
                self._finished[job_id] = self._clock()
                self._prune()
        return True

    def subscribe(self, job_id) -> Subscription:
        job_id = str(job_id)
        sub = Subscription(job_id)
        with self._lock:
            self._prune()
            last = self._last.get(job_id)
            if last is not None:
                sub._put(last)
                if last.is_terminal:
                    sub._close()
                    return sub
            self._subscribers.setdefault(job_id, []).append(sub)
        return sub

    def last_event(self, job_id) -> ProgressEvent | None:
        with self._lock:
            self._prune()
            return self._last.get(str(job_id))

    def forget(self, job_id) -> None:
        """Drop retained state once the job record itself is gone."""
        job_id = str(job_id)
        with self._lock:
            self._last.pop(job_id, None)
            self._finished.pop(job_id, None)
            for sub in self._subscribers.pop(job_id, []):
                sub._close()

    def _prune(self):
        """Release terminal events that are too old or beyond the retention cap. Caller holds the lock."""
        cutoff = self._clock() - self.retention_seconds
        limit = max(0, self.max_terminal)
        while self._finished:
            job_id, finished_at = next(iter(self._finished.items()))
            if finished_at > cutoff and len(self._finished) <= limit:
                break
            self._finished.popitem(last=False)
            self._last.pop(job_id, None)


notifier = ProgressNotifier()
