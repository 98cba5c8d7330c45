"""
Drives one job through PENDING -> PROCESSING_TRANSCODE -> UPLOADING -> PUBLISHED
(or ERROR), committing every status and progress change through the Job
Store's compare-and-swap and mirroring it to the progress notifier.

Progress bands: 0-50 transcode, 50-90 segment upload, 90-100 playlist upload
and final commit. Transient failures are retried per phase with exponential
backoff; only the terminal outcome is ever visible to observers.
"""
import logging
import time
from pathlib import Path
from uuid import uuid4

from botocore.exceptions import BotoCoreError, ClientError
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from . import s3
from .categories import resolve
from .errors import (
    AlreadyClaimed,
    ClaimLost,
    Conflict,
    JobCancelled,
    JobNotFound,
    PhaseTimeout,
    PipelineError,
    TransientError,
    ValidationFailed,
)
from .metadata import get_suggester, suggest_metadata
from .models import Job
from .notifier import ProgressEvent, notifier as default_notifier
from .store import JobStore
from .transcoder import Transcoder, expected_segment_count, validate_source
from .uploader import Uploader
from .utils import job_work_dir, remove_source, remove_stale_work_dirs, remove_work_dir, stage_source

logger = logging.getLogger(__name__)

S = Job.Status

TRANSCODE_BAND = (0, 50)
UPLOAD_BAND = (50, 90)


class Orchestrator:
    def __init__(
        self,
        worker_token: str,
        *,
        store: JobStore | None = None,
        transcoder: Transcoder | None = None,
        uploader: Uploader | None = None,
        notifier=None,
        suggester=None,
        sleep=time.sleep,
    ):
        self.token = worker_token
        self.notifier = notifier or default_notifier
        self.store = store or JobStore(notifier=self.notifier)
        self.transcoder = transcoder or Transcoder()
        self.uploader = uploader or Uploader()
        self.suggester = suggester if suggester is not None else get_suggester()
        self._sleep = sleep

        self.job: Job | None = None
        self.work_dir: Path | None = None
        self._source: tuple[Path, object] | None = None
        self._last_beat = 0.0

    # ---------- entry point ----------
    def process(self, job_id) -> Job | None:
        """
        Validate, claim and drive one job to a terminal state.

        Returns the final Job, or None when the job was not ours to finish
        (claimed elsewhere, deleted, claim lost, or source temporarily unavailable).
        """
        try:
            self.job = self.store.get(job_id)
        except JobNotFound:
            return None
        if self.job.is_terminal:
            return None

        self.work_dir = job_work_dir(self.job.id, uuid4().hex[:8])
        self._source = None
        self._last_beat = 0.0
        try:
            return self._process()
        finally:
            remove_work_dir(self.work_dir)

    def _process(self) -> Job | None:
        job_id = self.job.id
        if self.job.status == S.PENDING:
            try:
                self._prepare_source()
            except ValidationFailed as e:
                return self._reject(e)
            except TransientError as e:
                logger.warning("Job %s: source not reachable yet, leaving PENDING: %s", job_id, e.summary)
                return None
            except PipelineError as e:
                # host-level problem (e.g. missing ffprobe), not the job's fault
                logger.error("Job %s: cannot validate on this host: %s %s", job_id, e.summary, e.diagnostic)
                return None

        try:
            self.job = self.store.claim(job_id, self.token)
        except (AlreadyClaimed, JobNotFound) as e:
            logger.info("Job %s skipped by %s: %s", job_id, self.token, e)
            return None
        # anything else under this job id belongs to a run that can no longer write
        remove_stale_work_dirs(job_id, keep=self.work_dir)
        self._emit()

        try:
            self._drive()
        except JobCancelled:
            self._cancel()
            return None
        except ClaimLost as e:
            logger.warning("Job %s: %s; discarding local work", job_id, e)
            return None
        except SoftTimeLimitExceeded:
            return self._fail(PhaseTimeout("Processing exceeded its overall time limit"))
        except PipelineError as e:
            return self._fail(e)
        except Exception as e:
            logger.exception("Job %s: unexpected error", job_id)
            self._fail(PipelineError("Unexpected processing error", diagnostic=repr(e)))
            raise
        return self.job

    # ---------- phases ----------
    def _drive(self):
        job = self.job
        source, info = self._prepare_source()
        hls_dir = self.work_dir / "hls"

        segment_set = self._with_retries(
            "transcode",
            lambda: self.transcoder.transcode(
                source,
                hls_dir,
                job.crop_bottom_px,
                heartbeat=self._heartbeat,
                on_progress=self._transcode_progress,
                timeout=settings.TRANSCODE_TIMEOUT_SECONDS,
                expected_segments=expected_segment_count(info.duration),
            ),
        )

        # a job taken over mid-upload re-encodes silently; its size is already recorded
        if self.job.status == S.PROCESSING_TRANSCODE:
            self._commit(
                S.UPLOADING,
                progress=UPLOAD_BAND[0],
                compressed_size_bytes=segment_set.total_bytes,
                metadata=suggest_metadata(job.filename, self.suggester),
            )

        folder = resolve(job.category)
        confirmed: set = set()
        url = self._with_retries(
            "upload",
            lambda: self.uploader.publish(
                hls_dir,
                job.id,
                folder,
                raw_extension=Path(job.source_ref or job.filename).suffix,
                confirmed=confirmed,
                heartbeat=self._heartbeat,
                on_progress=self._upload_progress,
                timeout=settings.UPLOAD_TIMEOUT_SECONDS,
            ),
        )

        source_ref = self.job.source_ref
        self._commit(S.PUBLISHED, progress=100, published_url=url, source_ref="")
        logger.info("Job %s published: %s", job.id, url)
        self._discard_source(source_ref)

    def _prepare_source(self):
        if self._source is None:
            try:
                path, _ = stage_source(self.job.source_ref, self.work_dir)
            except ClientError as e:
                if s3.is_transient(e):
                    raise TransientError("Source download failed", diagnostic=str(e))
                raise ValidationFailed("Source file is missing", diagnostic=str(e))
            except BotoCoreError as e:
                raise TransientError("Source download failed", diagnostic=str(e))
            self._source = (path, validate_source(path, self.job.crop_bottom_px))
        return self._source

    def _with_retries(self, phase: str, fn):
        attempts = settings.PIPELINE_MAX_ATTEMPTS
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=settings.PIPELINE_BACKOFF_SECONDS,
                max=settings.PIPELINE_BACKOFF_MAX_SECONDS,
            ),
            retry=retry_if_exception_type(TransientError),
            before_sleep=lambda rs: logger.warning(
                "Job %s: %s attempt %d/%d failed: %s",
                self.job.id, phase, rs.attempt_number, attempts, rs.outcome.exception(),
            ),
            sleep=self._backoff,
            reraise=True,
        )
        return retrying(fn)

    # ---------- progress & liveness ----------
    def _transcode_progress(self, fraction: float):
        lo, hi = TRANSCODE_BAND
        self._advance(min(hi - 1, lo + int((hi - lo) * fraction)))

    def _upload_progress(self, done: int, total: int):
        if total:
            lo, hi = UPLOAD_BAND
            self._advance(lo + int((hi - lo) * done / total))

    def _advance(self, percent: int):
        if percent > self.job.progress:
            self._commit(self.job.status, progress=percent)

    def _heartbeat(self):
        """Renew the lease; notices deletion (JobCancelled) or takeover (ClaimLost)."""
        now = time.monotonic()
        if self._last_beat and now - self._last_beat < settings.CANCEL_POLL_SECONDS:
            return
        self._last_beat = now
        try:
            self.store.renew_lease(self.job.id, self.token)
        except JobNotFound:
            raise JobCancelled()

    def _backoff(self, seconds: float):
        end = time.monotonic() + seconds
        while True:
            self._heartbeat()
            remaining = end - time.monotonic()
            if remaining <= 0:
                return
            self._sleep(min(remaining, max(settings.CANCEL_POLL_SECONDS, 0.1)))

    def _commit(self, new_status, **fields):
        try:
            self.job = self.store.update_status(
                self.job.id, self.job.status, new_status, worker_token=self.token, **fields
            )
        except JobNotFound:
            raise JobCancelled()
        self._emit()

    def _emit(self):
        self.notifier.publish(self.job.id, ProgressEvent.from_job(self.job))

    # ---------- terminal paths ----------
    def _reject(self, e: ValidationFailed) -> Job | None:
        """Fail an unclaimed PENDING job that can never be processed."""
        logger.warning("Job %s rejected: %s %s", self.job.id, e.summary, e.diagnostic)
        try:
            self.job = self.store.update_status(self.job.id, S.PENDING, S.ERROR, error_reason=e.summary)
        except (Conflict, JobNotFound):
            return None
        self._emit()
        self._discard_source(self.job.source_ref)
        return self.job

    def _fail(self, e: PipelineError) -> Job | None:
        logger.error("Job %s failed in %s: %s\n%s", self.job.id, self.job.status, e.summary, e.diagnostic)
        if self.job.status == S.UPLOADING:
            self._remove_remote()
        try:
            self.job = self.store.update_status(
                self.job.id, self.job.status, S.ERROR, worker_token=self.token, error_reason=e.summary
            )
        except ClaimLost:
            logger.warning("Job %s: claim lost before ERROR could be recorded", self.job.id)
            return None
        except JobNotFound:
            self._cancel()
            return None
        self._emit()
        self._discard_source(self.job.source_ref)
        return self.job

    def _cancel(self):
        logger.info("Job %s was deleted mid-flight; aborting and cleaning up", self.job.id)
        self._remove_remote()
        self._discard_source(self.job.source_ref)
        self.notifier.forget(self.job.id)

    def _remove_remote(self):
        try:
            self.uploader.remove(self.job.id, resolve(self.job.category))
        except (ClientError, BotoCoreError):
            logger.exception("Job %s: could not remove partial objects", self.job.id)

    def _discard_source(self, source_ref: str):
        try:
            remove_source(source_ref)
        except (ClientError, BotoCoreError, OSError):
            logger.exception("Job %s: could not remove raw source %s", self.job.id, source_ref)
