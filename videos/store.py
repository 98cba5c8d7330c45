"""
Durable record of video jobs with optimistic claim semantics.

Every mutation is a single conditional UPDATE: the caller states the status
(and claim token) it last observed, and the write only lands if the row still
matches. A zero row count is turned into ``JobNotFound`` or ``Conflict``.
"""
import logging
from datetime import timedelta

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Case, F, Q, Value, When
from django.db.models.functions import Greatest
from django.utils import timezone

from .errors import AlreadyClaimed, ClaimLost, Conflict, InvalidTransition, JobNotFound
from .models import Job
from .notifier import notifier as default_notifier

logger = logging.getLogger(__name__)

S = Job.Status

TRANSITIONS = {
    S.PENDING: {S.PROCESSING_TRANSCODE, S.ERROR},
    S.PROCESSING_TRANSCODE: {S.PROCESSING_TRANSCODE, S.UPLOADING, S.ERROR},
    S.UPLOADING: {S.UPLOADING, S.PUBLISHED, S.ERROR},
    S.PUBLISHED: set(),
    S.ERROR: set(),
}

UPDATABLE_FIELDS = {"progress", "compressed_size_bytes", "published_url", "error_reason", "source_ref", "metadata"}


def _lease_deadline(now):
    return now + timedelta(seconds=settings.CLAIM_LEASE_SECONDS)


def _claimable(now) -> Q:
    return Q(status=S.PENDING) | Q(status__in=Job.ACTIVE, lease_expires_at__lt=now)


class JobStore:
    def __init__(self, notifier=None):
        self.notifier = notifier or default_notifier

    def create(self, **fields) -> str:
        fields.pop("status", None)
        if int(fields.get("crop_bottom_px", 0)) < 0:
            raise ValueError("crop_bottom_px must be >= 0")
        job = Job.objects.create(status=S.PENDING, progress=0, **fields)
        logger.info("Created job %s (%s, category=%s)", job.id, job.filename, job.category)
        return str(job.id)

    def get(self, job_id) -> Job:
        try:
            return Job.objects.get(pk=job_id)
        except (Job.DoesNotExist, ValidationError, ValueError):
            raise JobNotFound(f"Job {job_id} not found")

    def claimable_ids(self, limit: int = 10) -> list[str]:
        ids = (
            Job.objects.filter(_claimable(timezone.now()))
            .order_by("created_at")
            .values_list("id", flat=True)[:limit]
        )
        return [str(i) for i in ids]

    def open_ids(self) -> set[str]:
        """Ids of every job that has not reached a terminal status."""
        return {str(i) for i in Job.objects.exclude(status__in=Job.TERMINAL).values_list("id", flat=True)}

    def claim(self, job_id, worker_token: str) -> Job:
        """
        Take exclusive ownership of a job.

        PENDING jobs move to PROCESSING_TRANSCODE with progress 0. A non-terminal
        job whose lease has expired is taken over without a visible status change.
        """
        now = timezone.now()
        updated = Job.objects.filter(_claimable(now), pk=job_id).update(
            status=Case(
                When(status=S.PENDING, then=Value(S.PROCESSING_TRANSCODE)),
                default=F("status"),
                output_field=models.CharField(),
            ),
            progress=Case(
                When(status=S.PENDING, then=Value(0)),
                default=F("progress"),
                output_field=models.PositiveSmallIntegerField(),
            ),
            claimed_by=worker_token,
            lease_expires_at=_lease_deadline(now),
            version=F("version") + 1,
            updated_at=now,
        )
        if updated != 1:
            self._raise_missing_or(job_id, AlreadyClaimed(f"Job {job_id} is not claimable"))
        job = self.get(job_id)
        logger.info("Job %s claimed by %s (status=%s)", job_id, worker_token, job.status)
        return job

    def renew_lease(self, job_id, worker_token: str) -> None:
        now = timezone.now()
        updated = Job.objects.filter(pk=job_id, claimed_by=worker_token, status__in=Job.ACTIVE).update(
            lease_expires_at=_lease_deadline(now),
        )
        if updated != 1:
            self._raise_missing_or(job_id, ClaimLost(f"Worker {worker_token} no longer owns job {job_id}"))

    def update_status(self, job_id, expected_status, new_status, *, worker_token: str | None = None, **fields) -> Job:
        """
        Compare-and-swap a status change plus field updates.

        ``worker_token=None`` is only valid for unclaimed PENDING jobs (e.g. failing
        validation before a claim). Progress never decreases.
        """
        if new_status not in TRANSITIONS.get(expected_status, set()):
            raise InvalidTransition(f"{expected_status} -> {new_status} is not allowed")
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")
        if bool(fields.get("published_url")) != (new_status == S.PUBLISHED):
            raise InvalidTransition("published_url is set exactly when entering PUBLISHED")
        if bool(fields.get("error_reason")) != (new_status == S.ERROR):
            raise InvalidTransition("error_reason is set exactly when entering ERROR")

        now = timezone.now()
        cond = Q(pk=job_id, status=expected_status)
        cond &= Q(claimed_by=worker_token) if worker_token else Q(claimed_by="")

        values = dict(fields)
        if "progress" in values:
            percent = max(0, min(100, int(values["progress"])))
            values["progress"] = Greatest(
                F("progress"), Value(percent), output_field=models.PositiveSmallIntegerField()
            )
        if "compressed_size_bytes" in values:
            if not (expected_status == S.PROCESSING_TRANSCODE and new_status == S.UPLOADING):
                raise InvalidTransition("compressed_size_bytes is only set when transcode completes")
            cond &= Q(compressed_size_bytes__isnull=True)

        if new_status in Job.TERMINAL:
            values.update(claimed_by="", lease_expires_at=None)
        elif worker_token:
            values["lease_expires_at"] = _lease_deadline(now)

        updated = Job.objects.filter(cond).update(
            status=new_status, version=F("version") + 1, updated_at=now, **values,
        )
        if updated != 1:
            err = ClaimLost if worker_token else Conflict
            self._raise_missing_or(
                job_id, err(f"Job {job_id} no longer matches {expected_status} for {worker_token or 'unclaimed'}")
            )
        if expected_status != new_status:
            logger.info("Job %s: %s -> %s", job_id, expected_status, new_status)
        return self.get(job_id)

    def delete(self, job_id) -> None:
        try:
            deleted, _ = Job.objects.filter(pk=job_id).delete()
        except (ValidationError, ValueError):
            deleted = 0
        if not deleted:
            raise JobNotFound(f"Job {job_id} not found")
        self.notifier.forget(job_id)
        logger.info("Deleted job %s", job_id)

    def _raise_missing_or(self, job_id, exc):
        try:
            exists = Job.objects.filter(pk=job_id).exists()
        except (ValidationError, ValueError):
            exists = False
        if not exists:
            raise JobNotFound(f"Job {job_id} not found")
        raise exc
