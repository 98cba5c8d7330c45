import logging
import os
import shutil
import time
from pathlib import Path
from uuid import uuid4

from django.conf import settings

from . import s3

logger = logging.getLogger(__name__)


def save_uploaded_file(djangofile) -> str:
    """Save to UPLOADS_ROOT/<uuid>_<name> and return the path relative to MEDIA_ROOT."""
    uploads_dir = Path(settings.UPLOADS_ROOT)
    uploads_dir.mkdir(parents=True, exist_ok=True)
    safe_name = f"{uuid4().hex}_{os.path.basename(djangofile.name)}"
    dest = uploads_dir / safe_name
    with open(dest, "wb") as f:
        for chunk in djangofile.chunks():
            f.write(chunk)
    return str(dest.relative_to(settings.MEDIA_ROOT))


def is_supported_source(filename: str) -> bool:
    return Path(filename).suffix.lower() in settings.SUPPORTED_SOURCE_EXTENSIONS


def job_work_dir(job_id, run_id: str) -> Path:
    """Private working dir for one worker run on one job."""
    return Path(settings.WORK_ROOT) / f"{job_id}-{run_id}"


def _local_source(source_ref: str) -> Path:
    return Path(settings.MEDIA_ROOT) / source_ref


def stage_source(source_ref: str, work_dir) -> tuple[Path, bool]:
    """
    Return (local_path, is_staged). A source under MEDIA_ROOT is used in place;
    otherwise source_ref is a bucket staging key and is downloaded into work_dir.
    """
    local_candidate = _local_source(source_ref)
    if local_candidate.exists():
        return local_candidate, False
    dest = Path(work_dir) / f"source{Path(source_ref).suffix.lower()}"
    if not dest.exists():
        s3.download_file(source_ref, dest)
    return dest, True


def remove_source(source_ref: str):
    """Delete the raw asset wherever it lives (local upload or staged object)."""
    if not source_ref:
        return
    local = _local_source(source_ref)
    if local.exists():
        local.unlink(missing_ok=True)
        logger.info("Removed raw source %s", local)
    else:
        s3.delete_object(source_ref)
        logger.info("Removed staged source object %s", source_ref)


def remove_work_dir(work_dir):
    shutil.rmtree(work_dir, ignore_errors=True)


def _job_id_of(work_dir: Path) -> str:
    return work_dir.name.rsplit("-", 1)[0]


def remove_stale_work_dirs(job_id, keep=None) -> int:
    """Remove dirs left by earlier runs of job_id (e.g. a worker killed mid-encode)."""
    root = Path(settings.WORK_ROOT)
    if not root.is_dir():
        return 0
    removed = 0
    for path in root.glob(f"{job_id}-*"):
        if keep is not None and path == Path(keep):
            continue
        if path.is_dir() and _job_id_of(path) == str(job_id):
            shutil.rmtree(path, ignore_errors=True)
            removed += 1
    if removed:
        logger.info("Removed %d stale work dir(s) of job %s", removed, job_id)
    return removed


def remove_orphan_work_dirs(live_job_ids, min_age_seconds: float | None = None) -> int:
    """
    Remove work dirs whose job is finished or gone. live_job_ids: ids of non-terminal jobs.
    Dirs younger than min_age_seconds (default CLAIM_LEASE_SECONDS) are kept: their job may
    have been created after live_job_ids was read.
    """
    if min_age_seconds is None:
        min_age_seconds = settings.CLAIM_LEASE_SECONDS
    root = Path(settings.WORK_ROOT)
    if not root.is_dir():
        return 0
    live = {str(i) for i in live_job_ids}
    removed = 0
    for path in root.iterdir():
        if not path.is_dir() or _job_id_of(path) in live:
            continue
        if time.time() - path.stat().st_mtime < min_age_seconds:
            continue
        shutil.rmtree(path, ignore_errors=True)
        removed += 1
    if removed:
        logger.info("Removed %d orphaned work dir(s)", removed)
    return removed
