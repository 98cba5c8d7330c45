"""
Publishes a finished HLS directory to object storage.

Layout: videos/{folder_label}/{job_id}/{seg_NNN.ts, index.m3u8}

Segments go up first and the playlist last, so any reader that can see a
job's playlist can also fetch every segment it references. Only known HLS
output types are ever uploaded; the raw source never leaves the host.
"""
import logging
import time
from pathlib import Path

from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from . import s3
from .errors import FatalError, PhaseTimeout, UploadError
from .transcoder import MANIFEST_NAME

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
}

STORAGE_ERRORS = (ClientError, BotoCoreError, S3UploadFailedError)


def job_prefix(folder_label: str, job_id) -> str:
    return f"videos/{folder_label}/{job_id}"


class Uploader:
    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = s3.get_s3_client()
        return self._client

    def publish(
        self,
        local_dir,
        job_id,
        folder_label: str,
        *,
        raw_extension: str | None = None,
        confirmed: set | None = None,
        heartbeat=None,
        on_progress=None,
        timeout: float | None = None,
    ) -> str:
        """
        Upload every segment, then the playlist; return the public playlist URL.

        Keys in ``confirmed`` are skipped and newly stored keys are added to it, so a
        retried publish never re-uploads objects that already made it.
        on_progress(done, total) is reported per segment.
        """
        local_dir = Path(local_dir)
        confirmed = confirmed if confirmed is not None else set()
        raw_extension = (raw_extension or "").lower()
        if raw_extension in CONTENT_TYPES:
            raise FatalError(f"Source extension '{raw_extension}' collides with published output")

        manifest = local_dir / MANIFEST_NAME
        if not manifest.is_file():
            raise FatalError("Nothing to publish: playlist is missing")

        segments = []
        for path in sorted(local_dir.iterdir()):
            if not path.is_file() or path == manifest:
                continue
            if path.suffix.lower() not in CONTENT_TYPES:
                logger.warning("Not publishing %s: not an HLS output file", path.name)
                continue
            segments.append(path)

        prefix = job_prefix(folder_label, job_id)
        deadline = time.monotonic() + timeout if timeout else None
        total = len(segments)
        for done, path in enumerate(segments, start=1):
            self._checkpoint(heartbeat, deadline, timeout)
            self._put(path, f"{prefix}/{path.name}", confirmed)
            if on_progress:
                on_progress(done, total)

        self._checkpoint(heartbeat, deadline, timeout)
        manifest_key = f"{prefix}/{MANIFEST_NAME}"
        self._put(manifest, manifest_key, confirmed)
        try:
            visible = s3.object_exists(manifest_key, client=self.client)
        except STORAGE_ERRORS as e:
            raise self._wrap(e, MANIFEST_NAME)
        if not visible:
            confirmed.discard(manifest_key)
            raise UploadError("Playlist not visible after upload")

        logger.info("Published %d segment(s) + playlist under %s", total, prefix)
        return s3.public_url(manifest_key)

    def remove(self, job_id, folder_label: str) -> int:
        """Delete everything under the job's prefix (partial or published)."""
        return s3.delete_prefix(f"{job_prefix(folder_label, job_id)}/", client=self.client)

    def _put(self, path: Path, key: str, confirmed: set):
        if key in confirmed:
            return
        try:
            s3.upload_file(path, key, content_type=CONTENT_TYPES[path.suffix.lower()], client=self.client)
        except STORAGE_ERRORS as e:
            raise self._wrap(e, path.name)
        confirmed.add(key)

    @staticmethod
    def _wrap(exc, name: str):
        logger.warning("Storage error on %s: %s", name, exc)
        if s3.is_transient(exc):
            return UploadError(f"Upload of {name} failed", diagnostic=str(exc))
        return FatalError(f"Storage rejected {name}", diagnostic=str(exc))

    @staticmethod
    def _checkpoint(heartbeat, deadline, timeout):
        if heartbeat:
            heartbeat()
        if deadline and time.monotonic() > deadline:
            raise PhaseTimeout(f"Upload exceeded {int(timeout)}s")
