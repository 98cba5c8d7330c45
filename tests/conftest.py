"""
Shared fixtures: isolated media/work dirs, an in-memory S3 client and a fake
ffmpeg/ffprobe pair so the pipeline runs without network or encoder binaries.
"""
import json
import subprocess
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from videos.notifier import ProgressNotifier
from videos.store import JobStore


def not_found(op: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "404", "Message": "Not Found"}, "ResponseMetadata": {"HTTPStatusCode": 404}}, op
    )


def server_error(op: str = "PutObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": "InternalError", "Message": "boom"}, "ResponseMetadata": {"HTTPStatusCode": 500}}, op
    )


class FakePaginator:
    def __init__(self, s3):
        self.s3 = s3

    def paginate(self, Bucket, Prefix=""):
        yield {
            "Contents": [
                {"Key": k, "Size": len(v)} for k, v in sorted(self.s3.objects.items()) if k.startswith(Prefix)
            ]
        }


class FakeS3:
    """In-memory stand-in for the boto3 client calls the pipeline makes."""

    def __init__(self):
        self.objects = {}
        self.content_types = {}
        self.upload_log = []
        self.failures = {}       # key suffix -> [exceptions raised on successive uploads]
        self.on_upload = None    # callback(key) after each stored object

    def upload_file(self, filename, bucket, key, ExtraArgs=None):
        for suffix, errors in self.failures.items():
            if key.endswith(suffix) and errors:
                raise errors.pop(0)
        self.objects[key] = Path(filename).read_bytes()
        self.content_types[key] = (ExtraArgs or {}).get("ContentType")
        self.upload_log.append(key)
        if self.on_upload:
            self.on_upload(key)

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise not_found("HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def download_file(self, bucket, key, filename):
        if key not in self.objects:
            raise not_found("GetObject")
        Path(filename).write_bytes(self.objects[key])

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)

    def delete_objects(self, Bucket, Delete):
        for obj in Delete["Objects"]:
            self.objects.pop(obj["Key"], None)

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakePaginator(self)

    def keys(self, prefix=""):
        return sorted(k for k in self.objects if k.startswith(prefix))


class FakeProcess:
    def __init__(self, encoder, cmd, returncode, stderr):
        self.encoder = encoder
        self.cmd = cmd
        self._rc = returncode
        self._stderr = stderr
        self.returncode = None
        self.killed = False
        self._polls = encoder.polls_before_exit

    def communicate(self, timeout=None):
        if self.killed:
            self.returncode = -9
            return None, b""
        if self._polls > 0:
            self._polls -= 1
            self._write_segments(partial=True)
            raise subprocess.TimeoutExpired(self.cmd, timeout)
        self._write_segments(partial=self._rc != 0)
        self.returncode = self._rc
        return None, self._stderr

    def kill(self):
        self.killed = True

    def _write_segments(self, partial):
        manifest = Path(self.cmd[-1])
        pattern = self.cmd[self.cmd.index("-hls_segment_filename") + 1]
        count = 1 if partial else self.encoder.segments
        for i in range(count):
            Path(pattern % i).write_bytes(b"\x47" * (188 * (i + 1)))
        if not partial:
            lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:3", "#EXT-X-MEDIA-SEQUENCE:0"]
            for i in range(count):
                lines += ["#EXTINF:3.000000,", Path(pattern % i).name]
            lines.append("#EXT-X-ENDLIST")
            manifest.write_text("\n".join(lines) + "\n", encoding="utf-8")


class FakeEncoder:
    """Replaces subprocess.Popen (ffmpeg) and subprocess.run (ffprobe)."""

    def __init__(self):
        self.segments = 4
        self.returncodes = []    # consumed per encode; default 0
        self.stderrs = []        # consumed alongside returncodes
        self.polls_before_exit = 0
        self.calls = []
        self.processes = []
        self.width, self.height, self.duration = 1280, 720, 12.0
        self.probe_stderr = None

    def popen(self, cmd, stdout=None, stderr=None):
        self.calls.append(list(cmd))
        rc = self.returncodes.pop(0) if self.returncodes else 0
        err = self.stderrs.pop(0) if self.stderrs else b""
        proc = FakeProcess(self, cmd, rc, err)
        self.processes.append(proc)
        return proc

    def run(self, cmd, stdout=None, stderr=None, timeout=None):
        if self.probe_stderr is not None:
            return subprocess.CompletedProcess(cmd, 1, b"", self.probe_stderr)
        payload = {
            "streams": [{"width": self.width, "height": self.height}],
            "format": {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "duration": str(self.duration)},
        }
        return subprocess.CompletedProcess(cmd, 0, json.dumps(payload).encode(), b"")


@pytest.fixture(autouse=True)
def pipeline_settings(settings, tmp_path):
    settings.MEDIA_ROOT = tmp_path / "media"
    settings.UPLOADS_ROOT = settings.MEDIA_ROOT / "uploads"
    settings.WORK_ROOT = tmp_path / "work"
    settings.S3_PUBLIC_DOMAIN = "https://pub.example.r2.dev"
    settings.S3_BUCKET = "test-bucket"
    settings.PIPELINE_MAX_ATTEMPTS = 3
    settings.PIPELINE_BACKOFF_SECONDS = 0
    settings.CANCEL_POLL_SECONDS = 0
    settings.CLAIM_LEASE_SECONDS = 120
    settings.METADATA_SUGGESTER = ""
    settings.CATEGORY_DEFAULT_LABEL = "general"
    return settings


@pytest.fixture
def fake_s3(monkeypatch):
    client = FakeS3()
    monkeypatch.setattr("videos.s3.get_s3_client", lambda: client)
    return client


@pytest.fixture
def encoder(monkeypatch):
    enc = FakeEncoder()
    monkeypatch.setattr("videos.transcoder.subprocess.Popen", enc.popen)
    monkeypatch.setattr("videos.transcoder.subprocess.run", enc.run)
    return enc


@pytest.fixture
def notifier():
    return ProgressNotifier()


@pytest.fixture
def store(notifier):
    return JobStore(notifier=notifier)


@pytest.fixture
def make_source(pipeline_settings):
    def _make(name="clip.mp4", data=b"raw-video-bytes"):
        path = Path(pipeline_settings.UPLOADS_ROOT) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path
    return _make


@pytest.fixture
def make_job(store, make_source):
    def _make(filename="clip.mp4", category="horror_attacks", crop_bottom_px=0, aspect_variant="WIDE"):
        path = make_source(filename)
        return store.create(
            filename=filename,
            source_ref=f"uploads/{filename}",
            original_size_bytes=path.stat().st_size,
            category=category,
            crop_bottom_px=crop_bottom_px,
            aspect_variant=aspect_variant,
        )
    return _make
