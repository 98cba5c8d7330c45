import pytest
from botocore.exceptions import EndpointConnectionError

from videos.errors import FatalError, JobCancelled, UploadError
from videos.uploader import Uploader, job_prefix

from .conftest import server_error


@pytest.fixture
def hls_dir(tmp_path):
    d = tmp_path / "hls"
    d.mkdir()
    names = [f"seg_{i:03d}.ts" for i in range(3)]
    for n in names:
        (d / n).write_bytes(b"\x47" * 188)
    lines = ["#EXTM3U"] + [x for n in names for x in ("#EXTINF:3.0,", n)] + ["#EXT-X-ENDLIST"]
    (d / "index.m3u8").write_text("\n".join(lines) + "\n")
    return d


def test_publish_url_follows_path_convention(fake_s3, hls_dir):
    url = Uploader().publish(hls_dir, "demo-1", "هجمات_مرعبة")
    assert url == "https://pub.example.r2.dev/videos/هجمات_مرعبة/demo-1/index.m3u8"
    assert fake_s3.keys() == [
        "videos/هجمات_مرعبة/demo-1/index.m3u8",
        "videos/هجمات_مرعبة/demo-1/seg_000.ts",
        "videos/هجمات_مرعبة/demo-1/seg_001.ts",
        "videos/هجمات_مرعبة/demo-1/seg_002.ts",
    ]


def test_manifest_is_uploaded_last(fake_s3, hls_dir):
    seen_when_manifest_landed = []

    def on_upload(key):
        if key.endswith("index.m3u8"):
            seen_when_manifest_landed.extend(fake_s3.keys())

    fake_s3.on_upload = on_upload
    Uploader().publish(hls_dir, "j1", "shock")
    assert fake_s3.upload_log[-1] == "videos/shock/j1/index.m3u8"
    for seg in ("seg_000.ts", "seg_001.ts", "seg_002.ts"):
        assert f"videos/shock/j1/{seg}" in seen_when_manifest_landed


def test_content_types(fake_s3, hls_dir):
    Uploader().publish(hls_dir, "j1", "shock")
    assert fake_s3.content_types["videos/shock/j1/index.m3u8"] == "application/vnd.apple.mpegurl"
    assert fake_s3.content_types["videos/shock/j1/seg_000.ts"] == "video/MP2T"


def test_raw_source_is_never_uploaded(fake_s3, hls_dir):
    (hls_dir / "source.mp4").write_bytes(b"raw")
    Uploader().publish(hls_dir, "j1", "shock", raw_extension=".mp4")
    assert not any(k.endswith(".mp4") for k in fake_s3.objects)


def test_raw_extension_colliding_with_output_is_refused(fake_s3, hls_dir):
    with pytest.raises(FatalError):
        Uploader().publish(hls_dir, "j1", "shock", raw_extension=".ts")
    assert fake_s3.objects == {}


def test_progress_per_segment(fake_s3, hls_dir):
    calls = []
    Uploader().publish(hls_dir, "j1", "shock", on_progress=lambda d, t: calls.append((d, t)))
    assert calls == [(1, 3), (2, 3), (3, 3)]


def test_transient_failure_and_retry_skips_confirmed_objects(fake_s3, hls_dir):
    fake_s3.failures["seg_001.ts"] = [server_error()]
    confirmed = set()
    uploader = Uploader()
    with pytest.raises(UploadError):
        uploader.publish(hls_dir, "j1", "shock", confirmed=confirmed)
    assert "videos/shock/j1/index.m3u8" not in fake_s3.objects
    assert confirmed == {"videos/shock/j1/seg_000.ts"}

    uploader.publish(hls_dir, "j1", "shock", confirmed=confirmed)
    assert fake_s3.upload_log.count("videos/shock/j1/seg_000.ts") == 1
    assert fake_s3.upload_log[-1] == "videos/shock/j1/index.m3u8"


def test_network_errors_are_transient(fake_s3, hls_dir):
    fake_s3.failures["seg_000.ts"] = [EndpointConnectionError(endpoint_url="http://s3")]
    with pytest.raises(UploadError):
        Uploader().publish(hls_dir, "j1", "shock")


def test_access_denied_is_fatal(fake_s3, hls_dir):
    from botocore.exceptions import ClientError

    denied = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "no"}, "ResponseMetadata": {"HTTPStatusCode": 403}},
        "PutObject",
    )
    fake_s3.failures["seg_000.ts"] = [denied]
    with pytest.raises(FatalError):
        Uploader().publish(hls_dir, "j1", "shock")


def test_missing_manifest_is_fatal(fake_s3, hls_dir):
    (hls_dir / "index.m3u8").unlink()
    with pytest.raises(FatalError):
        Uploader().publish(hls_dir, "j1", "shock")


def test_heartbeat_cancels_between_objects(fake_s3, hls_dir):
    beats = []

    def heartbeat():
        beats.append(1)
        if len(beats) == 2:
            raise JobCancelled()

    with pytest.raises(JobCancelled):
        Uploader().publish(hls_dir, "j1", "shock", heartbeat=heartbeat)
    assert fake_s3.keys() == ["videos/shock/j1/seg_000.ts"]


def test_remove_clears_prefix_only(fake_s3, hls_dir):
    Uploader().publish(hls_dir, "j1", "shock")
    Uploader().publish(hls_dir, "j10", "shock")
    assert Uploader().remove("j1", "shock") == 4
    assert fake_s3.keys(job_prefix("shock", "j1") + "/") == []
    assert len(fake_s3.keys(job_prefix("shock", "j10") + "/")) == 4
