"""
ffmpeg wrapper producing a fixed 3-second-segment HLS package.

The encode profile (bitrate, ceiling, buffer) comes from settings and is never
user input. A failed, cancelled or timed-out encode always removes its output
directory before the exception propagates, so the uploader never sees a
partial segment set.
"""
import errno
import json
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from django.conf import settings

from .errors import (
    DiskExhausted,
    EncodeError,
    EncoderMissing,
    PhaseTimeout,
    UnsupportedSource,
    ValidationFailed,
    last_line,
)

logger = logging.getLogger(__name__)

MANIFEST_NAME = "index.m3u8"
SEGMENT_EXT = ".ts"
SEGMENT_PATTERN = f"seg_%03d{SEGMENT_EXT}"

# stderr fragments meaning the input itself can never be encoded
FATAL_MARKERS = (
    "Invalid data found when processing input",
    "moov atom not found",
    "could not find codec parameters",
    "Unknown decoder",
    "does not contain any stream",
)
DISK_FULL_MARKER = "No space left on device"


@dataclass(frozen=True)
class SourceInfo:
    width: int
    height: int
    duration: float | None
    format_name: str


@dataclass(frozen=True)
class SegmentSet:
    directory: Path
    manifest: Path
    segments: tuple[Path, ...]

    @property
    def total_bytes(self) -> int:
        return self.manifest.stat().st_size + sum(p.stat().st_size for p in self.segments)


def parse_manifest(path) -> list[str]:
    """Segment URIs referenced by a media playlist, in order."""
    refs = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            refs.append(line)
    return refs


def probe(source_path) -> SourceInfo:
    cmd = [
        settings.FFPROBE_BINARY,
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height:format=format_name,duration",
        "-of", "json",
        str(source_path),
    ]
    try:
        res = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, timeout=120)
    except FileNotFoundError as e:
        raise EncoderMissing(diagnostic=str(e))
    except subprocess.TimeoutExpired:
        raise UnsupportedSource("Source could not be probed in time")
    if res.returncode != 0:
        diag = res.stderr.decode("utf-8", errors="ignore")
        raise UnsupportedSource(last_line(diag) or UnsupportedSource.default_summary, diagnostic=diag)

    data = json.loads(res.stdout or b"{}")
    streams = data.get("streams") or []
    if not streams or not streams[0].get("height"):
        raise UnsupportedSource("Source has no video stream")
    fmt = data.get("format") or {}
    duration = fmt.get("duration")
    return SourceInfo(
        width=int(streams[0].get("width") or 0),
        height=int(streams[0]["height"]),
        duration=float(duration) if duration not in (None, "N/A") else None,
        format_name=fmt.get("format_name", ""),
    )


def validate_source(source_path, crop_bottom_px: int) -> SourceInfo:
    """Reject a source before any phase starts: bad container, unreadable file, unusable crop."""
    source_path = Path(source_path)
    if source_path.suffix.lower() not in settings.SUPPORTED_SOURCE_EXTENSIONS:
        raise ValidationFailed(f"Unsupported container '{source_path.suffix or '(none)'}'")
    if crop_bottom_px < 0:
        raise ValidationFailed("Crop value must not be negative")
    if not source_path.is_file():
        raise ValidationFailed("Source file is missing")
    try:
        info = probe(source_path)
    except UnsupportedSource as e:
        raise ValidationFailed(e.summary, diagnostic=e.diagnostic)
    if crop_bottom_px >= info.height:
        raise ValidationFailed(f"Crop of {crop_bottom_px}px exceeds source height of {info.height}px")
    # libx264 4:2:0 needs an even frame height; ffmpeg would silently round it
    if (info.height - crop_bottom_px) % 2:
        raise ValidationFailed(
            f"Crop of {crop_bottom_px}px leaves an odd frame height ({info.height - crop_bottom_px}px)"
        )
    return info


def build_command(source_path, output_dir, crop_bottom_px: int = 0) -> list[str]:
    output_dir = Path(output_dir)
    cmd = [settings.FFMPEG_BINARY, "-y", "-nostdin", "-i", str(source_path)]
    if crop_bottom_px > 0:
        # keep full width, cut crop_bottom_px rows off the bottom edge
        cmd += ["-vf", f"crop=in_w:in_h-{crop_bottom_px}:0:0"]
    cmd += [
        "-c:v", "libx264",
        "-preset", settings.FFMPEG_PRESET,
        "-b:v", settings.VIDEO_BITRATE,
        "-maxrate", settings.VIDEO_MAXRATE,
        "-bufsize", settings.VIDEO_BUFSIZE,
        "-c:a", "aac",
        "-b:a", settings.AUDIO_BITRATE,
        "-f", "hls",
        "-start_number", "0",
        "-hls_time", str(settings.HLS_SEGMENT_SECONDS),
        "-hls_list_size", "0",
        "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
        str(output_dir / MANIFEST_NAME),
    ]
    return cmd


def expected_segment_count(duration: float | None) -> int | None:
    if not duration:
        return None
    seconds = settings.HLS_SEGMENT_SECONDS
    return max(1, int(-(-duration // seconds)))


class Transcoder:
    def __init__(self, poll_interval: float | None = None):
        if poll_interval is None:
            poll_interval = settings.CANCEL_POLL_SECONDS
        self.poll_interval = max(0.05, float(poll_interval))

    def transcode(
        self,
        source_path,
        output_dir,
        crop_bottom_px: int = 0,
        *,
        heartbeat=None,
        on_progress=None,
        timeout: float | None = None,
        expected_segments: int | None = None,
    ) -> SegmentSet:
        """
        Encode source_path into output_dir (emptied first) and return the segment set.

        heartbeat() is called every poll interval and may raise to abort the encode.
        on_progress(fraction) receives the share of expected segments already finalised.
        """
        if crop_bottom_px < 0:
            raise ValidationFailed("Crop value must not be negative")
        output_dir = Path(output_dir)
        self._prepare(output_dir)

        cmd = build_command(source_path, output_dir, crop_bottom_px)
        logger.info("Encoding %s -> %s (crop_bottom=%dpx)", source_path, output_dir, crop_bottom_px)
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except FileNotFoundError as e:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise EncoderMissing(diagnostic=str(e))

        deadline = time.monotonic() + timeout if timeout else None
        try:
            while True:
                try:
                    _, stderr = proc.communicate(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if heartbeat:
                    heartbeat()
                if on_progress and expected_segments:
                    on_progress(self._completed_fraction(output_dir, expected_segments))
                if deadline and time.monotonic() > deadline:
                    raise PhaseTimeout(f"Transcode exceeded {int(timeout)}s")
        except BaseException:
            proc.kill()
            proc.communicate()
            shutil.rmtree(output_dir, ignore_errors=True)
            raise

        if proc.returncode != 0:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise self._classify(proc.returncode, (stderr or b"").decode("utf-8", errors="ignore"))

        try:
            return self._collect(output_dir)
        except EncodeError:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise

    def _prepare(self, output_dir: Path):
        try:
            if output_dir.exists():
                shutil.rmtree(output_dir)
            output_dir.mkdir(parents=True)
        except OSError as e:
            if e.errno == errno.ENOSPC:
                raise DiskExhausted(diagnostic=str(e))
            raise

    @staticmethod
    def _classify(returncode: int, diagnostic: str):
        logger.error("Encoder exited with code %s:\n%s", returncode, diagnostic)
        if DISK_FULL_MARKER in diagnostic:
            return DiskExhausted(diagnostic=diagnostic)
        summary = last_line(diagnostic)
        if any(marker in diagnostic for marker in FATAL_MARKERS):
            return UnsupportedSource(summary or None, diagnostic=diagnostic)
        text = f"Encoder exited with code {returncode}" + (f": {summary}" if summary else "")
        return EncodeError(text, diagnostic=diagnostic)

    @staticmethod
    def _completed_fraction(output_dir: Path, expected: int) -> float:
        produced = len(list(output_dir.glob(f"seg_*{SEGMENT_EXT}")))
        # the newest segment is still being written
        return min(1.0, max(0, produced - 1) / expected)

    @staticmethod
    def _collect(output_dir: Path) -> SegmentSet:
        manifest = output_dir / MANIFEST_NAME
        if not manifest.is_file():
            raise EncodeError("Encoder produced no playlist")
        refs = parse_manifest(manifest)
        if not refs:
            raise EncodeError("Encoder produced an empty playlist")
        segments = tuple(output_dir / ref for ref in refs)
        missing = [p.name for p in segments if not p.is_file()]
        if missing:
            raise EncodeError(f"Playlist references missing segments: {', '.join(missing[:3])}")
        return SegmentSet(directory=output_dir, manifest=manifest, segments=segments)
