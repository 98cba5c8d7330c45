"""
Failure taxonomy for the publishing pipeline.

Every error carries a short, non-leaking ``summary`` (what ends up on the Job
record and in the progress feed) and an optional full ``diagnostic`` that is
only ever written to the operational logs.
"""

SUMMARY_LIMIT = 200


def last_line(text: str, limit: int = SUMMARY_LIMIT) -> str:
    """Last non-empty line of a diagnostic stream, truncated."""
    lines = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    if not lines:
        return ""
    line = lines[-1]
    return line if len(line) <= limit else line[: limit - 3] + "..."


class PipelineError(Exception):
    default_summary = "Processing failed"

    def __init__(self, summary: str | None = None, diagnostic: str = ""):
        self.summary = summary or self.default_summary
        self.diagnostic = diagnostic
        super().__init__(self.summary)


# ---------- Job Store ----------
class JobNotFound(PipelineError):
    default_summary = "Job not found"


class AlreadyClaimed(PipelineError):
    default_summary = "Job is already claimed"


class Conflict(PipelineError):
    default_summary = "Job was modified concurrently"


class ClaimLost(Conflict):
    default_summary = "Claim on job was lost to another worker"


class InvalidTransition(PipelineError):
    default_summary = "Invalid status transition"


# ---------- Classification ----------
class ValidationFailed(PipelineError):
    default_summary = "Source failed validation"


class TransientError(PipelineError):
    """Retried with backoff; surfaced only when attempts are exhausted."""


class FatalError(PipelineError):
    """Never retried."""


class JobCancelled(PipelineError):
    default_summary = "Job was deleted while processing"


# ---------- Phase errors ----------
class EncodeError(TransientError):
    default_summary = "Encoder exited with an error"


class PhaseTimeout(TransientError):
    default_summary = "Phase exceeded its time limit"


class UploadError(TransientError):
    default_summary = "Upload to storage failed"


class UnsupportedSource(FatalError):
    default_summary = "Source container or codec is not supported"


class DiskExhausted(FatalError):
    default_summary = "No space left on processing host"


class EncoderMissing(FatalError):
    default_summary = "Encoder binary is not available"
