"""
Best-effort title/description/tags suggestion for an uploaded file.

The suggester itself (an AI service in production) lives outside the pipeline;
it is plugged in through ``settings.METADATA_SUGGESTER``. Whatever it does, the
caller always gets a usable dict back and publication is never blocked.
"""
import logging
from typing import Protocol

from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)

FALLBACK_DESCRIPTION = "Uploaded successfully. Awaiting editorial review."
FALLBACK_TAGS = ("processing", "cloud")


class MetadataSuggester(Protocol):
    def suggest(self, filename: str) -> dict:
        ...


def fallback_metadata(filename: str) -> dict:
    return {
        "title": filename,
        "description": FALLBACK_DESCRIPTION,
        "tags": list(FALLBACK_TAGS),
        "ai_generated": False,
    }


def get_suggester() -> MetadataSuggester | None:
    path = settings.METADATA_SUGGESTER
    if not path:
        return None
    return import_string(path)()


def _clean(raw) -> dict:
    if not isinstance(raw, dict):
        raise TypeError(f"suggester returned {type(raw).__name__}, expected dict")
    title, description, tags = raw.get("title"), raw.get("description"), raw.get("tags")
    if not isinstance(title, str) or not title.strip():
        raise ValueError("missing title")
    if not isinstance(description, str):
        raise ValueError("missing description")
    if not isinstance(tags, (list, tuple)) or not all(isinstance(t, str) for t in tags):
        raise ValueError("tags must be a list of strings")
    return {"title": title.strip(), "description": description.strip(), "tags": list(tags), "ai_generated": True}


def suggest_metadata(filename: str, suggester: MetadataSuggester | None = None) -> dict:
    if suggester is None:
        return fallback_metadata(filename)
    try:
        return _clean(suggester.suggest(filename))
    except Exception as e:  # any suggester failure degrades to the fallback
        logger.warning("Metadata suggestion failed for %r, using fallback: %s", filename, e)
        return fallback_metadata(filename)
