import re

from django.conf import settings

# id -> display label. Published paths are derived from these labels, so entries
# may be added but never renamed or removed.
CATEGORY_LABELS = {
    "horror_attacks": "هجمات مرعبة",
    "true_horror": "رعب حقيقي",
    "animal_horror": "رعب الحيوانات",
    "dangerous_scenes": "أخطر المشاهد",
    "terrifying_horrors": "أهوال مرعبة",
    "horror_comedy": "رعب كوميدي",
    "scary_moments": "لحظات مرعبة",
    "shock": "صدمة",
}

_WHITESPACE = re.compile(r"\s+")


def folder_label(label: str) -> str:
    """Storage-safe folder name for a display label (whitespace -> underscores)."""
    return _WHITESPACE.sub("_", label.strip())


def resolve(category_id: str) -> str:
    label = CATEGORY_LABELS.get(category_id, settings.CATEGORY_DEFAULT_LABEL)
    return folder_label(label)
