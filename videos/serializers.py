import os

from django.conf import settings
from rest_framework import serializers

from .models import Job
from .utils import is_supported_source


class JobSerializer(serializers.ModelSerializer):
    class Meta:
        model = Job
        fields = [
            "id",
            "filename",
            "category",
            "crop_bottom_px",
            "aspect_variant",
            "status",
            "progress",
            "original_size_bytes",
            "compressed_size_bytes",
            "published_url",
            "error_reason",
            "metadata",
            "created_at",
            "updated_at",
        ]


class JobOptionsSerializer(serializers.Serializer):
    """Per-job choices made at submission; immutable afterwards."""
    category = serializers.CharField(max_length=64)
    crop_bottom_px = serializers.IntegerField(min_value=0, default=0)
    aspect_variant = serializers.ChoiceField(choices=Job.AspectVariant.choices, default=Job.AspectVariant.WIDE)


def _validate_container(name: str) -> str:
    if not is_supported_source(name):
        allowed = ", ".join(sorted(settings.SUPPORTED_SOURCE_EXTENSIONS))
        raise serializers.ValidationError(f"Unsupported container. Allowed: {allowed}")
    return name


class UploadCreateSerializer(JobOptionsSerializer):
    file = serializers.FileField()

    def validate_file(self, value):
        _validate_container(value.name)
        return value


class PresignRequestSerializer(serializers.Serializer):
    filename = serializers.CharField()
    content_type = serializers.CharField(required=False, allow_blank=True)

    def validate_filename(self, value):
        return _validate_container(os.path.basename(value))


class PresignResponseSerializer(serializers.Serializer):
    key = serializers.CharField()
    url = serializers.URLField()
    headers = serializers.DictField(child=serializers.CharField(), required=False)


class JobFromKeyRequestSerializer(JobOptionsSerializer):
    key = serializers.CharField()
    filename = serializers.CharField(required=False)

    def validate_key(self, value):
        if not value.startswith("uploads/"):
            raise serializers.ValidationError("Key must point at a staged upload (uploads/...)")
        return _validate_container(value)
