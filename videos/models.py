import uuid
from django.db import models
from django.db.models import Q


class Job(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING"
        PROCESSING_TRANSCODE = "PROCESSING_TRANSCODE"
        UPLOADING = "UPLOADING"
        PUBLISHED = "PUBLISHED"
        ERROR = "ERROR"

    class AspectVariant(models.TextChoices):
        WIDE = "WIDE"   # 16:9
        TALL = "TALL"   # 9:16 shorts

    TERMINAL = frozenset({Status.PUBLISHED, Status.ERROR})
    ACTIVE = frozenset({Status.PROCESSING_TRANSCODE, Status.UPLOADING})

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    filename = models.CharField(max_length=255)
    source_ref = models.CharField(max_length=512, blank=True, default="")  # relative to MEDIA_ROOT or staging key
    original_size_bytes = models.PositiveBigIntegerField(default=0)
    category = models.CharField(max_length=64)
    crop_bottom_px = models.PositiveIntegerField(default=0)
    aspect_variant = models.CharField(max_length=8, choices=AspectVariant.choices, default=AspectVariant.WIDE)

    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING)
    progress = models.PositiveSmallIntegerField(default=0)  # 0..100
    compressed_size_bytes = models.PositiveBigIntegerField(null=True, blank=True)
    published_url = models.CharField(max_length=1024, blank=True, default="")
    error_reason = models.TextField(blank=True, default="")
    metadata = models.JSONField(default=dict, blank=True)   # {title, description, tags}

    # optimistic concurrency + claim lease
    version = models.PositiveIntegerField(default=0)
    claimed_by = models.CharField(max_length=128, blank=True, default="")
    lease_expires_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["status", "lease_expires_at"], name="videos_job_claimable_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(Q(status="PUBLISHED") & ~Q(published_url=""))
                | (~Q(status="PUBLISHED") & Q(published_url="")),
                name="videos_job_published_url_iff_published",
            ),
            models.CheckConstraint(
                condition=Q(progress__lte=100),
                name="videos_job_progress_lte_100",
            ),
        ]

    def __str__(self):
        return f"{self.filename} [{self.status} {self.progress}%]"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL
