import uuid

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Job",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("filename", models.CharField(max_length=255)),
                ("source_ref", models.CharField(blank=True, default="", max_length=512)),
                ("original_size_bytes", models.PositiveBigIntegerField(default=0)),
                ("category", models.CharField(max_length=64)),
                ("crop_bottom_px", models.PositiveIntegerField(default=0)),
                (
                    "aspect_variant",
                    models.CharField(choices=[("WIDE", "Wide"), ("TALL", "Tall")], default="WIDE", max_length=8),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("PROCESSING_TRANSCODE", "Processing Transcode"),
                            ("UPLOADING", "Uploading"),
                            ("PUBLISHED", "Published"),
                            ("ERROR", "Error"),
                        ],
                        default="PENDING",
                        max_length=32,
                    ),
                ),
                ("progress", models.PositiveSmallIntegerField(default=0)),
                ("compressed_size_bytes", models.PositiveBigIntegerField(blank=True, null=True)),
                ("published_url", models.CharField(blank=True, default="", max_length=1024)),
                ("error_reason", models.TextField(blank=True, default="")),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("version", models.PositiveIntegerField(default=0)),
                ("claimed_by", models.CharField(blank=True, default="", max_length=128)),
                ("lease_expires_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["status", "lease_expires_at"], name="videos_job_claimable_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=(models.Q(status="PUBLISHED") & ~models.Q(published_url=""))
                        | (~models.Q(status="PUBLISHED") & models.Q(published_url="")),
                        name="videos_job_published_url_iff_published",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(progress__lte=100),
                        name="videos_job_progress_lte_100",
                    ),
                ],
            },
        ),
    ]
