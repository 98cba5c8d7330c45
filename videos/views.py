import logging
import os
from uuid import uuid4

from botocore.exceptions import BotoCoreError, ClientError
from django.utils import timezone
from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .categories import resolve
from .errors import JobNotFound
from .models import Job
from .s3 import create_presigned_put, object_size
from .serializers import (
    JobFromKeyRequestSerializer,
    JobSerializer,
    PresignRequestSerializer,
    PresignResponseSerializer,
    UploadCreateSerializer,
)
from .store import JobStore
from .tasks import process_job
from .uploader import Uploader
from .utils import remove_source, save_uploaded_file

logger = logging.getLogger(__name__)


class UploadAndCreateJobView(views.APIView):
    """
    Accepts a file upload to the Django server, stores it under UPLOADS_ROOT,
    creates a PENDING Job and dispatches it to the workers.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = UploadCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        upload = data["file"]

        rel_path = save_uploaded_file(upload)
        job_id = JobStore().create(
            filename=os.path.basename(upload.name),
            source_ref=rel_path,
            original_size_bytes=upload.size,
            category=data["category"],
            crop_bottom_px=data["crop_bottom_px"],
            aspect_variant=data["aspect_variant"],
        )

        process_job.delay(job_id)
        return Response({"job_id": job_id}, status=status.HTTP_202_ACCEPTED)


class PresignUploadView(views.APIView):
    """
    Returns a presigned PUT URL + recommended staging key so the client can upload
    the raw video straight to the bucket without streaming through Django.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = PresignRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        filename = ser.validated_data["filename"]
        content_type = ser.validated_data.get("content_type") or None

        key = f"uploads/{uuid4().hex}_{filename}"
        signed = create_presigned_put(key, content_type=content_type)
        resp = {"key": key, "url": signed["url"], "headers": signed.get("headers", {})}
        return Response(PresignResponseSerializer(resp).data, status=status.HTTP_201_CREATED)


class CreateJobFromKeyView(views.APIView):
    """
    Creates a Job from a raw video already staged in the bucket under uploads/.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = JobFromKeyRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        key = data["key"]

        try:
            size = object_size(key)
        except ClientError:
            return Response({"detail": "Staged object not found"}, status=status.HTTP_400_BAD_REQUEST)

        job_id = JobStore().create(
            filename=data.get("filename") or os.path.basename(key),
            source_ref=key,
            original_size_bytes=size,
            category=data["category"],
            crop_bottom_px=data["crop_bottom_px"],
            aspect_variant=data["aspect_variant"],
        )

        process_job.delay(job_id)
        return Response({"job_id": job_id}, status=status.HTTP_202_ACCEPTED)


class JobListView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request):
        jobs = Job.objects.all()
        wanted = request.query_params.get("status")
        if wanted:
            jobs = jobs.filter(status=wanted.upper())
        return Response(JobSerializer(jobs, many=True).data)


class JobDetailView(views.APIView):
    """
    GET is the polling side of the progress feed; DELETE removes the job.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        try:
            job = JobStore().get(job_id)
        except JobNotFound:
            return Response({"detail": "Not found"}, status=status.HTTP_404_NOT_FOUND)
        return Response(JobSerializer(job).data)

    def delete(self, request, job_id):
        store = JobStore()
        try:
            job = store.get(job_id)
        except JobNotFound:
            return Response({"detail": "Not found"}, status=status.HTTP_404_NOT_FOUND)

        in_flight = (
            job.status in Job.ACTIVE
            and job.lease_expires_at is not None
            and job.lease_expires_at > timezone.now()
        )
        if not in_flight:
            # nobody owns it: clean storage here, before the record disappears
            try:
                Uploader().remove(job.id, resolve(job.category))
                remove_source(job.source_ref)
            except (ClientError, BotoCoreError):
                logger.exception("Cleanup for job %s failed", job.id)
                return Response({"detail": "Storage cleanup failed, retry later"}, status=status.HTTP_502_BAD_GATEWAY)

        try:
            store.delete(job_id)
        except JobNotFound:
            return Response({"detail": "Not found"}, status=status.HTTP_404_NOT_FOUND)
        # an in-flight worker notices on its next heartbeat, aborts and cleans up
        return Response(status=status.HTTP_204_NO_CONTENT)
