from django.urls import path
from .views import (
    CreateJobFromKeyView,
    JobDetailView,
    JobListView,
    PresignUploadView,
    UploadAndCreateJobView,
)

urlpatterns = [
    path("jobs/", JobListView.as_view(), name="job_list"),
    path("jobs/upload/", UploadAndCreateJobView.as_view(), name="upload_create_job"),
    path("jobs/from-key/", CreateJobFromKeyView.as_view(), name="jobs_from_key"),
    path("jobs/<uuid:job_id>/", JobDetailView.as_view(), name="job_detail"),
    path("uploads/presign/", PresignUploadView.as_view(), name="uploads_presign"),
]
