import logging
from pathlib import Path

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from django.conf import settings

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {"InternalError", "ServiceUnavailable", "SlowDown", "RequestTimeout", "503", "500"}


def _session():
    return boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )


def get_s3_client():
    """
    SDK client for server-side upload/download/delete.
    Retries are handled by the pipeline, so botocore's own retry budget is kept small.
    """
    return _session().client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT_URL,  # e.g. https://<account>.r2.cloudflarestorage.com
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
            connect_timeout=settings.S3_CONNECT_TIMEOUT,
            read_timeout=settings.S3_READ_TIMEOUT,
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


def get_presign_client():
    """
    Separate client for generating presigned URLs that the browser/curl will call.
    Uses S3_PUBLIC_ENDPOINT so the URL host matches what the client reaches.
    """
    return _session().client(
        "s3",
        endpoint_url=settings.S3_PUBLIC_ENDPOINT,
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",  # ensures AWS4 signing
        ),
    )


def is_transient(exc: BaseException) -> bool:
    """Network failures and 5xx-class storage responses are worth retrying."""
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)):
        return True
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        return status >= 500 or err.get("Code") in TRANSIENT_ERROR_CODES
    # upload_file wraps the underlying ClientError in a message-only exception
    if isinstance(exc, S3UploadFailedError):
        return not any(code in str(exc) for code in ("AccessDenied", "InvalidAccessKeyId", "NoSuchBucket"))
    return False


def create_presigned_put(key: str, content_type: str | None = None, expires: int | None = None) -> dict:
    """
    Create a presigned PUT URL to stage a raw upload directly in the bucket.

    ContentType is not part of the signed params; clients that
    omit or alter the header still match the signature.
    """
    s3 = get_presign_client()
    url = s3.generate_presigned_url(
        ClientMethod="put_object",
        Params={"Bucket": settings.S3_BUCKET, "Key": key},
        ExpiresIn=expires or settings.S3_PRESIGN_EXPIRE_SECONDS,
        HttpMethod="PUT",
    )
    headers = {"Content-Type": content_type} if content_type else {}
    return {"url": url, "headers": headers}


def public_url(key: str) -> str:
    return f"{settings.S3_PUBLIC_DOMAIN}/{key}"


def upload_file(local_path, key: str, content_type: str | None = None, client=None):
    """
    Upload a single file with an optional Content-Type.
    """
    s3 = client or get_s3_client()
    extra = {}
    if content_type:
        extra["ContentType"] = content_type
    s3.upload_file(str(local_path), settings.S3_BUCKET, key, ExtraArgs=extra or None)


def object_exists(key: str, client=None) -> bool:
    s3 = client or get_s3_client()
    try:
        s3.head_object(Bucket=settings.S3_BUCKET, Key=key)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
            return False
        raise
    return True


def object_size(key: str, client=None) -> int:
    s3 = client or get_s3_client()
    head = s3.head_object(Bucket=settings.S3_BUCKET, Key=key)
    return int(head.get("ContentLength", 0))


def download_file(key: str, dest, client=None) -> Path:
    s3 = client or get_s3_client()
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    s3.download_file(settings.S3_BUCKET, key, str(dest))
    return dest


def delete_object(key: str, client=None):
    s3 = client or get_s3_client()
    s3.delete_object(Bucket=settings.S3_BUCKET, Key=key)


def list_keys(prefix: str, client=None):
    s3 = client or get_s3_client()
    paginator = s3.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=settings.S3_BUCKET, Prefix=prefix):
        for obj in page.get("Contents", []):
            yield obj


def delete_prefix(prefix: str, client=None) -> int:
    """
    Remove every object under prefix (e.g. 'videos/<folder>/<job_id>/').
    Returns the number of objects deleted.
    """
    s3 = client or get_s3_client()
    keys = [obj["Key"] for obj in list_keys(prefix, client=s3)]
    for i in range(0, len(keys), 1000):  # DeleteObjects batch limit
        batch = keys[i : i + 1000]
        s3.delete_objects(
            Bucket=settings.S3_BUCKET,
            Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
        )
    if keys:
        logger.info("Deleted %d object(s) under %s", len(keys), prefix)
    return len(keys)


def storage_stats(prefix: str = "videos/", manifest_name: str = "index.m3u8", client=None) -> dict:
    """
    Count published videos (one playlist each) and total stored bytes under prefix.
    """
    total_size = 0
    video_count = 0
    for obj in list_keys(prefix, client=client):
        total_size += int(obj.get("Size", 0))
        if obj["Key"].endswith(f"/{manifest_name}"):
            video_count += 1
    return {"videos": video_count, "bytes": total_size}
