"""S3 service providing presigned-POST upload parameters."""

import uuid
from typing import Any

import boto3
from botocore.exceptions import ClientError, NoCredentialsError
from mypy_boto3_s3 import S3Client

from dropzone.services.models import FileSnapshot
from dropzone.services.upload_transport import UploadParamsProvider

DEFAULT_EXPIRES_IN = 3600


def create_s3_client(profile: str, region: str = "us-west-2") -> S3Client:
    """Create an S3 client using the specified AWS profile.

    Args:
        profile: AWS profile name from ~/.aws/credentials or ~/.aws/config
        region: AWS region (default: us-west-2)

    Returns:
        Configured S3 client

    Raises:
        NoCredentialsError: If credentials are not found
    """
    session = boto3.Session(profile_name=profile, region_name=region)
    client: S3Client = session.client("s3")
    return client


def build_object_key(filename: str, prefix: str = "uploads/") -> str:
    """Build a collision-free object key for an uploaded file."""
    return f"{prefix}{uuid.uuid4().hex}/{filename}"


def generate_presigned_post(
    client: S3Client,
    bucket: str,
    key: str,
    content_type: str | None = None,
    max_size_bytes: int | None = None,
    expires_in: int = DEFAULT_EXPIRES_IN,
) -> dict[str, Any]:
    """Generate a presigned POST for browser-style multipart upload.

    Args:
        client: S3 client
        bucket: S3 bucket name
        key: S3 object key
        content_type: Content type the upload must declare
        max_size_bytes: Upper bound enforced by the POST policy
        expires_in: Seconds the signature stays valid

    Returns:
        Dictionary with success flag, url and form fields
    """
    fields: dict[str, Any] = {}
    conditions: list[Any] = []
    if content_type:
        fields["Content-Type"] = content_type
        conditions.append({"Content-Type": content_type})
    if max_size_bytes is not None:
        conditions.append(["content-length-range", 0, max_size_bytes])

    try:
        post = client.generate_presigned_post(
            Bucket=bucket,
            Key=key,
            Fields=fields or None,
            Conditions=conditions or None,
            ExpiresIn=expires_in,
        )
        return {
            "success": True,
            "bucket": bucket,
            "key": key,
            "url": post["url"],
            "fields": post["fields"],
            "error": None,
        }
    except (ClientError, NoCredentialsError) as e:
        return {
            "success": False,
            "bucket": bucket,
            "key": key,
            "url": None,
            "fields": {},
            "error": str(e),
        }


def make_presigned_post_provider(
    client: S3Client,
    bucket: str,
    prefix: str = "uploads/",
    max_size_bytes: int | None = None,
    expires_in: int = DEFAULT_EXPIRES_IN,
) -> UploadParamsProvider:
    """Build an upload-parameter provider that posts each file straight to S3.

    A signing failure yields no url, which the transport reports as
    ``error_upload_params``.
    """

    def provider(snapshot: FileSnapshot) -> dict[str, Any]:
        key = build_object_key(snapshot.name, prefix)
        post = generate_presigned_post(
            client,
            bucket,
            key,
            content_type=str(snapshot.meta.get("type") or "") or None,
            max_size_bytes=max_size_bytes,
            expires_in=expires_in,
        )
        return {
            "url": post["url"],
            "fields": post["fields"],
            "meta": {"s3_bucket": bucket, "s3_key": key},
        }

    return provider
