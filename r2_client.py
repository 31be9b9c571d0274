# r2_client.py
from typing import Optional

import boto3
from botocore.config import Config

from settings import settings

# --- R2 / S3 client ---------------------------------------------------------

# NOTE:
# - endpoint_url MUST be the S3 API endpoint (the cloudflarestorage.com host),
#   NOT the public/dev domain. Region must be "auto" and path-style is required.
_endpoint = settings.r2_endpoint_url or None
_BUCKET = settings.r2_bucket
if _endpoint:
    # Normalize accidental trailing slashes or bucket suffixes
    _endpoint = _endpoint.rstrip("/")
    if _BUCKET and _endpoint.endswith(f"/{_BUCKET}"):
        _endpoint = _endpoint[: - (len(_BUCKET) + 1)]

_s3 = boto3.client(
    "s3",
    endpoint_url=_endpoint,   # e.g. https://<account>.r2.cloudflarestorage.com
    aws_access_key_id=settings.r2_access_key_id or None,
    aws_secret_access_key=settings.r2_secret_access_key or None,
    region_name="auto",
    config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
)

_PUBLIC_BASE = (settings.r2_public_base or "").rstrip("/")


def card_key(job_id: str) -> str:
    return f"og/{job_id}.png"


def public_url(key: str) -> Optional[str]:
    """Public URL under R2_PUBLIC_BASE, or None when no public base is configured."""
    if _PUBLIC_BASE:
        return f"{_PUBLIC_BASE}/{key.lstrip('/')}"
    return None


def upload_to_key(data: bytes, key: str, *, content_type: str = "image/png") -> None:
    _s3.put_object(
        Bucket=_BUCKET,
        Key=key,
        Body=data,
        ContentType=content_type,
    )


def delete_key(key: str) -> None:
    _s3.delete_object(Bucket=_BUCKET, Key=key)


def get_object_stream(key: str):
    """
    Returns (streaming_body, content_type) for the given key.
    Used by the /assets/og/{filename} route when STORAGE=r2.
    """
    obj = _s3.get_object(Bucket=_BUCKET, Key=key)
    return obj["Body"], obj.get("ContentType", "image/png")
