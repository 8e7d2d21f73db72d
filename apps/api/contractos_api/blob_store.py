from __future__ import annotations

import base64
import os
from typing import Any
from urllib.parse import urlparse


def s3_bucket() -> str | None:
    return os.environ.get("COS_S3_BUCKET")


def minio_client_or_none() -> Any | None:
    endpoint = os.environ.get("COS_S3_ENDPOINT")
    access_key = os.environ.get("COS_S3_ACCESS_KEY")
    secret_key = os.environ.get("COS_S3_SECRET_KEY")
    if not endpoint or not access_key or not secret_key or not s3_bucket():
        return None

    from minio import Minio

    parsed = urlparse(endpoint)
    host = parsed.netloc or parsed.path
    secure = parsed.scheme == "https"
    region = os.environ.get("COS_S3_REGION") or None
    return Minio(host, access_key=access_key, secret_key=secret_key, secure=secure, region=region)


def to_data_url(data: bytes, content_type: str) -> str:
    b64 = base64.b64encode(data).decode("ascii")
    ct = content_type or "application/octet-stream"
    return f"data:{ct};base64,{b64}"
