from functools import lru_cache
from urllib.parse import urlparse

import boto3

from . import config
from .models import variant_filename


@lru_cache(maxsize=None)
def s3_client():
    if config.S3_ENDPOINT_URL:
        return boto3.client("s3", endpoint_url=config.S3_ENDPOINT_URL)
    return boto3.client("s3")


@lru_cache(maxsize=None)
def sqs_client():
    if config.SQS_ENDPOINT_URL:
        return boto3.client("sqs", endpoint_url=config.SQS_ENDPOINT_URL)
    return boto3.client("sqs")


def parse_s3_url(url: str) -> tuple[str, str] | None:
    """Return (bucket, key) for s3://, virtual-hosted or path-style S3 URLs."""
    parsed = urlparse(url)
    host = parsed.netloc
    path = parsed.path.lstrip("/")
    if parsed.scheme == "s3" and host and path:
        return host, path
    # Virtual-hosted-style S3
    if host.endswith(".amazonaws.com") and ".s3." in host:
        return host.split(".s3.")[0], path
    # Path-style S3
    if host.startswith("s3.") and "/" in path:
        bucket, key = path.split("/", 1)
        return bucket, key
    return None


def generate_presigned_url(bucket: str, key: str, expiration: int | None = None) -> str:
    """Generate presigned URL for S3 object download"""
    return s3_client().generate_presigned_url(
        "get_object",
        Params={"Bucket": bucket, "Key": key},
        ExpiresIn=expiration or config.PRESIGNED_URL_EXPIRATION,
    )


def upload_output(path, job_id: str, variant: str) -> str:
    key = f"combine/{job_id}/{variant_filename(variant)}"
    s3_client().upload_file(str(path), config.OUTPUT_BUCKET, key)
    return generate_presigned_url(config.OUTPUT_BUCKET, key)
