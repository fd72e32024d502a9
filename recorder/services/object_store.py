from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError


logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    def put(self, key: str, body: bytes, content_type: str, metadata: Mapping[str, str]) -> bool: ...


class S3ObjectStore:
    def __init__(
        self,
        bucket: str,
        *,
        region: str = "us-east-1",
        endpoint_url: str = "",
        client: Any | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket is required")
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url or None,
        )

    def put(self, key: str, body: bytes, content_type: str, metadata: Mapping[str, str]) -> bool:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata={name: _ascii_metadata(value) for name, value in metadata.items()},
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("audiohook_upload_failed bucket=%s key=%s error=%s", self.bucket, key, exc)
            return False
        logger.info("audiohook_upload_complete bucket=%s key=%s bytes=%s", self.bucket, key, len(body))
        return True


def _ascii_metadata(value: object) -> str:
    # S3 user metadata travels as HTTP headers.
    return str(value).encode("ascii", "replace").decode("ascii")
