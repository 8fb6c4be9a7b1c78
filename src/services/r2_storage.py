"""Cloudflare R2 backend for the segment mirror.

Uses boto3 with the S3-compatible API. boto3 is synchronous, so every call
runs in a worker thread to keep the event loop free.
"""

import asyncio
import logging
from io import BytesIO
from typing import AsyncIterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from services.segment_store import DEFAULT_CONTENT_TYPE, READ_CHUNK_SIZE, SegmentStore, StoredSegment

logger = logging.getLogger(__name__)


class R2SegmentStore(SegmentStore):
    """Cloudflare R2 object storage for mirrored segments."""

    name = "r2"

    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        bucket_name: str = "segmentry-segments",
        public_url: Optional[str] = None,
        client=None,
    ):
        """Initialize R2 storage.

        Args:
            account_id: Cloudflare account ID
            access_key_id: R2 API access key ID
            secret_access_key: R2 API secret access key
            bucket_name: R2 bucket name
            public_url: Optional public URL base for objects (CDN URL)
            client: Pre-built S3 client (tests)
        """
        self.account_id = account_id
        self.bucket_name = bucket_name
        self.public_url = public_url

        # Configure S3 client for R2
        self._client = client or boto3.client(
            "s3",
            endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        )

        logger.info(f"R2 segment store initialized for bucket: {bucket_name}")

    def public_url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key}"
        return f"s3://{self.bucket_name}/{key}"

    async def upload_segment(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: Optional[str] = None,
    ) -> StoredSegment:
        # Segments are a few MB at most, buffer before handing to boto3
        buffer = BytesIO()
        async for chunk in chunks:
            buffer.write(chunk)
        size = buffer.tell()
        buffer.seek(0)

        content_type = content_type or DEFAULT_CONTENT_TYPE
        try:
            await asyncio.to_thread(
                self._client.upload_fileobj,
                buffer,
                self.bucket_name,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except ClientError as e:
            logger.error(f"Failed to upload {key}: {e}")
            raise

        logger.debug(f"Uploaded {key} to R2 ({size} bytes)")
        return StoredSegment(key=key, storage_id=self.public_url_for(key), size=size, content_type=content_type)

    async def find_by_key(self, key: str) -> Optional[StoredSegment]:
        try:
            response = await asyncio.to_thread(self._client.head_object, Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code not in ("404", "NoSuchKey", "NotFound"):
                logger.warning(f"R2 lookup failed for {key}: {e}")
            return None

        return StoredSegment(
            key=key,
            storage_id=self.public_url_for(key),
            size=response.get("ContentLength", 0),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
        )

    async def open_read_stream(self, handle: StoredSegment) -> AsyncIterator[bytes]:
        response = await asyncio.to_thread(self._client.get_object, Bucket=self.bucket_name, Key=handle.key)
        body = response["Body"]
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, READ_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every mirrored object under ``prefix`` (e.g. a removed video)."""

        def _delete() -> int:
            deleted = 0
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if not keys:
                    continue
                response = self._client.delete_objects(Bucket=self.bucket_name, Delete={"Objects": keys})
                deleted += len(response.get("Deleted", []))
                for err in response.get("Errors", []):
                    logger.warning(f"Failed to delete {err['Key']}: {err['Message']}")
            return deleted

        return await asyncio.to_thread(_delete)
