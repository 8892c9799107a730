"""
S3 Storage Service

Object layout:

  Canonical (the only layout new writes use)
      s3://<storage_bucket>/tenant/<tenant_id>/uploads/<file_name>

  Legacy (read / moved only by the requeue path-repair step)
      the recorded path of older documents, in the primary bucket or in any
      bucket listed in settings.storage_legacy_buckets

Buckets are passed explicitly on every call so the path-repair step can
probe several of them with one service instance.

Errors:
  missing object         → FileNotFoundError
  any other S3 failure   → StorageError (document ends in `error`, not `failed`)
"""

from __future__ import annotations

import logging
import re
from uuid import UUID

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from knowledge.core.config import settings
from knowledge.core.errors import StorageError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")
_UNSAFE_NAME_RE  = re.compile(r"[^a-zA-Z0-9._\-]")


# ---------------------------------------------------------------------------
# Key construction
# ---------------------------------------------------------------------------

def sanitize_file_name(file_name: str) -> str:
    """
    Strip path components and replace characters unsafe in object keys.
    Returns only the basename, capped at 200 characters.
    """
    basename = file_name.replace("\\", "/").rsplit("/", 1)[-1]
    safe = _UNSAFE_NAME_RE.sub("_", basename).lstrip(".")
    return safe[:200] or "document"


def canonical_key(tenant_id: UUID, file_name: str) -> str:
    """tenant/<tenant_id>/uploads/<file_name>; file_name is sanitized server-side."""
    return f"tenant/{tenant_id}/uploads/{sanitize_file_name(file_name)}"


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class S3StorageService:
    """
    Async S3 operations.

    Stateless apart from the aioboto3 session; a single instance can serve
    many tenants because keys are always built from server-side values.
    """

    def __init__(
        self,
        region:       str | None = None,
        endpoint_url: str | None = None,
        kms_key_arn:  str | None = None,
    ) -> None:
        self._session      = aioboto3.Session()
        self._region       = region or settings.aws_region
        self._endpoint_url = endpoint_url if endpoint_url is not None else settings.s3_endpoint_url
        self._kms_key_arn  = kms_key_arn if kms_key_arn is not None else settings.s3_kms_key_arn

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            endpoint_url=self._endpoint_url or None,
            # In production: IAM role assumed via task role.
            # In local dev: reads AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY.
        )

    def _sse_params(self) -> dict:
        """SSE-KMS parameters, only when a key is configured."""
        if not self._kms_key_arn:
            return {}
        return {
            "ServerSideEncryption": "aws:kms",
            "SSEKMSKeyId": self._kms_key_arn,
        }

    @staticmethod
    def _raise_for(exc: ClientError, bucket: str, key: str):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in _NOT_FOUND_CODES:
            raise FileNotFoundError(f"Object not found: s3://{bucket}/{key}") from exc
        raise StorageError(f"S3 error {code}: s3://{bucket}/{key}", bucket=bucket, key=key) from exc

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put_object(
        self,
        bucket:       str,
        key:          str,
        body:         bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type,
                    **self._sse_params(),
                )
        except ClientError as exc:
            self._raise_for(exc, bucket, key)
        except BotoCoreError as exc:
            raise StorageError(f"S3 upload failed: {exc}", bucket=bucket, key=key) from exc

        logger.info("S3 upload ok | bucket=%s key=%s size=%d", bucket, key, len(body))

    async def get_object(self, bucket: str, key: str) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=bucket, Key=key)
                return await resp["Body"].read()
        except ClientError as exc:
            self._raise_for(exc, bucket, key)
        except BotoCoreError as exc:
            raise StorageError(f"S3 download failed: {exc}", bucket=bucket, key=key) from exc

    async def object_exists(self, bucket: str, key: str) -> bool:
        try:
            async with self._client() as s3:
                await s3.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _NOT_FOUND_CODES:
                return False
            self._raise_for(exc, bucket, key)
        except BotoCoreError as exc:
            raise StorageError(f"S3 head failed: {exc}", bucket=bucket, key=key) from exc

    async def copy_object(self, src_bucket: str, src_key: str, dst_bucket: str, dst_key: str) -> None:
        try:
            async with self._client() as s3:
                await s3.copy_object(
                    Bucket=dst_bucket,
                    Key=dst_key,
                    CopySource={"Bucket": src_bucket, "Key": src_key},
                    **self._sse_params(),
                )
        except ClientError as exc:
            self._raise_for(exc, src_bucket, src_key)
        except BotoCoreError as exc:
            raise StorageError(f"S3 copy failed: {exc}", bucket=src_bucket, key=src_key) from exc

        logger.info(
            "S3 copy ok | from=s3://%s/%s to=s3://%s/%s",
            src_bucket, src_key, dst_bucket, dst_key,
        )

    async def delete_object(self, bucket: str, key: str) -> None:
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            self._raise_for(exc, bucket, key)
        except BotoCoreError as exc:
            raise StorageError(f"S3 delete failed: {exc}", bucket=bucket, key=key) from exc

        logger.warning("S3 delete | bucket=%s key=%s", bucket, key)
