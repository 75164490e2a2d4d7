"""S3-compatible storage for direct-debit batch files."""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from datetime import date
from functools import lru_cache
from typing import Any, Protocol

from billing_collections.config import settings

logger = logging.getLogger(__name__)


class ObjectStorageError(Exception):
    """Generic object storage failure."""


class ObjectNotFoundError(ObjectStorageError):
    """Raised when object is missing."""


class StorageService(Protocol):
    """Storage provider interface."""

    def upload(self, key: str, data: bytes, content_type: str | None) -> None: ...
    def download(self, key: str) -> bytes: ...
    def exists(self, key: str) -> bool: ...
    def delete(self, key: str) -> None: ...


class S3StorageService:
    """S3/MinIO/Spaces-backed storage provider."""

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: str,
        access_key: str | None,
        secret_key: str | None,
        region: str,
        client: Any | None = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        if client is not None:
            self.client = client
            return
        import boto3

        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    @staticmethod
    def _error_code(exc: Exception) -> str:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            err = response.get("Error", {})
            if isinstance(err, dict):
                return str(err.get("Code", ""))
        return ""

    def ensure_bucket(self) -> None:
        """Create bucket if missing (safe to call repeatedly)."""
        try:
            self.client.head_bucket(Bucket=self.bucket_name)
            return
        except Exception as exc:
            code = self._error_code(exc)
            if code not in {"404", "NoSuchBucket"}:
                raise ObjectStorageError("Unable to check storage bucket") from exc

        kwargs: dict = {"Bucket": self.bucket_name}
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self.client.create_bucket(**kwargs)
        logger.info("Created storage bucket: %s", self.bucket_name)

    def upload(self, key: str, data: bytes, content_type: str | None) -> None:
        kwargs: dict = {
            "Bucket": self.bucket_name,
            "Key": key,
            "Body": data,
        }
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.client.put_object(**kwargs)
        except Exception as exc:
            raise ObjectStorageError(f"Failed to upload object {key}") from exc

    def download(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            code = self._error_code(exc)
            if code in {"404", "NoSuchKey"}:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStorageError(f"Failed to download object {key}") from exc
        body = obj.get("Body")
        if body is None:
            raise ObjectStorageError(f"Stored object {key} has no content")
        return body.read()

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except Exception as exc:
            code = self._error_code(exc)
            if code in {"404", "NoSuchKey"}:
                return False
            raise ObjectStorageError("Failed to check object") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            raise ObjectStorageError("Failed to delete object") from exc


@lru_cache(maxsize=1)
def get_s3_storage() -> S3StorageService:
    settings.validate_s3_config()
    return S3StorageService(
        bucket_name=settings.s3_bucket_name,
        endpoint_url=settings.s3_endpoint_url,
        access_key=settings.s3_access_key,
        secret_key=settings.s3_secret_key,
        region=settings.s3_region,
    )


def ensure_storage_bucket() -> None:
    """Startup hook helper to guarantee bucket availability."""
    get_s3_storage().ensure_bucket()


def sha256_of_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_file_name(file_name: str) -> str:
    normalized = unicodedata.normalize("NFKD", file_name)
    normalized = normalized.encode("ascii", "ignore").decode("ascii")
    cleaned = re.sub(r"[^\w.-]+", "_", normalized)
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")[:120]
    return cleaned or "batch.txt"


def build_batch_storage_key(
    direction: str, batch_id, business_date: date, file_name: str
) -> str:
    """billing/direct-debit/<direction>/<YYYY-MM-DD>/batch-<id>-<name>"""
    return (
        f"billing/direct-debit/{direction.lower()}/{business_date.isoformat()}/"
        f"batch-{batch_id}-{_safe_file_name(file_name)}"
    )


def upload_batch_file(
    key: str,
    data: bytes,
    content_type: str = "text/plain",
    storage: StorageService | None = None,
) -> None:
    (storage or get_s3_storage()).upload(key.lstrip("/"), data, content_type)


def read_batch_file(key: str, storage: StorageService | None = None) -> bytes:
    return (storage or get_s3_storage()).download(key.lstrip("/"))
