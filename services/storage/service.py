"""Staging artifact storage on S3-compatible object storage (MinIO).

Staging artifacts hold the raw extraction payload of a scanned document
until it is finalized. Each artifact is one JSON object stored under
``{owner_id}/{artifact_id}.json``.

Provides:
- Lazy client creation and bucket auto-creation
- Retry logic on S3 errors
- The ``StagingStore`` contract used by the committer

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import asyncio
import io
import json
import logging
import uuid
from typing import Any

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.finalization.errors import TransientStoreError
from services.finalization.ports import StagingStore
from services.shared.config import Settings

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        object_name: Full object path in storage
        bucket: Bucket name
        artifact_id: Staging artifact id, when one was written
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    artifact_id: str | None = None
    error: str | None = None
    etag: str | None = None
    size: int | None = None


def artifact_object_name(owner_id: str, artifact_id: str) -> str:
    return f"{owner_id}/{artifact_id}.json"


class StagingStorageService(StagingStore):
    """Staging artifact store backed by MinIO."""

    def __init__(self, settings: Settings) -> None:
        """Initialize storage service.

        Args:
            settings: Application settings with storage configuration
        """
        self.settings = settings
        self._client: Minio | None = None
        self._known_buckets: set[str] = set()

    def _get_client(self) -> Minio:
        """Return the MinIO client, creating it on first use.

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is not None:
            return self._client

        missing = [
            env
            for env, value in (
                ("APP_STORAGE_ACCESS_KEY", self.settings.storage_access_key),
                ("APP_STORAGE_SECRET_KEY", self.settings.storage_secret_key),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Staging storage credentials missing: set {', '.join(missing)}")

        self._client = Minio(
            endpoint=self.settings.storage_endpoint,
            access_key=self.settings.storage_access_key,
            secret_key=self.settings.storage_secret_key,
            secure=self.settings.storage_secure,
        )
        logger.info(f"Staging storage client created for {self.settings.storage_endpoint}")
        return self._client

    def is_available(self) -> bool:
        """True when staging storage is enabled and has credentials."""
        return self.settings.storage_enabled and bool(
            self.settings.storage_access_key and self.settings.storage_secret_key
        )

    def health_check(self) -> bool:
        """Check that the MinIO server answers."""
        if not self.is_available():
            return False

        try:
            self._get_client().list_buckets()
        except Exception as e:
            logger.warning(f"Staging storage unreachable: {e}")
            return False
        return True

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._known_buckets:
            return

        client = self._get_client()
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info(f"Created staging bucket {bucket}")
        self._known_buckets.add(bucket)

    @retry(
        retry=retry_if_exception_type(S3Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def save_payload(
        self,
        owner_id: str,
        payload: dict[str, Any],
        artifact_id: str | None = None,
    ) -> StorageResult:
        """Store an extraction payload as a staging artifact.

        Args:
            owner_id: Owner of the artifact
            payload: Extraction payload (JSON-serializable)
            artifact_id: Existing artifact to overwrite (new id when omitted)

        Returns:
            StorageResult with the artifact id
        """
        bucket = self.settings.storage_bucket
        artifact_id = artifact_id or f"pending-{uuid.uuid4().hex}"
        object_name = artifact_object_name(owner_id, artifact_id)

        try:
            client = self._get_client()
            self._ensure_bucket(bucket)

            data = json.dumps(payload, default=str).encode("utf-8")
            result = client.put_object(
                bucket_name=bucket,
                object_name=object_name,
                data=io.BytesIO(data),
                length=len(data),
                content_type=JSON_CONTENT_TYPE,
            )

            logger.info(f"Stored staging artifact {object_name} in {bucket} ({len(data)} bytes)")

            return StorageResult(
                success=True,
                object_name=object_name,
                bucket=bucket,
                artifact_id=artifact_id,
                etag=result.etag,
                size=len(data),
            )

        except S3Error as e:
            logger.error(f"S3 error storing {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=bucket,
                error=f"S3 error: {e.code} - {e.message}",
            )
        except Exception as e:
            logger.error(f"Error storing {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=bucket,
                error=str(e),
            )

    def load_payload(self, owner_id: str, artifact_id: str) -> dict[str, Any] | None:
        """Read the extraction payload of a staging artifact.

        Returns:
            Decoded payload, or None if the artifact does not exist or
            cannot be read
        """
        bucket = self.settings.storage_bucket
        object_name = artifact_object_name(owner_id, artifact_id)

        response = None
        try:
            client = self._get_client()
            response = client.get_object(bucket_name=bucket, object_name=object_name)
            return json.loads(response.read().decode("utf-8"))
        except S3Error as e:
            if e.code != "NoSuchKey":
                logger.error(f"S3 error reading {object_name}: {e}")
            return None
        except Exception as e:
            logger.error(f"Error reading {object_name}: {e}")
            return None
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def remove_artifact(self, owner_id: str, artifact_id: str) -> StorageResult:
        """Delete a staging artifact object.

        Returns:
            StorageResult indicating success or failure
        """
        bucket = self.settings.storage_bucket
        object_name = artifact_object_name(owner_id, artifact_id)
        result = StorageResult(
            success=False, object_name=object_name, bucket=bucket, artifact_id=artifact_id
        )

        try:
            self._get_client().remove_object(bucket_name=bucket, object_name=object_name)
        except S3Error as e:
            logger.error(f"S3 error removing staging artifact {object_name}: {e}")
            return result.model_copy(update={"error": f"S3 error: {e.code} - {e.message}"})
        except Exception as e:
            logger.error(f"Error removing staging artifact {object_name}: {e}")
            return result.model_copy(update={"error": str(e)})

        logger.info(f"Removed staging artifact {object_name}")
        return result.model_copy(update={"success": True})

    async def save_staging_payload(self, owner_id: str, payload: dict[str, Any]) -> str:
        """Store an extraction payload as a new staging artifact.

        Raises:
            TransientStoreError: If the object could not be written
        """
        result = await asyncio.to_thread(self.save_payload, owner_id, payload)
        if not result.success or result.artifact_id is None:
            raise TransientStoreError(result.error or "write failed")
        return result.artifact_id

    async def load_staging_payload(self, owner_id: str, artifact_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self.load_payload, owner_id, artifact_id)

    async def delete_staging_artifact(self, owner_id: str, artifact_id: str) -> None:
        """Remove a staging artifact.

        Raises:
            TransientStoreError: If the object could not be deleted
        """
        result = await asyncio.to_thread(self.remove_artifact, owner_id, artifact_id)
        if not result.success:
            raise TransientStoreError(result.error or "delete failed")
