"""
Object storage client for source videos and extracted frames.

Supports Cloudflare R2 (S3-compatible) with mock mode for local development.
Using R2 instead of S3 because:
- No egress fees (frames are fetched by the vision model and the browser)
- Public bucket URLs can be handed straight to the model
- Same S3 API means we could swap to actual S3 if needed

Writes are create-only. Paths are deterministic, so a second write to the
same path is a retry, and we report it as ObjectExistsError rather than
silently overwriting.

Mock mode stores objects in memory, enabling API testing without
provisioning actual object storage.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from botocore.exceptions import ClientError

from ...core.errors import (
    ObjectExistsError,
    StorageError,
    StoragePermissionError,
    StorageQuotaError,
)

logger = logging.getLogger(__name__)


_EXISTS_CODES = {"PreconditionFailed", "412"}
_PERMISSION_CODES = {"AccessDenied", "Forbidden", "403", "AllAccessDisabled"}
_QUOTA_CODES = {"EntityTooLarge", "413", "QuotaExceeded", "InsufficientStorage"}


@dataclass
class StorageConfig:
    """
    Configuration for R2/S3-compatible storage.

    public_base_url is where the bucket is served from (custom domain or
    r2.dev). It must be reachable by the vision model.
    """
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    endpoint_url: str
    public_base_url: str
    region: str = "auto"  # R2 uses 'auto' for region


def translate_client_error(error: ClientError, path: str) -> StorageError:
    """Map an S3 ClientError to our storage exception family."""
    code = str(error.response.get("Error", {}).get("Code", ""))
    status = str(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
    message = error.response.get("Error", {}).get("Message", str(error))

    if code in _EXISTS_CODES or status == "412":
        return ObjectExistsError(f"Object already exists: {path}")
    if code in _PERMISSION_CODES or status == "403":
        return StoragePermissionError(
            f"Storage refused the upload of {path} (security policy or credentials): {message}"
        )
    if code in _QUOTA_CODES or status == "413":
        return StorageQuotaError(f"Storage rejected {path} as too large or over quota: {message}")
    return StorageError(f"Storage operation failed for {path}: {message}")


class R2StorageClient:
    """
    Cloudflare R2 object storage client.

    Uses boto3 because R2 is S3-compatible. boto3 is synchronous, so every
    call runs in a worker thread to keep the event loop free.
    """

    def __init__(self, config: StorageConfig) -> None:
        """
        Initialize R2 client with boto3.

        We import boto3 here (not at module level) because mock mode
        doesn't need a client at all.
        """
        import boto3
        from botocore.config import Config

        self._config = config

        # R2 requires v4 signatures and has specific endpoint patterns
        boto_config = Config(
            signature_version='s3v4',
            s3={'addressing_style': 'path'},
        )

        self._s3_client = boto3.client(
            's3',
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
            config=boto_config,
        )

        logger.info(
            "Initialized R2 storage client",
            extra={
                "bucket": config.bucket_name,
                "endpoint": config.endpoint_url,
            }
        )

    async def upload_object(self, path: str, data: bytes, content_type: str) -> None:
        """
        Create an object at path.

        IfNoneMatch="*" makes the write conditional, so an existing object
        comes back as 412 PreconditionFailed -> ObjectExistsError.
        """
        try:
            await asyncio.to_thread(
                self._s3_client.put_object,
                Bucket=self._config.bucket_name,
                Key=path,
                Body=data,
                ContentType=content_type,
                IfNoneMatch="*",
            )
        except ClientError as e:
            error = translate_client_error(e, path)
            if not isinstance(error, ObjectExistsError):
                logger.error(
                    "Failed to upload object",
                    extra={"path": path, "size_bytes": len(data), "error": str(e)}
                )
            raise error from e

        logger.debug(
            "Uploaded object",
            extra={"path": path, "size_bytes": len(data)}
        )

    def public_url(self, path: str) -> str:
        return f"{self._config.public_base_url.rstrip('/')}/{path}"

    async def delete_prefix(self, prefix: str) -> int:
        """
        Delete every object under prefix.

        Used when a video is hard-deleted. Returns count of deleted objects.
        """
        count = 0

        try:
            paginator = self._s3_client.get_paginator('list_objects_v2')
            pages = await asyncio.to_thread(
                lambda: list(paginator.paginate(Bucket=self._config.bucket_name, Prefix=prefix))
            )

            for page in pages:
                objects_to_delete = [
                    {'Key': obj['Key']}
                    for obj in page.get('Contents', [])
                ]
                if not objects_to_delete:
                    continue

                await asyncio.to_thread(
                    self._s3_client.delete_objects,
                    Bucket=self._config.bucket_name,
                    Delete={'Objects': objects_to_delete},
                )
                count += len(objects_to_delete)

        except ClientError as e:
            logger.error(
                "Failed to delete objects",
                extra={"prefix": prefix, "error": str(e)}
            )
            raise translate_client_error(e, prefix) from e

        logger.info("Deleted objects", extra={"prefix": prefix, "count": count})
        return count


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

class MockStorageClient:
    """
    In-memory storage for local development.

    Objects live in a dict and "URLs" are mock URIs. Create-only
    semantics match R2 so the pipeline's retry handling is exercised.
    """

    def __init__(self, base_url: str = "mock://storage") -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self._base_url = base_url
        logger.info("Initialized mock storage client (in-memory)")

    async def upload_object(self, path: str, data: bytes, content_type: str) -> None:
        if path in self.objects:
            raise ObjectExistsError(f"Object already exists: {path}")

        self.objects[path] = data
        self.content_types[path] = content_type

        logger.debug(
            "Stored object in mock storage",
            extra={"path": path, "size_bytes": len(data)}
        )

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/{path}"

    async def delete_prefix(self, prefix: str) -> int:
        keys_to_delete = [key for key in self.objects if key.startswith(prefix)]

        for key in keys_to_delete:
            del self.objects[key]
            self.content_types.pop(key, None)

        logger.debug(
            "Deleted objects from mock storage",
            extra={"prefix": prefix, "count": len(keys_to_delete)}
        )
        return len(keys_to_delete)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_storage_client(
    config: Optional[StorageConfig] = None,
    mock_mode: bool = False,
):
    """
    Create storage client based on configuration.

    Args:
        config: Storage configuration (required if not mock_mode)
        mock_mode: If True, return mock client for testing

    Returns:
        R2StorageClient or MockStorageClient
    """
    if mock_mode:
        return MockStorageClient()

    if config is None:
        raise ValueError("config is required when not in mock mode")

    return R2StorageClient(config)
