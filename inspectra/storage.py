"""Object storage for signature images.

Objects are addressed by a bucket-relative key. Keys are what gets persisted;
retrieval always goes through a short-lived signed URL minted on read.
"""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from inspectra.config import StorageConfig
from inspectra.core.errors import InternalError

logger = structlog.get_logger(__name__)


class StorageError(InternalError):
    """Upload or URL signing failed."""


class ObjectStorage(Protocol):
    async def upload(self, key: str, content: bytes, content_type: str) -> str: ...

    async def signed_url(self, key: str, expires_in: int) -> str: ...


class SupabaseStorage:
    """Storage REST API (``/storage/v1``) over httpx.

    Uploads never overwrite: an existing key is reported as a failure.
    """

    def __init__(self, config: StorageConfig, client: httpx.AsyncClient | None = None):
        if not config.url or not config.service_key:
            raise KeyError("STORAGE_URL and STORAGE_SERVICE_KEY are required for object storage")

        self.config = config
        self.bucket = config.signatures_bucket
        self.base_api_url = f"{config.url.rstrip('/')}/storage/v1"
        self.headers = {
            "Authorization": f"Bearer {config.service_key}",
            "apikey": config.service_key,
        }
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

    async def upload(self, key: str, content: bytes, content_type: str = "image/png") -> str:
        url = f"{self.base_api_url}/object/{self.bucket}/{key}"
        try:
            response = await self._client.post(
                url,
                headers={**self.headers, "Content-Type": content_type, "x-upsert": "false"},
                content=content,
            )
        except httpx.HTTPError as e:
            logger.error("storage_upload_error", key=key, error=str(e))
            raise StorageError(f"Storage upload error: {e}") from e

        if response.status_code != 200:
            logger.error("storage_upload_failed", key=key, status_code=response.status_code)
            raise StorageError(f"Upload failed with status {response.status_code}")

        return key

    async def signed_url(self, key: str, expires_in: int) -> str:
        url = f"{self.base_api_url}/object/sign/{self.bucket}/{key}"
        try:
            response = await self._client.post(
                url, headers=self.headers, json={"expiresIn": expires_in}
            )
        except httpx.HTTPError as e:
            logger.error("storage_sign_error", key=key, error=str(e))
            raise StorageError(f"Signed URL error: {e}") from e

        if response.status_code != 200:
            logger.error("storage_sign_failed", key=key, status_code=response.status_code)
            raise StorageError(f"Failed to generate signed URL ({response.status_code})")

        signed_path = response.json().get("signedURL")
        if not signed_path:
            raise StorageError("Storage response did not contain signedURL")

        # Relative paths are rooted at the storage API
        if signed_path.startswith("/"):
            return f"{self.base_api_url}{signed_path}"
        return signed_path

    async def aclose(self) -> None:
        await self._client.aclose()
