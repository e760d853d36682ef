"""Blob storage: get/set of whole objects by bucket and key."""

import asyncio
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import httpx

from taxis.core.config import settings
from taxis.core.exceptions import StorageError
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)


class BlobStore:
    """Minimal object-store interface used by the pipeline.

    ``get_bytes`` returns None when the object does not exist; every other
    failure raises ``StorageError``.
    """

    async def get_bytes(self, bucket: str, key: str) -> Optional[bytes]:
        raise NotImplementedError

    async def put(
        self,
        bucket: str,
        key: str,
        content: bytes | str,
        content_type: str = "application/octet-stream",
    ) -> None:
        raise NotImplementedError

    async def get_text(self, bucket: str, key: str) -> Optional[str]:
        """Fetch an object decoded as UTF-8 text."""
        content = await self.get_bytes(bucket, key)
        if content is None:
            return None
        return content.decode("utf-8-sig")


class SupabaseBlobStore(BlobStore):
    """Blob store backed by Supabase storage."""

    def __init__(
        self,
        url: Optional[str] = None,
        service_role_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = (url or settings.storage.supabase_url).rstrip("/")
        self.service_role_key = service_role_key or settings.storage.supabase_service_role_key
        self.base_api_url = f"{self.url}/storage/v1"
        self.timeout = timeout or settings.http_timeout
        self.headers = {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key,
        }
        self._transport = transport

    def _object_url(self, bucket: str, key: str) -> str:
        return f"{self.base_api_url}/object/{quote(bucket)}/{quote(key)}"

    async def get_bytes(self, bucket: str, key: str) -> Optional[bytes]:
        """Download an object.

        Args:
            bucket: Bucket name.
            key: Object path within the bucket.

        Returns:
            The object bytes, or None if the object does not exist.

        Raises:
            StorageError: If the download fails for any other reason.
        """
        url = self._object_url(bucket, key)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers=self.headers)
        except httpx.HTTPError as e:
            LOGGER.error(f"Error downloading blob: {e}", extra={"bucket": bucket, "key": key})
            raise StorageError(f"Storage download error: {e}", original_error=e)

        # Supabase answers 400 with a not_found body for missing objects
        if response.status_code == 404 or (
            response.status_code == 400 and "not_found" in response.text.lower()
        ):
            return None

        if response.status_code != 200:
            LOGGER.error(
                f"Failed to download blob: {response.text}",
                extra={"bucket": bucket, "key": key, "status_code": response.status_code},
            )
            raise StorageError(f"Download failed: {response.text}")

        return response.content

    async def put(
        self,
        bucket: str,
        key: str,
        content: bytes | str,
        content_type: str = "application/octet-stream",
    ) -> None:
        """Create or overwrite an object.

        Raises:
            StorageError: If the upload fails.
        """
        body = content.encode("utf-8") if isinstance(content, str) else content
        url = self._object_url(bucket, key)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers={**self.headers, "Content-Type": content_type, "x-upsert": "true"},
                    content=body,
                )
        except httpx.HTTPError as e:
            LOGGER.error(f"Error uploading blob: {e}", extra={"bucket": bucket, "key": key})
            raise StorageError(f"Storage upload error: {e}", original_error=e)

        if response.status_code not in (200, 201):
            LOGGER.error(
                f"Failed to upload blob: {response.text}",
                extra={"bucket": bucket, "key": key, "status_code": response.status_code},
            )
            raise StorageError(f"Upload failed: {response.text}")


class LocalBlobStore(BlobStore):
    """Blob store on the local filesystem, one directory per bucket."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.storage.local_root)

    def _path(self, bucket: str, key: str) -> Path:
        path = (self.root / bucket / key).resolve()
        if not path.is_relative_to((self.root / bucket).resolve()):
            raise StorageError(f"Invalid blob key: {key}")
        return path

    async def get_bytes(self, bucket: str, key: str) -> Optional[bytes]:
        path = self._path(bucket, key)
        if not path.exists():
            return None
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise StorageError(f"Local read error: {e}", original_error=e)

    async def put(
        self,
        bucket: str,
        key: str,
        content: bytes | str,
        content_type: str = "application/octet-stream",
    ) -> None:
        body = content.encode("utf-8") if isinstance(content, str) else content
        path = self._path(bucket, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, body)
        except OSError as e:
            raise StorageError(f"Local write error: {e}", original_error=e)


_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """Process-wide blob store, built once from settings."""
    global _blob_store
    if _blob_store is None:
        backend = settings.storage.backend.lower()
        if backend == "supabase":
            _blob_store = SupabaseBlobStore()
        else:
            _blob_store = LocalBlobStore()
        LOGGER.info(f"Blob store initialized: {_blob_store.__class__.__name__}")
    return _blob_store
