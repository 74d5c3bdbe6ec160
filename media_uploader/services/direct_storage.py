"""
Direct storage backend - fallback when the chunked upload API is not configured.

Objects go straight into a storage bucket over its REST API in one request
(``uploads/{uuid}.{ext}``); the public object URL is returned.
"""
import asyncio
import logging
import mimetypes
import uuid
from typing import Optional

import httpx

from ..errors import NetworkError, ServerError, UploadTimeoutError
from ..models import ChunkPlan, PreparedFile, UploadKind
from ..protocols import ChunkCallback, ITransferBackend, ProgressCallback

logger = logging.getLogger(__name__)

OBJECT_PREFIX = "uploads"


def object_extension(prepared: PreparedFile) -> str:
    suffix = prepared.path.suffix or (mimetypes.guess_extension(prepared.mime_type) or "")
    return suffix.lstrip(".").lower() or "bin"


class DirectStorageBackend(ITransferBackend):
    """ITransferBackend writing whole objects to a storage bucket."""

    def __init__(self, storage_url: str, api_key: str, bucket: str, client: httpx.AsyncClient):
        self._storage_url = storage_url.rstrip("/")
        self._bucket = bucket
        self._client = client
        self._headers = {"apikey": api_key, "Authorization": f"Bearer {api_key}"}

    @property
    def public_prefix(self) -> str:
        return f"{self._storage_url}/storage/v1/object/public/{self._bucket}/"

    def plan(self, size: int, kind: UploadKind, session_id: Optional[str] = None) -> ChunkPlan:
        return ChunkPlan(chunk_size=max(size, 1), total_chunks=1)

    async def upload(
        self,
        prepared: PreparedFile,
        plan: ChunkPlan,
        timeout: float,
        start_chunk: int = 0,
        on_chunk: Optional[ChunkCallback] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        object_path = f"{OBJECT_PREFIX}/{uuid.uuid4()}.{object_extension(prepared)}"
        endpoint = f"{self._storage_url}/storage/v1/object/{self._bucket}/{object_path}"
        headers = dict(self._headers)
        headers.update({"Content-Type": prepared.mime_type, "x-upsert": "true", "cache-control": "3600"})

        if progress_callback:
            await progress_callback(0)
        data = await asyncio.to_thread(prepared.path.read_bytes)
        try:
            response = await asyncio.wait_for(
                self._client.post(endpoint, content=data, headers=headers, timeout=None),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UploadTimeoutError(f"Storage upload of {prepared.file_name} timed out after {timeout:.0f}s") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Network error uploading {prepared.file_name}: {exc}") from exc

        if not response.is_success:
            raise ServerError.from_status(response.status_code, response.text[:200] or response.reason_phrase)

        if on_chunk:
            await on_chunk(0)
        if progress_callback:
            await progress_callback(100)
        url = self.public_prefix + object_path
        logger.info("[storage] Uploaded %s to %s", prepared.file_name, object_path)
        return url

    async def delete(self, url: str) -> bool:
        """Best effort: only objects of this bucket can be removed."""
        if not url.startswith(self.public_prefix):
            logger.warning("[storage] %s is not an object of bucket %s", url, self._bucket)
            return False
        object_path = url[len(self.public_prefix):]
        try:
            response = await self._client.request(
                "DELETE",
                f"{self._storage_url}/storage/v1/object/{self._bucket}",
                json={"prefixes": [object_path]},
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            logger.warning("[storage] Delete of %s failed: %s", url, e)
            return False
        if not response.is_success:
            logger.warning("[storage] Delete of %s failed: HTTP %s", url, response.status_code)
            return False
        logger.info("[storage] Deleted %s", object_path)
        return True

    async def heartbeat(self) -> None:
        await self._client.head(f"{self._storage_url}/storage/v1/object/{self._bucket}", headers=self._headers, timeout=10)
