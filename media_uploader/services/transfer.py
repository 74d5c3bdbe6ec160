"""
Transfer client for the chunked upload endpoint.

Single shot: one multipart request with the whole file. Chunked: chunks are
sent strictly in index order under one session id; only the final chunk's
response carries the resulting URL.
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, Optional

import httpx

from ..errors import NetworkError, ServerError, UploadTimeoutError
from ..models import ChunkPlan, PreparedFile, UploadKind
from ..protocols import ChunkCallback, ITransferBackend, ProgressCallback
from .planner import plan_chunks

logger = logging.getLogger(__name__)

UPLOAD_ENDPOINT = "upload.php"
DELETE_ENDPOINT = "delete.php"


def _read_range(path: Path, offset: int, length: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(length)


def _parse_json(response: httpx.Response) -> Dict:
    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise ServerError(f"Malformed response ({response.status_code}): {response.text[:200]!r}") from exc
    if not isinstance(payload, dict):
        raise ServerError(f"Malformed response ({response.status_code}): {payload!r}")
    return payload


class TransferClient(ITransferBackend):
    """
    ITransferBackend for the upload API.

    Usage:
        async with httpx.AsyncClient() as http:
            client = TransferClient("https://cdn.example.com/upload-api", http)
            url = await client.upload(prepared, client.plan(prepared.size, kind), timeout=300)
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient):
        self._base_url = base_url.rstrip("/")
        self._client = client

    @property
    def upload_url(self) -> str:
        return f"{self._base_url}/{UPLOAD_ENDPOINT}"

    def plan(self, size: int, kind: UploadKind, session_id: Optional[str] = None) -> ChunkPlan:
        return plan_chunks(size, session_id=session_id)

    def _base_headers(self, prepared: PreparedFile) -> Dict[str, str]:
        headers = {
            "X-File-Name": prepared.file_name,
            "X-File-Size": str(prepared.size),
            "X-File-Type": prepared.mime_type,
        }
        if prepared.target_id:
            headers["X-Sector-Id"] = prepared.target_id
        return headers

    async def upload(
        self,
        prepared: PreparedFile,
        plan: ChunkPlan,
        timeout: float,
        start_chunk: int = 0,
        on_chunk: Optional[ChunkCallback] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        if not plan.is_chunked:
            return await self._upload_single(prepared, timeout, progress_callback)
        return await self._upload_chunked(prepared, plan, timeout, start_chunk, on_chunk, progress_callback)

    async def _upload_single(
        self,
        prepared: PreparedFile,
        timeout: float,
        progress_callback: Optional[ProgressCallback],
    ) -> str:
        if progress_callback:
            await progress_callback(0)
        data = await asyncio.to_thread(prepared.path.read_bytes)
        payload = await self._send(
            headers=self._base_headers(prepared),
            files={"file": (prepared.file_name, data, prepared.mime_type)},
            timeout=timeout,
            label=prepared.file_name,
        )
        url = payload.get("url")
        if not url:
            raise ServerError(f"Upload of {prepared.file_name} succeeded but no URL was returned")
        if progress_callback:
            await progress_callback(100)
        logger.info("[transfer] Uploaded %s in one request", prepared.file_name)
        return url

    async def _upload_chunked(
        self,
        prepared: PreparedFile,
        plan: ChunkPlan,
        timeout: float,
        start_chunk: int,
        on_chunk: Optional[ChunkCallback],
        progress_callback: Optional[ProgressCallback],
    ) -> str:
        if start_chunk:
            logger.info(
                "[transfer] Resuming %s at chunk %d/%d (session %s)",
                prepared.file_name, start_chunk, plan.total_chunks, plan.session_id,
            )
        if progress_callback:
            await progress_callback(start_chunk / plan.total_chunks * 100)

        url: Optional[str] = None
        for index in range(start_chunk, plan.total_chunks):
            offset = index * plan.chunk_size
            length = min(plan.chunk_size, prepared.size - offset)
            chunk = await asyncio.to_thread(_read_range, prepared.path, offset, length)

            headers = self._base_headers(prepared)
            headers.update({
                "X-Upload-Session-Id": plan.session_id,
                "X-Chunk-Number": str(index),
                "X-Total-Chunks": str(plan.total_chunks),
            })
            payload = await self._send(
                headers=headers,
                files={"chunk": (prepared.file_name, chunk, prepared.mime_type)},
                timeout=timeout,
                label=f"{prepared.file_name} chunk {index + 1}/{plan.total_chunks}",
            )

            is_last = index == plan.total_chunks - 1
            if is_last:
                url = payload.get("url")
            elif payload.get("url"):
                logger.debug("[transfer] Ignoring URL on intermediate chunk %d", index)

            logger.debug("[transfer] Chunk %d/%d acknowledged", index + 1, plan.total_chunks)
            if on_chunk:
                await on_chunk(index)
            if progress_callback:
                await progress_callback((index + 1) / plan.total_chunks * 100)

        if not url:
            raise ServerError(f"Upload of {prepared.file_name} finished but no URL was returned")
        logger.info(
            "[transfer] Uploaded %s in %d chunks (session %s)",
            prepared.file_name, plan.total_chunks, plan.session_id,
        )
        return url

    async def _send(self, headers: Dict[str, str], files: Dict, timeout: float, label: str) -> Dict:
        try:
            response = await asyncio.wait_for(
                self._client.post(self.upload_url, headers=headers, files=files, timeout=None),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UploadTimeoutError(f"Request for {label} timed out after {timeout:.0f}s") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Network error uploading {label}: {exc}") from exc

        if not response.is_success:
            try:
                message = response.json().get("error") or response.reason_phrase
            except Exception:
                message = response.text[:200] or response.reason_phrase
            raise ServerError.from_status(response.status_code, message)

        payload = _parse_json(response)
        if not payload.get("success"):
            raise ServerError(f"Upload rejected for {label}: {payload.get('error') or 'unknown error'}")
        return payload

    async def delete(self, url: str) -> bool:
        """Best effort: failures are logged, never raised."""
        try:
            response = await self._client.post(f"{self._base_url}/{DELETE_ENDPOINT}", json={"url": url})
            if response.is_success and _parse_json(response).get("success"):
                logger.info("[transfer] Deleted %s", url)
                return True
            logger.warning("[transfer] Delete of %s failed: HTTP %s %s", url, response.status_code, response.text[:200])
        except (httpx.HTTPError, ServerError) as e:
            logger.warning("[transfer] Delete of %s failed: %s", url, e)
        return False

    async def heartbeat(self) -> None:
        """Cheap preflight request that keeps the connection warm."""
        await self._client.options(self.upload_url, timeout=10)
