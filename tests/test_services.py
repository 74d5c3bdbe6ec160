"""Tests for the datastore client, record repository and fingerprinting."""
import json
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from blake3 import blake3

from media_uploader.models import UploadKind
from media_uploader.services.api_client import HTTPAPIClient
from media_uploader.services.fingerprint import CHUNK_SIZE, blake3_file
from media_uploader.services.records import RestRecordRepository


class TestHTTPAPIClient:
    @pytest.mark.asyncio
    async def test_requires_context(self):
        client = HTTPAPIClient("https://db.test")
        with pytest.raises(RuntimeError, match="not initialized"):
            await client.get("/rest/v1/boulders")

    @pytest.mark.asyncio
    async def test_sends_api_key_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"id": "b1"}])

        async with HTTPAPIClient("https://db.test", "secret", transport=httpx.MockTransport(handler)) as api:
            response = await api.get("/rest/v1/boulders", params={"id": "eq.b1"})

        assert response.json() == [{"id": "b1"}]
        assert seen[0].headers["apikey"] == "secret"
        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert str(seen[0].url) == "https://db.test/rest/v1/boulders?id=eq.b1"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        statuses = [503, 200]

        def handler(request):
            return httpx.Response(statuses.pop(0), json={})

        async with HTTPAPIClient("https://db.test", transport=httpx.MockTransport(handler)) as api:
            response = await api.post("/rest/v1/upload_logs", json={"a": 1})

        assert response.status_code == 200
        assert statuses == []

    @pytest.mark.asyncio
    async def test_client_errors_raise(self):
        handler = lambda r: httpx.Response(409, json={"message": "duplicate key"})
        async with HTTPAPIClient("https://db.test", transport=httpx.MockTransport(handler)) as api:
            with pytest.raises(RuntimeError, match="API error 409 on PATCH"):
                await api.patch("/rest/v1/boulders", json={"x": 1})


class TestRestRecordRepository:
    @pytest.mark.parametrize("kind, table, column", [
        (UploadKind.VIDEO, "boulders", "beta_video_url"),
        (UploadKind.THUMBNAIL, "boulders", "thumbnail_url"),
        (UploadKind.IMAGE, "sectors", "image_url"),
    ])
    @pytest.mark.asyncio
    async def test_patches_media_column(self, kind, table, column):
        api = Mock()
        api.patch = AsyncMock()
        repository = RestRecordRepository(api)

        await repository.update_media_url("rec-1", kind, "https://cdn.test/uploads/x")

        api.patch.assert_awaited_once_with(
            f"/rest/v1/{table}",
            json={column: "https://cdn.test/uploads/x"},
            params={"id": "eq.rec-1"},
            headers={"Prefer": "return=minimal"},
        )

    @pytest.mark.asyncio
    async def test_over_http(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        async with HTTPAPIClient("https://db.test", transport=httpx.MockTransport(handler)) as api:
            await RestRecordRepository(api).update_media_url("b1", UploadKind.VIDEO, "https://cdn.test/v.mp4")

        assert seen[0].method == "PATCH"
        assert seen[0].url.path == "/rest/v1/boulders"
        assert json.loads(seen[0].content) == {"beta_video_url": "https://cdn.test/v.mp4"}


class TestFingerprint:
    @pytest.mark.asyncio
    async def test_matches_one_shot_hash(self, tmp_path):
        data = bytes(range(256)) * (CHUNK_SIZE // 256 * 2 + 7)
        path = tmp_path / "clip.mp4"
        path.write_bytes(data)

        assert await blake3_file(path) == blake3(data).hexdigest()

    @pytest.mark.asyncio
    async def test_differs_for_different_content(self, tmp_path):
        a = tmp_path / "a.jpg"
        b = tmp_path / "b.jpg"
        a.write_bytes(b"one")
        b.write_bytes(b"two")

        assert await blake3_file(a) != await blake3_file(b)
