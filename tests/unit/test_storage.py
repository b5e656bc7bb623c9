"""Tests for the storage REST client."""

from __future__ import annotations

import httpx
import pytest

from inspectra.config import StorageConfig
from inspectra.storage import StorageError, SupabaseStorage

CONFIG = StorageConfig(url="https://project.storage.test/", service_key="service-key")


def _storage(handler) -> SupabaseStorage:
    return SupabaseStorage(CONFIG, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestSupabaseStorage:
    """Test SupabaseStorage upload and signed URLs."""

    def test_requires_configuration(self):
        with pytest.raises(KeyError):
            SupabaseStorage(StorageConfig())

    @pytest.mark.asyncio
    async def test_upload_never_upserts(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"Key": "signatures/a/b.png"})

        storage = _storage(handler)
        key = await storage.upload("a/b.png", b"png-bytes", "image/png")
        await storage.aclose()

        assert key == "a/b.png"
        [request] = seen
        assert str(request.url) == "https://project.storage.test/storage/v1/object/signatures/a/b.png"
        assert request.headers["x-upsert"] == "false"
        assert request.headers["Authorization"] == "Bearer service-key"
        assert request.headers["Content-Type"] == "image/png"
        assert request.content == b"png-bytes"

    @pytest.mark.asyncio
    async def test_upload_conflict_raises(self):
        storage = _storage(lambda request: httpx.Response(409, json={"error": "Duplicate"}))

        with pytest.raises(StorageError):
            await storage.upload("a/b.png", b"png-bytes")
        await storage.aclose()

    @pytest.mark.asyncio
    async def test_relative_signed_url_is_rooted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/storage/v1/object/sign/signatures/a/b.png"
            return httpx.Response(200, json={"signedURL": "/object/sign/signatures/a/b.png?token=t"})

        storage = _storage(handler)
        url = await storage.signed_url("a/b.png", 600)
        await storage.aclose()

        assert url == "https://project.storage.test/storage/v1/object/sign/signatures/a/b.png?token=t"

    @pytest.mark.asyncio
    async def test_signed_url_failure(self):
        storage = _storage(lambda request: httpx.Response(500))

        with pytest.raises(StorageError):
            await storage.signed_url("a/b.png", 600)
        await storage.aclose()
