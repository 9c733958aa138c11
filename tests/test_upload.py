import pytest
from httpx import ASGITransport, AsyncClient

from mediaconv.main import create_app


@pytest.mark.asyncio
async def test_upload_reject_unsupported_file_type(ctx, files_of):
    # Uploading a plain text file should return 400
    transport = ASGITransport(app=create_app(ctx))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/upload",
            files={"file": ("test.txt", b"hello world", "text/plain")},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "unsupported_type"
    assert files_of(ctx) == []


@pytest.mark.asyncio
async def test_upload_reject_large_file(ctx, settings, files_of):
    settings.tiers.free_max_upload_bytes = 100
    transport = ASGITransport(app=create_app(ctx))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/upload",
            files={"file": ("big.mp4", b"x" * 2048, "video/mp4")},
        )
        assert resp.status_code == 413
        body = resp.json()
        assert body["error"] == "file_too_large"
        assert body["upgrade"] is True
        assert "limit" in body["detail"].lower()
    assert files_of(ctx) == []
    assert ctx.quota.record("127.0.0.1") is None
