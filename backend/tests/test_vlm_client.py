"""
Tests for image download limits and VLM reply handling.
"""
import httpx
import pytest

from mealwise.core.exceptions import MalformedOutputError, ToolExecutionError
from mealwise.core.vlm_client import VLMClient

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def client_for(handler) -> VLMClient:
    return VLMClient(transport=httpx.MockTransport(handler))


async def test_fetch_image_returns_body():
    client = client_for(lambda request: httpx.Response(200, content=PNG, headers={"content-type": "image/png"}))
    assert await client.fetch_image("https://example.com/pantry.png") == PNG


async def test_fetch_image_rejects_non_image():
    client = client_for(lambda request: httpx.Response(
        200, content=b"<html></html>", headers={"content-type": "text/html; charset=utf-8"}
    ))
    with pytest.raises(ToolExecutionError, match="not an image"):
        await client.fetch_image("https://example.com/page.jpg")


async def test_fetch_image_rejects_oversized_body():
    client = client_for(lambda request: httpx.Response(200, content=PNG, headers={"content-type": "image/png"}))
    client.settings = client.settings.model_copy(update={"image_max_bytes": 16})
    with pytest.raises(ToolExecutionError, match="larger than 16 bytes"):
        await client.fetch_image("https://example.com/huge.png")


async def test_fetch_image_error_status():
    client = client_for(lambda request: httpx.Response(404, headers={"content-type": "image/png"}))
    with pytest.raises(ToolExecutionError, match="could not fetch image"):
        await client.fetch_image("https://example.com/missing.png")


async def test_unexpected_vlm_reply_is_malformed(monkeypatch):
    client = VLMClient()

    async def reply(url, payload, log_prefix="AI Client"):
        return {"error": "model not loaded"}

    monkeypatch.setattr(client, "_make_request", reply)
    with pytest.raises(MalformedOutputError):
        await client.analyze_pantry_image(PNG)
