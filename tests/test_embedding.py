"""Tests for the Gemini embedding client over a mock transport."""

import json

import httpx
import pytest

from shelfsync.embedding import (
    GeminiEmbeddingService,
    NullEmbeddingService,
    create_embedding_service,
)


def gemini(handler):
    return GeminiEmbeddingService("gem-key", transport=httpx.MockTransport(handler))


def generated(text):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


class TestEmbeddings:
    @pytest.mark.asyncio
    async def test_embed_text(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"embedding": {"values": [0.1, 0.2]}})

        service = gemini(handler)

        assert await service.embed_text("oat milk") == [0.1, 0.2]
        request = requests[0]
        assert request.url.path.endswith("/models/text-embedding-004:embedContent")
        assert request.url.params["key"] == "gem-key"
        assert json.loads(request.content)["content"] == {"parts": [{"text": "oat milk"}]}
        await service.close()

    @pytest.mark.asyncio
    async def test_blank_text_is_not_sent(self):
        service = gemini(lambda request: pytest.fail("no request expected"))
        assert await service.embed_text("   ") is None

    @pytest.mark.asyncio
    async def test_http_error_degrades_to_none(self):
        service = gemini(lambda request: httpx.Response(429, json={"error": "quota"}))
        assert await service.embed_text("oat milk") is None

    @pytest.mark.asyncio
    async def test_missing_values_degrade_to_none(self):
        service = gemini(lambda request: httpx.Response(200, json={"embedding": {}}))
        assert await service.embed_text("oat milk") is None


class TestExtraction:
    @pytest.mark.asyncio
    async def test_extract_fields(self):
        body = {"productName": "Oat Milk", "quantity": 12, "expirationDate": "2024-12-01"}
        service = gemini(lambda request: generated(json.dumps(body)))

        fields = await service.extract_fields(b"\xff\xd8", "image/jpeg")

        assert fields.product_name == "Oat Milk"
        assert fields.quantity == 12
        assert fields.expiration_date == "2024-12-01"

    @pytest.mark.asyncio
    async def test_unparseable_extraction_is_empty(self):
        service = gemini(lambda request: generated("not json"))

        fields = await service.extract_fields(b"img", "image/png")

        assert fields.model_dump(exclude_none=True) == {}

    @pytest.mark.asyncio
    async def test_identify_product_only_returns_candidates(self):
        service = gemini(lambda request: generated("Oat Milk"))
        candidates = ["Oat Milk", "Tea"]
        assert await service.identify_product(b"img", "image/png", candidates) == "Oat Milk"

        service = gemini(lambda request: generated("NO_PRODUCT"))
        assert await service.identify_product(b"img", "image/png", ["Oat Milk"]) is None

    @pytest.mark.asyncio
    async def test_read_field(self):
        service = gemini(lambda request: generated(" 2025-03-01 "))
        assert await service.read_field(b"img", "image/png", "expiration date") == "2025-03-01"


class TestFactory:
    def test_no_key_selects_null_service(self):
        assert isinstance(create_embedding_service(""), NullEmbeddingService)

    def test_key_selects_gemini(self):
        assert isinstance(create_embedding_service("k"), GeminiEmbeddingService)
