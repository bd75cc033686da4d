"""Embedding and field-extraction service.

Black-box AI collaborator: text/image embeddings, structured field
extraction from product or invoice photos, and product identification.
Every method degrades instead of raising; a ``None`` embedding makes the
caller fall back to a deterministic placeholder vector.

Implementations:
    - NullEmbeddingService    no AI configured (dev/testing)
    - GeminiEmbeddingService  Google Generative Language REST API via httpx
"""

from __future__ import annotations

import base64
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import ValidationError

from .models import CamelModel

logger = logging.getLogger("shelfsync.embedding")

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

EXTRACTION_PROMPT = (
    "Analyze this image of a product or delivery note. Extract inventory details "
    "as JSON with the keys productName, manufacturer, category, expirationDate, "
    "quantity, quantityType, costPerUnit, supplier, deliveryDate. Omit values "
    "that are not present. Use YYYY-MM-DD for dates."
)


class ExtractedFields(CamelModel):
    """Partial inventory record read from an image."""

    product_name: str | None = None
    manufacturer: str | None = None
    category: str | None = None
    expiration_date: str | None = None
    quantity: int | None = None
    quantity_type: str | None = None
    cost_per_unit: float | None = None
    supplier: str | None = None
    delivery_date: str | None = None


class EmbeddingService(ABC):
    """Abstract interface for the AI collaborator."""

    @abstractmethod
    async def embed_text(self, text: str) -> list[float] | None:
        ...

    @abstractmethod
    async def embed_image(self, data: bytes, mime_type: str) -> list[float] | None:
        ...

    @abstractmethod
    async def extract_fields(self, data: bytes, mime_type: str) -> ExtractedFields:
        ...

    @abstractmethod
    async def read_field(
        self, data: bytes, mime_type: str, field_name: str
    ) -> str | None:
        """Read a single field value from a cropped image."""
        ...

    @abstractmethod
    async def identify_product(
        self, data: bytes, mime_type: str, candidates: list[str]
    ) -> str | None:
        ...

    async def close(self) -> None:
        """Release network resources."""


class NullEmbeddingService(EmbeddingService):
    """Used when no AI service is configured."""

    async def embed_text(self, text: str) -> list[float] | None:
        return None

    async def embed_image(self, data: bytes, mime_type: str) -> list[float] | None:
        return None

    async def extract_fields(self, data: bytes, mime_type: str) -> ExtractedFields:
        return ExtractedFields()

    async def read_field(
        self, data: bytes, mime_type: str, field_name: str
    ) -> str | None:
        return None

    async def identify_product(
        self, data: bytes, mime_type: str, candidates: list[str]
    ) -> str | None:
        return None


def _inline_part(data: bytes, mime_type: str) -> dict[str, Any]:
    return {
        "inline_data": {
            "mime_type": mime_type,
            "data": base64.b64encode(data).decode("ascii"),
        }
    }


def _response_text(body: dict[str, Any]) -> str:
    candidates = body.get("candidates") or []
    if not candidates:
        return ""
    parts = candidates[0].get("content", {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts).strip()


class GeminiEmbeddingService(EmbeddingService):
    """Gemini REST client."""

    def __init__(
        self,
        api_key: str,
        *,
        embedding_model: str = "text-embedding-004",
        extraction_model: str = "gemini-2.5-flash",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self.embedding_model = embedding_model
        self.extraction_model = extraction_model
        self._client = httpx.AsyncClient(
            base_url=GEMINI_API_BASE, timeout=timeout, transport=transport
        )

    async def _post(self, model: str, method: str, body: dict) -> dict | None:
        try:
            resp = await self._client.post(
                f"/models/{model}:{method}",
                params={"key": self._api_key},
                json=body,
            )
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Gemini %s (%s) failed: %s", method, model, e)
            return None

    async def _embed(self, parts: list[dict[str, Any]]) -> list[float] | None:
        body = await self._post(
            self.embedding_model,
            "embedContent",
            {
                "model": f"models/{self.embedding_model}",
                "content": {"parts": parts},
            },
        )
        if not body:
            return None
        values = body.get("embedding", {}).get("values")
        if not values:
            logger.warning("Gemini returned no embedding values")
            return None
        return values

    async def embed_text(self, text: str) -> list[float] | None:
        if not text or not text.strip():
            return None
        return await self._embed([{"text": text}])

    async def embed_image(self, data: bytes, mime_type: str) -> list[float] | None:
        return await self._embed([_inline_part(data, mime_type)])

    async def _generate(
        self,
        parts: list[dict[str, Any]],
        *,
        json_output: bool = False,
    ) -> str:
        body: dict[str, Any] = {"contents": [{"parts": parts}]}
        if json_output:
            body["generationConfig"] = {"responseMimeType": "application/json"}
        response = await self._post(self.extraction_model, "generateContent", body)
        return _response_text(response) if response else ""

    async def extract_fields(self, data: bytes, mime_type: str) -> ExtractedFields:
        text = await self._generate(
            [_inline_part(data, mime_type), {"text": EXTRACTION_PROMPT}],
            json_output=True,
        )
        if not text:
            return ExtractedFields()
        try:
            return ExtractedFields.model_validate(json.loads(text))
        except (ValueError, ValidationError) as e:
            logger.warning("Could not parse extracted fields: %s", e)
            return ExtractedFields()

    async def read_field(
        self, data: bytes, mime_type: str, field_name: str
    ) -> str | None:
        prompt = (
            f"This image contains the {field_name}. Extract ONLY the value for this "
            "field. Return just the raw value. For dates, use YYYY-MM-DD format."
        )
        text = await self._generate([_inline_part(data, mime_type), {"text": prompt}])
        return text or None

    async def identify_product(
        self, data: bytes, mime_type: str, candidates: list[str]
    ) -> str | None:
        if not candidates:
            return None
        prompt = (
            "Analyze this image. Identify the main product visible. From the "
            f"following list of known products, which one is it? "
            f"Product list: [{', '.join(candidates)}]. Respond with ONLY the name "
            'of the product from the list, or the exact text "NO_PRODUCT".'
        )
        text = await self._generate([_inline_part(data, mime_type), {"text": prompt}])
        return text if text in candidates else None

    async def close(self) -> None:
        await self._client.aclose()


def create_embedding_service(
    api_key: str = "",
    *,
    embedding_model: str = "text-embedding-004",
    extraction_model: str = "gemini-2.5-flash",
) -> EmbeddingService:
    if api_key:
        logger.info("Using Gemini embedding service (%s)", embedding_model)
        return GeminiEmbeddingService(
            api_key,
            embedding_model=embedding_model,
            extraction_model=extraction_model,
        )
    logger.info("No AI service configured; placeholder vectors will be used")
    return NullEmbeddingService()
