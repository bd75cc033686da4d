"""Field image captures used for scan-and-learn.

A capture is keyed by shop, product and field, so capturing the same field
of the same product again replaces the earlier image.
"""

from __future__ import annotations

import base64
import logging
import re

from ..gateway import StoreGateway
from ..models import ShopContext, VisualCapture
from ..queries import match

logger = logging.getLogger("shelfsync.services.visual")

_WHITESPACE = re.compile(r"\s+")


def slugify_product(name: str) -> str:
    return _WHITESPACE.sub("-", name.strip().lower()) or "unlabeled-product"


def capture_id(shop: ShopContext, product_key: str, field_name: str) -> str:
    return f"{shop.id}:{product_key}-{field_name}"


class VisualCaptureService:
    def __init__(self, gateway: StoreGateway) -> None:
        self._gateway = gateway

    async def capture_field(
        self,
        shop: ShopContext,
        product_name: str,
        field_name: str,
        image: bytes,
        *,
        mime_type: str = "image/jpeg",
        product_id: str | None = None,
        read_value: bool = True,
    ) -> VisualCapture:
        product_key = (product_id or "").strip() or slugify_product(product_name)
        extracted = None
        if read_value:
            try:
                extracted = await self._gateway.embedder.read_field(image, mime_type, field_name)
            except Exception as e:
                logger.warning("Field read failed for %s/%s: %s", product_key, field_name, e)

        capture = VisualCapture(
            id=capture_id(shop, product_key, field_name),
            shop_id=shop.id,
            product_name=product_name,
            field_name=field_name,
            product_id=product_id,
            mime_type=mime_type,
            image_base64=base64.b64encode(image).decode("ascii"),
            extracted_value=extracted,
        )
        await self._gateway.upsert(capture)
        return capture

    async def list_captures(
        self, shop: ShopContext, product_id: str | None = None
    ) -> list[VisualCapture]:
        conditions = [match("productId", product_id)] if product_id else None
        return await self._gateway.fetch_all(VisualCapture, shop.id, conditions=conditions)

    async def learned_fields(
        self, shop: ShopContext, product_name: str
    ) -> dict[str, VisualCapture]:
        """Latest capture per field for a product, matched by name."""
        wanted = slugify_product(product_name)
        fields: dict[str, VisualCapture] = {}
        for capture in await self.list_captures(shop):
            if slugify_product(capture.product_name) != wanted:
                continue
            current = fields.get(capture.field_name)
            if current is None or capture.created_at > current.created_at:
                fields[capture.field_name] = capture
        return fields
