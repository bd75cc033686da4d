"""Stock lines in the ``items`` collection.

Every write tags the line with the shop it belongs to; the point id is the
line's ``inventory_uuid``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import date
from typing import Any

from ..gateway import StoreGateway
from ..models import (
    BatchLineItem,
    BatchRecord,
    ProductDefinition,
    ProductImage,
    ShopContext,
    StockItem,
    StockStatus,
    utc_now_iso,
)
from ..queries import match

logger = logging.getLogger("shelfsync.services.inventory")

DEFAULT_MARKUP = 1.4
UNKNOWN_PRODUCT = "unknown product"


def default_expiration(delivery_date: str) -> str:
    """Delivery date plus one calendar year (Feb 29 rolls to Mar 1)."""
    delivered = date.fromisoformat(delivery_date[:10])
    try:
        return delivered.replace(year=delivered.year + 1).isoformat()
    except ValueError:
        return date(delivered.year + 1, 3, 1).isoformat()


def default_sell_price(buy_price: float | None, markup: float = DEFAULT_MARKUP) -> float | None:
    if not buy_price:
        return None
    return round(buy_price * markup, 2)


class InventoryService:
    def __init__(self, gateway: StoreGateway, *, markup: float = DEFAULT_MARKUP) -> None:
        self._gateway = gateway
        self.markup = markup
        self._product_names: dict[str, str] = {}

    async def _product_name(self, product_id: str) -> str:
        if product_id not in self._product_names:
            product = await self._gateway.retrieve(ProductDefinition, product_id)
            if product is None:
                return UNKNOWN_PRODUCT
            self._product_names[product_id] = product.name
        return self._product_names[product_id]

    def remember_product(self, product: ProductDefinition) -> None:
        self._product_names[product.id] = product.name

    async def persist_stock_item(
        self,
        shop: ShopContext,
        item: StockItem,
        scan_metadata: dict[str, Any] | None = None,
    ) -> StockItem:
        """Insert or replace one stock line, filling defaults.

        The sell price defaults to the buy price times the markup and an
        emptied line is stored as EMPTY.
        """
        updates: dict[str, Any] = {"shop_id": shop.id, "updated_at": utc_now_iso()}
        if item.sell_price is None:
            updates["sell_price"] = default_sell_price(item.buy_price, self.markup)
        if item.quantity == 0 and item.status == StockStatus.ACTIVE:
            updates["status"] = StockStatus.EMPTY
        if scan_metadata is not None:
            updates["scan_metadata"] = scan_metadata
        if not item.created_by_user_id:
            updates["created_by_user_id"] = shop.id
        stored = item.model_copy(update=updates)

        vector = stored.embeddings or await self._gateway.embed_text(
            await self._product_name(stored.product_id)
        )
        await self._gateway.upsert(stored, vector=vector)
        return stored

    async def get_stock_item(self, inventory_uuid: str) -> StockItem | None:
        return await self._gateway.retrieve(StockItem, inventory_uuid)

    async def update_with_scan(
        self,
        shop: ShopContext,
        inventory_uuid: str,
        *,
        scan_metadata: dict[str, Any] | None = None,
        images: list[ProductImage] | None = None,
        location: str | None = None,
    ) -> StockItem:
        existing = await self.get_stock_item(inventory_uuid)
        if existing is None or existing.shop_id != shop.id:
            raise LookupError(f"Inventory item {inventory_uuid} not found")

        updated = existing.model_copy(
            update={
                "scan_metadata": scan_metadata or existing.scan_metadata,
                "images": [*existing.images, *(images or [])],
                "location": location or existing.location,
                "updated_at": utc_now_iso(),
            }
        )
        await self._gateway.upsert(updated, vector=existing.embeddings)
        return updated

    async def delete_stock_item(self, shop: ShopContext, item: StockItem) -> bool:
        if item.inventory_uuid:
            return await self._gateway.delete(StockItem, [item.inventory_uuid])
        return await self._gateway.delete_where(
            StockItem,
            [match("shopId", shop.id), match("productId", item.product_id)],
        )

    def build_from_batch(
        self,
        shop: ShopContext,
        batch: BatchRecord,
        line_items: list[BatchLineItem],
        scan_data: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> list[StockItem]:
        """Stock lines for the valid ``line_items`` of ``batch``, not yet stored."""
        fallback_expiration = default_expiration(batch.delivery_date)
        now = utc_now_iso()
        items = []
        for line in line_items:
            if not line.is_valid:
                continue
            scan = (scan_data or {}).get(line.product_id or "", {})
            items.append(
                StockItem(
                    inventory_uuid=str(uuid.uuid4()),
                    shop_id=shop.id,
                    product_id=line.product_id,
                    batch_id=batch.id,
                    supplier_id=batch.supplier_id,
                    buy_price=line.cost,
                    sell_price=line.sell_price
                    if line.sell_price is not None
                    else round(line.cost * self.markup, 2),
                    quantity=line.quantity,
                    expiration=line.expiration or fallback_expiration,
                    location=line.location,
                    share_scope=list(line.share_scope),
                    images=scan.get("images") or [],
                    scan_metadata=scan.get("scan_metadata"),
                    created_by_user_id=batch.created_by_user_id or shop.id,
                    created_at=now,
                    updated_at=now,
                )
            )
        return items

    async def write_stock_items(self, items: list[StockItem]) -> bool:
        """Upsert stock lines in one call, each embedded by product name."""
        if not items:
            return True
        vectors = [
            item.embeddings
            or await self._gateway.embed_text(await self._product_name(item.product_id))
            for item in items
        ]
        written = await self._gateway.upsert_many(items, vectors=vectors)
        if written:
            logger.info("Added %d stock line(s) for batch %s", len(items), items[0].batch_id)
        return written

    async def create_from_batch(
        self,
        shop: ShopContext,
        batch: BatchRecord,
        line_items: list[BatchLineItem] | None = None,
        scan_data: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> list[StockItem]:
        items = self.build_from_batch(
            shop, batch, batch.line_items if line_items is None else line_items, scan_data
        )
        await self.write_stock_items(items)
        return items

    async def list_stock_items(
        self, shop: ShopContext, *, include_unavailable: bool = False
    ) -> list[StockItem]:
        items = await self._gateway.fetch_all(StockItem, shop.id)
        if include_unavailable:
            return items
        return [item for item in items if item.is_available]

    async def search_stock(
        self, shop: ShopContext, embedding: list[float], limit: int = 10
    ) -> list[StockItem]:
        """Available stock lines of ``shop`` nearest to ``embedding``."""
        results = await self._gateway.search(
            StockItem,
            embedding,
            shop_id=shop.id,
            status=StockStatus.ACTIVE.value,
            quantity_min=0,
            limit=limit,
        )
        return [item for item, _score in results]
