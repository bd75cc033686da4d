"""Canonical product catalog.

Products are global (not shop-scoped). Create and update append an audit
entry naming the acting user and shop.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from ..gateway import StoreGateway
from ..models import (
    AuditEntry,
    ProductDefinition,
    ShopContext,
    StockItem,
    utc_now_iso,
)
from ..queries import match_any
from ..vectors import vector_problem

logger = logging.getLogger("shelfsync.services.catalog")

_EDITABLE_FIELDS = (
    "name",
    "manufacturer",
    "category",
    "description",
    "default_supplier_id",
    "images",
    "embeddings",
)


class ProductNotFoundError(LookupError):
    """Raised when a product id does not resolve to a stored product."""


def _audit(shop: ShopContext | None, user_id: str | None, action: str) -> AuditEntry | None:
    if shop is None and user_id is None:
        return None
    return AuditEntry(
        user_id=user_id or (shop.id if shop else ""),
        shop_id=shop.id if shop else None,
        action=action,
    )


class ProductCatalog:
    def __init__(self, gateway: StoreGateway) -> None:
        self._gateway = gateway

    async def list_products(self) -> list[ProductDefinition]:
        return await self._gateway.fetch_all(ProductDefinition)

    async def get_product(self, product_id: str) -> ProductDefinition | None:
        return await self._gateway.retrieve(ProductDefinition, product_id)

    async def products_for_shop(self, shop: ShopContext) -> list[ProductDefinition]:
        """Products the shop has ever stocked, including empty and expired lines."""
        items = await self._gateway.fetch_all(StockItem, shop.id)
        product_ids = sorted({item.product_id for item in items if item.product_id})
        if not product_ids:
            return []
        return await self._gateway.fetch_all(
            ProductDefinition, conditions=[match_any("productId", product_ids)]
        )

    async def upsert_product(
        self,
        product: ProductDefinition,
        audit_entry: AuditEntry | None = None,
    ) -> ProductDefinition:
        """Persist a product, appending ``audit_entry`` to its audit log.

        Embeddings that fail validation are dropped from the payload; the
        point then carries a placeholder vector.
        """
        updates: dict[str, Any] = {"updated_at": utc_now_iso()}
        if audit_entry is not None:
            updates["audit"] = [*product.audit, audit_entry]
        if product.embeddings is not None and vector_problem(
            product.embeddings, self._gateway.vector_size
        ):
            updates["embeddings"] = None
        stored = product.model_copy(update=updates)
        await self._gateway.upsert(stored, vector=stored.embeddings)
        return stored

    async def create_product(
        self,
        name: str,
        *,
        manufacturer: str = "",
        category: str = "",
        description: str = "",
        default_supplier_id: str | None = None,
        images: list | None = None,
        embeddings: list[float] | None = None,
        shop: ShopContext | None = None,
        user_id: str | None = None,
    ) -> ProductDefinition:
        name = name.strip()
        if not name:
            raise ValueError("Product name is required")
        if embeddings is None:
            embeddings = await self._gateway.embed_text(name)

        product = ProductDefinition(
            id=str(uuid.uuid4()),
            name=name,
            manufacturer=manufacturer.strip(),
            category=category.strip(),
            description=description.strip(),
            default_supplier_id=default_supplier_id,
            images=images or [],
            embeddings=embeddings,
        )
        stored = await self.upsert_product(product, _audit(shop, user_id, "create"))
        logger.info("Created product %s (%s)", stored.id, stored.name)
        return stored

    async def update_product(
        self,
        product_id: str,
        *,
        shop: ShopContext | None = None,
        user_id: str | None = None,
        **changes: Any,
    ) -> ProductDefinition:
        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update product fields: {', '.join(sorted(unknown))}")

        existing = await self.get_product(product_id)
        if existing is None:
            raise ProductNotFoundError(f"Product with ID {product_id} not found")

        updates = {k: v for k, v in changes.items() if v is not None}
        for key in ("name", "manufacturer", "category", "description"):
            if key in updates:
                updates[key] = updates[key].strip()
        if not updates.get("name", existing.name):
            raise ValueError("Product name is required")
        if (
            "embeddings" not in updates
            and "name" in updates
            and updates["name"] != existing.name
        ):
            updates["embeddings"] = await self._gateway.embed_text(updates["name"])

        updated = ProductDefinition.model_validate({**existing.model_dump(), **updates})
        return await self.upsert_product(updated, _audit(shop, user_id, "update"))

    async def delete_product(self, product_id: str) -> bool:
        deleted = await self._gateway.delete(ProductDefinition, [product_id])
        if deleted:
            logger.info("Deleted product %s", product_id)
        return deleted

    async def find_by_name(self, name: str) -> ProductDefinition | None:
        wanted = name.strip().lower()
        for product in await self.list_products():
            if product.name.strip().lower() == wanted:
                return product
        return None

    async def find_or_create(
        self,
        name: str,
        *,
        manufacturer: str = "",
        category: str = "",
        shop: ShopContext | None = None,
        user_id: str | None = None,
    ) -> ProductDefinition:
        existing = await self.find_by_name(name)
        if existing is not None:
            return existing
        return await self.create_product(
            name,
            manufacturer=manufacturer,
            category=category,
            shop=shop,
            user_id=user_id,
        )

    async def search_products(self, query: str, limit: int = 24) -> list[ProductDefinition]:
        """Semantic search; name substring match when no embedding is available."""
        query = query.strip()
        if not query:
            return (await self.list_products())[:limit]

        vector = await self._gateway.embed_text(query)
        if vector is None:
            needle = query.lower()
            return [
                p for p in await self.list_products() if needle in p.name.lower()
            ][:limit]

        results = await self._gateway.search(ProductDefinition, vector, limit=limit)
        return [product for product, _score in results]
