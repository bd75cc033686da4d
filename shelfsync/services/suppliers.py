"""Supplier directory.

A supplier is either shop-local (``shop_id`` set, created ad hoc by one
shop) or a global linked-account supplier (``linked_user_id`` set). A shop
sees its own local suppliers plus every linked supplier.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from ..gateway import StoreGateway
from ..models import ShopContext, SupplierProfile
from ..queries import is_not_null

logger = logging.getLogger("shelfsync.services.suppliers")


class SupplierScopeError(ValueError):
    """Raised when a supplier is both shop-local and linked, or neither."""


def validate_supplier_scope(supplier: SupplierProfile) -> SupplierProfile:
    """Return ``supplier`` if it is exactly one of shop-local or linked."""
    if (supplier.shop_id is None) == (supplier.linked_user_id is None):
        raise SupplierScopeError(
            f"Supplier {supplier.id} must have exactly one of shopId or linkedUserId"
        )
    return supplier


class SupplierDirectory:
    def __init__(self, gateway: StoreGateway) -> None:
        self._gateway = gateway

    async def upsert_supplier(self, supplier: SupplierProfile) -> bool:
        validate_supplier_scope(supplier)
        vector = supplier.embeddings or await self._gateway.embed_text(supplier.name)
        return await self._gateway.upsert(supplier, vector=vector)

    async def register_local_supplier(
        self,
        shop: ShopContext,
        name: str,
        *,
        contact: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> SupplierProfile:
        supplier = SupplierProfile(
            id=str(uuid.uuid4()),
            name=name.strip(),
            shop_id=shop.id,
            contact=contact,
            metadata=metadata or {},
        )
        await self.upsert_supplier(supplier)
        logger.info("Registered local supplier %s for shop %s", supplier.name, shop.id)
        return supplier

    async def register_linked_supplier(
        self,
        linked_user_id: str,
        name: str,
        *,
        contact: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> SupplierProfile:
        """Register (or refresh) the supplier tied to a supplier account.

        The supplier id is the account id, so re-registering overwrites.
        """
        supplier = SupplierProfile(
            id=linked_user_id,
            name=name.strip(),
            linked_user_id=linked_user_id,
            contact=contact,
            metadata=metadata or {},
        )
        await self.upsert_supplier(supplier)
        return supplier

    async def suppliers_for_shop(self, shop: ShopContext) -> list[SupplierProfile]:
        local = await self._gateway.fetch_all(SupplierProfile, shop.id)
        linked = await self._gateway.fetch_all(
            SupplierProfile, conditions=[is_not_null("linkedUserId")]
        )
        merged: dict[str, SupplierProfile] = {}
        for supplier in [*local, *linked]:
            merged.setdefault(supplier.id, supplier)
        return list(merged.values())

    async def find_by_name(self, shop: ShopContext, name: str) -> SupplierProfile | None:
        wanted = name.strip().lower()
        for supplier in await self.suppliers_for_shop(shop):
            if supplier.name.strip().lower() == wanted:
                return supplier
        return None

    async def find_or_register(self, shop: ShopContext, name: str) -> SupplierProfile:
        existing = await self.find_by_name(shop, name)
        if existing is not None:
            return existing
        return await self.register_local_supplier(shop, name)
