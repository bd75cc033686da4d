"""Stock offers shared with the DAN network (``dan_inventory``)."""

from __future__ import annotations

import logging
import re
from typing import Any

from ..dan import DanEventRecord, DanEventType, DanRegistry, hash_payload, resolve_share_scope
from ..gateway import StoreGateway
from ..models import (
    DanInventoryOffer,
    DanShareScope,
    ShopContext,
    StockItem,
    today_iso,
    utc_now_iso,
)
from ..vector_store import VectorStoreError

logger = logging.getLogger("shelfsync.services.dan_inventory")


class DanInventoryService:
    def __init__(self, gateway: StoreGateway) -> None:
        self._gateway = gateway

    async def upsert_offer(
        self, offer: DanInventoryOffer, *, vector: list[float] | None = None
    ) -> DanInventoryOffer:
        scope = list(offer.share_scope)
        if DanShareScope.LOCAL not in scope:
            scope.insert(0, DanShareScope.LOCAL)
        stored = offer.model_copy(update={"share_scope": scope, "updated_at": utc_now_iso()})
        if vector is None:
            vector = await self._gateway.embed_text(
                f"{stored.product_name} {stored.location_bucket or ''} {stored.quantity}"
            )
        await self._gateway.upsert(stored, vector=vector)
        return stored

    async def remove_offer(self, inventory_uuid: str) -> bool:
        return await self._gateway.delete(DanInventoryOffer, [inventory_uuid])

    async def list_offers(self) -> list[DanInventoryOffer]:
        """Offers with stock left, soonest expiry first."""
        offers = await self._gateway.fetch_all(DanInventoryOffer)
        return sorted(
            (offer for offer in offers if offer.quantity > 0),
            key=lambda offer: offer.expiration_date or "9999-12-31",
        )


def location_bucket(location: str | None) -> str | None:
    """Coarse, shareable form of a shelf location ("shelf a-3" -> "SHELF")."""
    if not location or not location.strip():
        return None
    return re.split(r"[\s-]", location.strip())[0].upper() or None


class DanOfferPublisher:
    """Announces DAN-shared stock lines and keeps ``dan_inventory`` in step.

    Only lines whose share scope includes ``dan`` are announced, and only
    while the registry is enabled. Offer writes that fail are logged; the
    stock change that caused them stands.
    """

    def __init__(
        self, registry: DanRegistry, offers: DanInventoryService, gateway: StoreGateway
    ) -> None:
        self.registry = registry
        self.offers = offers
        self._gateway = gateway

    def shares(self, item: StockItem) -> bool:
        return self.registry.enabled and item.shared_with_dan

    async def _vector_context(self, text: str) -> tuple[dict[str, Any], list[float] | None]:
        vector = await self._gateway.embed_text(text)
        context: dict[str, Any] = {"text": text}
        if vector:
            context["vector"] = vector
        return context, vector

    async def offer_created(
        self,
        shop: ShopContext,
        item: StockItem,
        *,
        product_name: str,
        supplier_name: str | None = None,
    ) -> DanEventRecord | None:
        if not self.shares(item):
            return None
        scope = resolve_share_scope(item.share_scope)
        payload = {
            "inventoryUuid": item.inventory_uuid,
            "productId": item.product_id,
            "productName": product_name,
            "quantity": item.quantity,
            "expirationDate": (item.expiration or today_iso())[:10],
            "locationBucket": location_bucket(item.location),
            "sellPrice": item.sell_price,
            "batchId": item.batch_id,
            "supplierId": item.supplier_id,
            "supplierName": supplier_name,
            "shopId": item.shop_id,
            "shareScope": [s.value for s in scope],
        }
        proof_hash = hash_payload(payload)
        context, vector = await self._vector_context(
            f"{product_name} {item.quantity} {payload['locationBucket'] or ''}"
        )
        record = await self.registry.publish(
            shop,
            DanEventType.OFFER_CREATED,
            {**payload, "proofHash": proof_hash},
            share_scope=scope,
            vector_context=context,
            proofs={"link": f"qdrant://items/{item.inventory_uuid}"},
        )
        offer = DanInventoryOffer(
            inventory_uuid=item.inventory_uuid,
            shop_id=item.shop_id,
            shop_name=shop.name or None,
            product_id=item.product_id,
            product_name=product_name,
            quantity=item.quantity,
            expiration_date=payload["expirationDate"],
            location_bucket=payload["locationBucket"],
            sell_price=item.sell_price,
            share_scope=scope,
            proof_hash=proof_hash,
        )
        try:
            await self.offers.upsert_offer(offer, vector=vector)
        except VectorStoreError as e:
            logger.warning("DAN offer %s not stored: %s", item.inventory_uuid, e)
        return record

    async def offer_fulfilled(
        self,
        shop: ShopContext,
        item: StockItem,
        *,
        product_name: str,
        fulfilled_quantity: int,
    ) -> DanEventRecord | None:
        """Announce that ``fulfilled_quantity`` units left the line ``item``.

        ``item`` is the line as it was before the units were taken. The offer
        is reduced to what remains, or removed once nothing does.
        """
        if not self.shares(item):
            return None
        scope = resolve_share_scope(item.share_scope)
        remaining = max(item.quantity - fulfilled_quantity, 0)
        payload = {
            "inventoryUuid": item.inventory_uuid,
            "productId": item.product_id,
            "productName": product_name,
            "fulfilledQuantity": fulfilled_quantity,
            "remainingQuantity": remaining,
            "saleTimestamp": utc_now_iso(),
            "batchId": item.batch_id,
            "shopId": item.shop_id,
            "shareScope": [s.value for s in scope],
        }
        proof_hash = hash_payload(payload)
        context, vector = await self._vector_context(
            f"{product_name} fulfilled {fulfilled_quantity}"
        )
        record = await self.registry.publish(
            shop,
            DanEventType.OFFER_FULFILLED,
            {**payload, "proofHash": proof_hash},
            share_scope=scope,
            vector_context=context,
            proofs={"link": f"qdrant://items/{item.inventory_uuid}"},
        )
        try:
            if remaining == 0:
                await self.offers.remove_offer(item.inventory_uuid)
            else:
                await self.offers.upsert_offer(
                    DanInventoryOffer(
                        inventory_uuid=item.inventory_uuid,
                        shop_id=item.shop_id,
                        shop_name=shop.name or None,
                        product_id=item.product_id,
                        product_name=product_name,
                        quantity=remaining,
                        expiration_date=(item.expiration or "")[:10],
                        location_bucket=location_bucket(item.location),
                        sell_price=item.sell_price,
                        share_scope=scope,
                        proof_hash=proof_hash,
                    ),
                    vector=vector,
                )
        except VectorStoreError as e:
            logger.warning("DAN offer %s not updated: %s", item.inventory_uuid, e)
        return record
