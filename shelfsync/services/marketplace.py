"""Peer-to-peer marketplace listings and purchases."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass

from ..gateway import StoreGateway
from ..models import (
    BatchLineItem,
    MarketplaceListing,
    PeerListing,
    ProductDefinition,
    SaleLineItem,
    SaleSource,
    SaleTransaction,
    ShopContext,
    SupplierProfile,
    today_iso,
)
from .batches import BatchCreation, BatchService
from .sales import SalesLedger, new_sale
from .suppliers import SupplierDirectory

logger = logging.getLogger("shelfsync.services.marketplace")

MARKETPLACE_INTAKE_LOCATION = "Marketplace Intake"


class ListingError(ValueError):
    """A purchase asked for more than a listing offers."""


@dataclass
class MarketplacePurchase:
    creation: BatchCreation
    sale: SaleTransaction
    supplier: SupplierProfile
    listing: MarketplaceListing


class MarketplaceService:
    def __init__(
        self,
        gateway: StoreGateway,
        batches: BatchService,
        ledger: SalesLedger,
        suppliers: SupplierDirectory,
    ) -> None:
        self._gateway = gateway
        self._batches = batches
        self._ledger = ledger
        self._suppliers = suppliers
        self._listing_locks: dict[str, asyncio.Lock] = {}

    async def persist_listing(self, shop: ShopContext, listing: MarketplaceListing) -> bool:
        if listing.shop_id != shop.id:
            listing = listing.model_copy(update={"shop_id": shop.id})
        return await self._gateway.upsert(listing)

    async def list_product(
        self,
        shop: ShopContext,
        product: ProductDefinition,
        *,
        quantity: int,
        price: float,
        quantity_type: str = "units",
    ) -> MarketplaceListing:
        if quantity <= 0:
            raise ListingError("Listing quantity must be positive")
        listing = MarketplaceListing(
            id=str(uuid.uuid4()),
            shop_id=shop.id,
            product_id=product.id,
            product_name=product.name,
            manufacturer=product.manufacturer,
            category=product.category,
            quantity=quantity,
            quantity_type=quantity_type,
            price=price,
            seller_name=shop.name,
        )
        await self.persist_listing(shop, listing)
        logger.info("Listed %d of %s", quantity, product.name)
        return listing

    async def list_listings(self, shop: ShopContext) -> list[MarketplaceListing]:
        return await self._gateway.fetch_all(MarketplaceListing, shop.id)

    async def peer_listings(self, shop: ShopContext) -> list[PeerListing]:
        """Open listings from every shop other than ``shop``."""
        listings = await self._gateway.fetch_all(MarketplaceListing)
        return [
            PeerListing(
                listing_id=listing.id,
                shop_id=listing.shop_id,
                product_id=listing.product_id,
                product_name=listing.product_name,
                manufacturer=listing.manufacturer,
                category=listing.category,
                price=listing.price,
                quantity=listing.quantity,
                quantity_type=listing.quantity_type,
                seller_name=listing.seller_name,
            )
            for listing in listings
            if listing.shop_id != shop.id and listing.quantity > 0
        ]

    def _listing_lock(self, listing_id: str) -> asyncio.Lock:
        return self._listing_locks.setdefault(listing_id, asyncio.Lock())

    async def purchase_from_marketplace(
        self,
        shop: ShopContext,
        listing: PeerListing,
        quantity: int,
    ) -> MarketplacePurchase:
        """Buy ``quantity`` from a peer listing into ``shop``'s stock.

        The stored listing, not the caller's snapshot, bounds the purchase;
        purchases of one listing run one at a time. Creates an intake batch
        from the seller (as a local supplier), decrements the listing and
        records a sale sourced from the marketplace.
        """
        if quantity <= 0:
            raise ListingError("Purchase quantity must be positive")

        async with self._listing_lock(listing.listing_id):
            stored = await self._gateway.retrieve(MarketplaceListing, listing.listing_id)
            if stored is None:
                raise ListingError(f"Listing {listing.listing_id} no longer exists")
            if quantity > stored.quantity:
                raise ListingError(
                    f"Only {stored.quantity} {stored.quantity_type} of "
                    f"{stored.product_name} available"
                )

            seller_name = stored.seller_name or stored.shop_id
            supplier = await self._suppliers.find_or_register(shop, seller_name)
            today = today_iso()
            creation = await self._batches.create_batch_for_shop(
                shop,
                supplier_id=supplier.id,
                delivery_date=today,
                inventory_date=today,
                documents=[{"source": "marketplace", "listingId": stored.id}],
                line_items=[
                    BatchLineItem(
                        product_id=stored.product_id,
                        product_name=stored.product_name,
                        quantity=quantity,
                        cost=stored.price,
                        location=MARKETPLACE_INTAKE_LOCATION,
                    )
                ],
            )

            remaining = stored.model_copy(update={"quantity": stored.quantity - quantity})
            if not await self._gateway.upsert(remaining):
                logger.warning("Listing %s was not decremented", stored.id)

        sale = new_sale(
            shop,
            [
                SaleLineItem(
                    product_id=stored.product_id,
                    quantity=quantity,
                    price_at_sale=stored.price,
                    batch_id=creation.batch.id,
                )
            ],
            source=SaleSource(
                type="marketplace",
                supplier_name=seller_name,
                listing_id=stored.id,
            ),
        )
        await self._ledger.persist_sale(shop, sale)
        logger.info("Purchased %d of %s from %s", quantity, stored.product_name, seller_name)
        return MarketplacePurchase(
            creation=creation, sale=sale, supplier=supplier, listing=remaining
        )
