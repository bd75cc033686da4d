"""Read-model cache for one shop.

The cache bulk-loads the shop's suppliers, batches, stock, sales and
marketplace listings (plus the global product catalog) into keyed maps and
serves every UI-facing read from them. Local mutations update the maps
synchronously and then hand the store write to a ``PersistQueue``, so the
caller's own change is visible immediately while the store catches up.

States::

    UNINITIALIZED --load()--> LOADING --> READY
          ^                                 |
          +------ invalidate() / resync() --+

A cache is bound to a single shop; selecting another shop means building a
new cache (see ``ShelfSync.select_shop``).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from enum import Enum
from typing import Any

from .gateway import StoreGateway
from .models import (
    BatchLineItem,
    BatchRecord,
    MarketplaceListing,
    PeerListing,
    ProductDefinition,
    ProductSummary,
    SaleTransaction,
    ShopContext,
    StockItem,
    SupplierProfile,
)
from .reconciler import PersistQueue
from .services import (
    BatchCreation,
    BatchService,
    BatchWriteError,
    DanOfferPublisher,
    InventoryService,
    MarketplacePurchase,
    MarketplaceService,
    PartialBatchError,
    ProductCatalog,
    SalesLedger,
    SupplierDirectory,
    validate_supplier_scope,
)
from .summaries import DEFAULT_MARKUP, build_product_summaries, fefo_key
from .vector_store import VectorStoreError

logger = logging.getLogger("shelfsync.cache")

SEED_SUPPLIER = "Organic Foods Dist."
SEED_PRODUCT = {"name": "Organic Oat Milk", "manufacturer": "Oatly", "category": "Beverages"}
SEED_DELIVERY_DATE = "2024-06-05"
SEED_LINE = {"quantity": 50, "cost": 2.5, "expiration": "2024-12-15", "location": "Shelf A"}


class CacheState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    LOADING = "LOADING"
    READY = "READY"


class ShopNotSelectedError(RuntimeError):
    """Raised when shop-scoped state is used before a shop is selected."""


class CacheNotReadyError(RuntimeError):
    """Raised when the cache is read before ``load()`` completed."""


class ReadModelCache:
    def __init__(
        self,
        gateway: StoreGateway,
        shop: ShopContext,
        *,
        catalog: ProductCatalog | None = None,
        suppliers: SupplierDirectory | None = None,
        inventory: InventoryService | None = None,
        batches: BatchService | None = None,
        ledger: SalesLedger | None = None,
        marketplace: MarketplaceService | None = None,
        offers: DanOfferPublisher | None = None,
        queue: PersistQueue | None = None,
        markup: float = DEFAULT_MARKUP,
        seed_on_empty: bool = True,
    ) -> None:
        self.shop = shop
        self._gateway = gateway
        self.catalog = catalog or ProductCatalog(gateway)
        self.supplier_directory = suppliers or SupplierDirectory(gateway)
        self.inventory = inventory or InventoryService(gateway, markup=markup)
        self.batch_service = batches or BatchService(gateway, self.inventory, self.catalog)
        self.ledger = ledger or SalesLedger(gateway)
        self.marketplace = marketplace or MarketplaceService(
            gateway, self.batch_service, self.ledger, self.supplier_directory
        )
        self.offers = offers
        self.queue = queue or PersistQueue()
        self.markup = markup
        self.seed_on_empty = seed_on_empty

        self.state = CacheState.UNINITIALIZED
        self._load_task: asyncio.Task[None] | None = None
        self._legacy_ids = itertools.count(1)
        self.suppliers: dict[str, SupplierProfile] = {}
        self.products: dict[str, ProductDefinition] = {}
        self.batches: dict[str, BatchRecord] = {}
        self.stock: dict[str, StockItem] = {}
        self.sales: dict[str, SaleTransaction] = {}
        self.listings: dict[str, MarketplaceListing] = {}

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self.state == CacheState.READY

    async def load(self) -> None:
        """Populate the maps if they are not loaded yet.

        Concurrent callers share one load.
        """
        if self.state == CacheState.READY:
            return
        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.create_task(self._load())
        await asyncio.shield(self._load_task)

    async def _load(self) -> None:
        self.state = CacheState.LOADING
        try:
            await self._fetch_into_maps()
            if self.seed_on_empty and not self.products and not self.stock:
                await self._seed()
        except BaseException:
            self.state = CacheState.UNINITIALIZED
            raise
        self.state = CacheState.READY
        logger.info(
            "Cache ready for shop %s: %d products, %d stock lines, %d batches",
            self.shop.id,
            len(self.products),
            len(self.stock),
            len(self.batches),
        )

    async def _fetch_into_maps(self) -> None:
        suppliers, products, batches, items, sales, listings = await asyncio.gather(
            self.supplier_directory.suppliers_for_shop(self.shop),
            self.catalog.list_products(),
            self.batch_service.list_batches(self.shop),
            self.inventory.list_stock_items(self.shop),
            self.ledger.list_sales(self.shop),
            self._gateway.fetch_all(MarketplaceListing, self.shop.id),
        )
        self._clear_maps()
        self.suppliers = {s.id: s for s in suppliers}
        self.products = {p.id: p for p in products}
        self.batches = {b.id: b for b in batches}
        for item in items:
            self._store_line(item)
        self.sales = {s.id: s for s in sales}
        self.listings = {listing.id: listing for listing in listings}
        if not items:
            logger.warning("No stock found for shop %s", self.shop.id)

    def _clear_maps(self) -> None:
        for mapping in (
            self.suppliers,
            self.products,
            self.batches,
            self.stock,
            self.sales,
            self.listings,
        ):
            mapping.clear()

    async def _seed(self) -> None:
        """Create a starter supplier, product, batch and stock line."""
        try:
            supplier = await self.supplier_directory.register_local_supplier(
                self.shop, SEED_SUPPLIER
            )
            product = await self.catalog.find_or_create(
                SEED_PRODUCT["name"],
                manufacturer=SEED_PRODUCT["manufacturer"],
                category=SEED_PRODUCT["category"],
                shop=self.shop,
            )
            self.inventory.remember_product(product)
            creation = await self.batch_service.create_batch_for_shop(
                self.shop,
                supplier_id=supplier.id,
                delivery_date=SEED_DELIVERY_DATE,
                inventory_date=SEED_DELIVERY_DATE,
                line_items=[
                    BatchLineItem(product_id=product.id, product_name=product.name, **SEED_LINE)
                ],
            )
        except (BatchWriteError, VectorStoreError) as e:
            logger.error("Seeding starter data for shop %s failed: %s", self.shop.id, e)
            return
        self.suppliers[supplier.id] = supplier
        self.products[product.id] = product
        self.record_batch(creation)
        logger.info("Seeded starter data for shop %s", self.shop.id)

    def invalidate(self) -> None:
        """Drop every cached entry; the next ``load()`` refetches."""
        self._clear_maps()
        self.state = CacheState.UNINITIALIZED
        self._load_task = None

    async def resync(self) -> None:
        await self.flush()
        self.invalidate()
        await self.load()

    async def flush(self) -> None:
        """Wait for every pending store write."""
        await self.queue.drain()

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def _require_ready(self) -> None:
        if self.state != CacheState.READY:
            raise CacheNotReadyError(f"Cache for shop {self.shop.id} is {self.state.value}")

    def product_summaries(self) -> list[ProductSummary]:
        self._require_ready()
        return build_product_summaries(
            self.stock.values(), self.products, self.suppliers.keys(), markup=self.markup
        )

    def stock_items(self, product_id: str | None = None) -> list[StockItem]:
        """Available stock lines in FEFO order."""
        self._require_ready()
        lines = [
            item
            for item in self.stock.values()
            if item.is_available and (product_id is None or item.product_id == product_id)
        ]
        return sorted(lines, key=fefo_key)

    def all_batches(self) -> list[BatchRecord]:
        self._require_ready()
        return sorted(
            self.batches.values(), key=lambda b: (b.delivery_date, b.created_at), reverse=True
        )

    def all_products(self) -> list[ProductDefinition]:
        self._require_ready()
        return sorted(self.products.values(), key=lambda p: p.name.lower())

    def all_sales(self) -> list[SaleTransaction]:
        self._require_ready()
        return sorted(self.sales.values(), key=lambda s: s.timestamp, reverse=True)

    def product_by_name(self, name: str) -> ProductDefinition | None:
        wanted = name.strip().lower()
        for product in self.products.values():
            if product.name.strip().lower() == wanted:
                return product
        return None

    # -----------------------------------------------------------------
    # Local mutations
    # -----------------------------------------------------------------

    def _store_line(self, item: StockItem) -> StockItem:
        existing = self.stock.get(item.inventory_uuid)
        legacy_id = existing.legacy_id if existing else next(self._legacy_ids)
        item = item.model_copy(update={"legacy_id": legacy_id})
        self.stock[item.inventory_uuid] = item
        return item

    def _persist(self, key: str, write: Any) -> asyncio.Task[bool]:
        return self.queue.submit(key, write)

    def put_stock(self, item: StockItem) -> asyncio.Task[bool]:
        """Apply a stock line change locally and schedule its write.

        A line that is no longer available leaves the map; it is still
        written (as EMPTY when its quantity is 0).
        """
        if item.is_available:
            self._store_line(item)
        else:
            self.stock.pop(item.inventory_uuid, None)
        snapshot = item.model_copy(deep=True)
        return self._persist(
            f"items:{item.inventory_uuid}",
            lambda: self.inventory.persist_stock_item(self.shop, snapshot),
        )

    def remove_stock(self, item: StockItem) -> asyncio.Task[bool]:
        self.stock.pop(item.inventory_uuid, None)
        snapshot = item.model_copy()
        return self._persist(
            f"items:{item.inventory_uuid}",
            lambda: self.inventory.delete_stock_item(self.shop, snapshot),
        )

    def put_sale(self, sale: SaleTransaction) -> asyncio.Task[bool]:
        self.sales[sale.id] = sale
        snapshot = sale.model_copy(deep=True)
        return self._persist(
            f"sales:{sale.id}", lambda: self.ledger.persist_sale(self.shop, snapshot)
        )

    def put_product(self, product: ProductDefinition) -> asyncio.Task[bool]:
        self.products[product.id] = product
        self.inventory.remember_product(product)
        snapshot = product.model_copy(deep=True)

        async def write() -> bool:
            await self.catalog.upsert_product(snapshot)
            return True

        return self._persist(f"products:{product.id}", write)

    def put_supplier(self, supplier: SupplierProfile) -> asyncio.Task[bool]:
        """Raises SupplierScopeError, leaving the maps untouched, for a bad scope."""
        validate_supplier_scope(supplier)
        self.suppliers[supplier.id] = supplier
        snapshot = supplier.model_copy(deep=True)
        return self._persist(
            f"suppliers:{supplier.id}",
            lambda: self.supplier_directory.upsert_supplier(snapshot),
        )

    def put_listing(self, listing: MarketplaceListing) -> asyncio.Task[bool]:
        self.listings[listing.id] = listing
        snapshot = listing.model_copy(deep=True)
        return self._persist(
            f"marketplace:{listing.id}", lambda: self._gateway.upsert(snapshot)
        )

    def record_batch(self, creation: BatchCreation) -> None:
        """Add an already stored batch and its stock lines to the maps."""
        self.batches[creation.batch.id] = creation.batch
        for item in creation.items:
            if item.is_available:
                self._store_line(item)

    def product_name(self, product_id: str, fallback: str | None = None) -> str:
        product = self.products.get(product_id)
        return product.name if product else fallback or product_id

    async def _announce_offers(self, creation: BatchCreation) -> None:
        if self.offers is None:
            return
        line_names = {
            line.product_id: line.product_name
            for line in creation.batch.line_items
            if line.product_id
        }
        for item in creation.items:
            if not self.offers.shares(item):
                continue
            supplier = self.suppliers.get(item.supplier_id or "")
            await self.offers.offer_created(
                self.shop,
                item,
                product_name=self.product_name(item.product_id, line_names.get(item.product_id)),
                supplier_name=supplier.name if supplier else None,
            )

    async def create_batch(self, **kwargs: Any) -> BatchCreation:
        """Create a batch for this shop and reflect it in the maps.

        When only the batch record was stored the batch is still cached
        and the PartialBatchError propagates. Lines shared with DAN are
        announced as offers.
        """
        try:
            creation = await self.batch_service.create_batch_for_shop(self.shop, **kwargs)
        except PartialBatchError as e:
            self.batches[e.batch.id] = e.batch
            raise
        self.record_batch(creation)
        await self._announce_offers(creation)
        return creation

    async def retry_batch_lines(self, error: PartialBatchError) -> BatchCreation:
        creation = await self.batch_service.retry_stock_lines(error)
        self.record_batch(creation)
        await self._announce_offers(creation)
        return creation

    async def purchase_from_marketplace(
        self, listing: PeerListing, quantity: int
    ) -> MarketplacePurchase:
        """Buy from a peer listing and show the intake in the maps at once."""
        try:
            purchase = await self.marketplace.purchase_from_marketplace(
                self.shop, listing, quantity
            )
        except PartialBatchError as e:
            self.batches[e.batch.id] = e.batch
            raise
        self.suppliers.setdefault(purchase.supplier.id, purchase.supplier)
        if listing.product_id not in self.products:
            product = await self.catalog.get_product(listing.product_id)
            if product is not None:
                self.products[product.id] = product
        self.record_batch(purchase.creation)
        self.sales[purchase.sale.id] = purchase.sale
        return purchase
