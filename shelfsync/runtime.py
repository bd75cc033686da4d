"""Composition root.

``ShelfSync`` wires the store, schema manager, gateway, domain services and
DAN registry from settings, and owns the shop selection. Selecting a shop
builds a fresh read-model cache and allocator for it; there is no
process-wide "active shop".

Usage:
    async with ShelfSync.from_settings() as app:
        await app.setup()
        cache = await app.select_shop(ShopContext(id="shop-1", name="Corner"))
        summaries = cache.product_summaries()
"""

from __future__ import annotations

import logging

from .allocator import StockAllocator
from .cache import ReadModelCache, ShopNotSelectedError
from .config import ShelfSyncSettings, get_settings
from .dan import DanEventListener, DanEventRecord, DanRegistry, create_control_plane
from .diagnostics import DiagnosticLog
from .embedding import EmbeddingService, create_embedding_service
from .gateway import StoreGateway
from .models import PeerListing, ShopContext
from .schema import BASE_COLLECTIONS, CollectionSchemaManager
from .services import (
    AccountDirectory,
    BatchService,
    DanInventoryService,
    DanOfferPublisher,
    InventoryService,
    MarketplacePurchase,
    MarketplaceService,
    ProductCatalog,
    SalesLedger,
    SupplierDirectory,
    VisualCaptureService,
)
from .vector_store import VectorStore, create_vector_store

logger = logging.getLogger("shelfsync.runtime")


class ShelfSync:
    def __init__(
        self,
        store: VectorStore,
        *,
        settings: ShelfSyncSettings | None = None,
        embedder: EmbeddingService | None = None,
        dan: DanRegistry | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        self.store = store
        self.diagnostics = DiagnosticLog()
        self.schema = CollectionSchemaManager(
            store,
            vector_size=s.vector_size,
            distance=s.vector_distance,
            verify_attempts=s.verify_attempts,
            verify_delay=s.verify_delay_seconds,
            diagnostics=self.diagnostics,
        )
        self.gateway = StoreGateway(
            store,
            self.schema,
            embedder=embedder,
            scroll_limit=s.scroll_limit,
            scroll_retries=s.scroll_retries,
            scroll_backoff=s.scroll_backoff_seconds,
            max_points=s.scroll_max_points,
        )

        self.catalog = ProductCatalog(self.gateway)
        self.suppliers = SupplierDirectory(self.gateway)
        self.accounts = AccountDirectory(self.gateway)
        self.inventory = InventoryService(self.gateway, markup=s.default_markup)
        self.batches = BatchService(self.gateway, self.inventory, self.catalog)
        self.ledger = SalesLedger(self.gateway)
        self.marketplace = MarketplaceService(
            self.gateway, self.batches, self.ledger, self.suppliers
        )
        self.visual = VisualCaptureService(self.gateway)
        self.dan_inventory = DanInventoryService(self.gateway)
        self.dan = dan or DanRegistry(
            enabled=s.enable_dan,
            salt=s.dan_key_salt,
            state_dir=s.dan_state_dir,
            control_plane=create_control_plane(s.supabase_url, s.supabase_service_key),
        )
        self.offers = DanOfferPublisher(self.dan, self.dan_inventory, self.gateway)
        self.listener: DanEventListener | None = None

        self._shop: ShopContext | None = None
        self._cache: ReadModelCache | None = None
        self._allocator: StockAllocator | None = None

    @classmethod
    def from_settings(cls, settings: ShelfSyncSettings | None = None) -> ShelfSync:
        settings = settings or get_settings()
        store = create_vector_store(
            settings.qdrant_url,
            settings.qdrant_api_key,
            timeout=settings.qdrant_timeout_seconds,
        )
        embedder = create_embedding_service(
            settings.gemini_api_key,
            embedding_model=settings.embedding_model,
            extraction_model=settings.extraction_model,
        )
        return cls(store, settings=settings, embedder=embedder)

    async def __aenter__(self) -> ShelfSync:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def setup(
        self, names: list[str] | tuple[str, ...] = BASE_COLLECTIONS
    ) -> dict[str, bool]:
        return await self.schema.ensure_base_collections(names)

    # -----------------------------------------------------------------
    # Shop selection
    # -----------------------------------------------------------------

    @property
    def shop(self) -> ShopContext | None:
        return self._shop

    @property
    def cache(self) -> ReadModelCache:
        if self._cache is None:
            raise ShopNotSelectedError("No shop selected")
        return self._cache

    @property
    def allocator(self) -> StockAllocator:
        if self._allocator is None:
            raise ShopNotSelectedError("No shop selected")
        return self._allocator

    async def select_shop(self, shop: ShopContext | None) -> ReadModelCache | None:
        """Make ``shop`` the selected shop and load its cache.

        Re-selecting the current shop keeps the existing cache. Passing
        None clears the selection. Pending writes of the previous shop are
        flushed before its cache is dropped.
        """
        if shop is not None and self._shop is not None and shop.id == self._shop.id:
            await self._cache.load()
            return self._cache

        if self._cache is not None:
            await self._cache.flush()
            logger.info(
                "Shop context changed: %s -> %s",
                self._shop.id if self._shop else None,
                shop.id if shop else None,
            )
        self._shop = shop
        self._cache = None
        self._allocator = None
        if shop is None:
            return None

        self._cache = ReadModelCache(
            self.gateway,
            shop,
            catalog=self.catalog,
            suppliers=self.suppliers,
            inventory=self.inventory,
            batches=self.batches,
            ledger=self.ledger,
            marketplace=self.marketplace,
            offers=self.offers,
            markup=self.settings.default_markup,
            seed_on_empty=self.settings.seed_on_empty,
        )
        self._allocator = StockAllocator(self._cache)
        if self.dan.enabled:
            self.dan.policies.seed_default_policy(shop)
            self._start_listener()
        await self._cache.load()
        return self._cache

    # -----------------------------------------------------------------
    # DAN
    # -----------------------------------------------------------------

    def _start_listener(self) -> None:
        if self.dan.control_plane is None:
            return
        if self.listener is None:
            self.listener = DanEventListener(
                self.dan,
                self._on_dan_event,
                interval=self.settings.dan_poll_interval_seconds,
            )
        if not self.listener.is_running:
            self.listener.start()

    def _on_dan_event(self, record: DanEventRecord) -> None:
        if self._shop is not None and record.shop_id == self._shop.id:
            return
        logger.info(
            "DAN event %s from shop %s: %s", record.event_id, record.shop_id, record.event_type
        )

    async def purchase_from_marketplace(
        self, listing: PeerListing, quantity: int
    ) -> MarketplacePurchase:
        """Buy into the selected shop through its cache."""
        return await self.cache.purchase_from_marketplace(listing, quantity)

    async def close(self) -> None:
        if self.listener is not None:
            await self.listener.aclose()
        if self._cache is not None:
            await self._cache.flush()
        await self.store.close()
        await self.gateway.embedder.close()
        await self.dan.close()
