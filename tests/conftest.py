"""
Pytest fixtures for ShelfSync tests.

Every fixture runs against the in-memory vector store; fault injection is
done with small subclasses of it inside the individual test modules.
"""

import uuid

import pytest

from shelfsync.cache import ReadModelCache
from shelfsync.gateway import StoreGateway
from shelfsync.models import ShopContext, StockItem
from shelfsync.schema import CollectionSchemaManager
from shelfsync.services import (
    AccountDirectory,
    BatchService,
    InventoryService,
    ProductCatalog,
    SalesLedger,
    SupplierDirectory,
)
from shelfsync.vector_store import InMemoryVectorStore

# =============================================================================
# STORE FIXTURES
# =============================================================================


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def schema(store: InMemoryVectorStore) -> CollectionSchemaManager:
    """Schema manager with no delay between verification attempts."""
    return CollectionSchemaManager(store, verify_delay=0)


@pytest.fixture
def gateway(store: InMemoryVectorStore, schema: CollectionSchemaManager) -> StoreGateway:
    return StoreGateway(store, schema, scroll_backoff=0)


# =============================================================================
# SHOP FIXTURES
# =============================================================================


@pytest.fixture
def shop() -> ShopContext:
    return ShopContext(id="shop-1", name="Corner Grocer", contact_email="owner@corner.test")


@pytest.fixture
def other_shop() -> ShopContext:
    return ShopContext(id="shop-2", name="Harbour Deli")


# =============================================================================
# SERVICE FIXTURES
# =============================================================================


@pytest.fixture
def catalog(gateway: StoreGateway) -> ProductCatalog:
    return ProductCatalog(gateway)


@pytest.fixture
def suppliers(gateway: StoreGateway) -> SupplierDirectory:
    return SupplierDirectory(gateway)


@pytest.fixture
def accounts(gateway: StoreGateway) -> AccountDirectory:
    return AccountDirectory(gateway)


@pytest.fixture
def inventory(gateway: StoreGateway) -> InventoryService:
    return InventoryService(gateway)


@pytest.fixture
def batches(
    gateway: StoreGateway, inventory: InventoryService, catalog: ProductCatalog
) -> BatchService:
    return BatchService(gateway, inventory, catalog)


@pytest.fixture
def ledger(gateway: StoreGateway) -> SalesLedger:
    return SalesLedger(gateway)


@pytest.fixture
def cache(
    gateway: StoreGateway,
    shop: ShopContext,
    catalog: ProductCatalog,
    suppliers: SupplierDirectory,
    inventory: InventoryService,
    batches: BatchService,
    ledger: SalesLedger,
) -> ReadModelCache:
    """Cache for ``shop`` that does not seed starter data."""
    return ReadModelCache(
        gateway,
        shop,
        catalog=catalog,
        suppliers=suppliers,
        inventory=inventory,
        batches=batches,
        ledger=ledger,
        seed_on_empty=False,
    )


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================


@pytest.fixture
def make_stock_item(shop: ShopContext):
    """Factory for stock lines of ``shop``; keyword arguments override defaults."""

    def _make(product_id: str = "prod-1", **overrides) -> StockItem:
        fields = {
            "inventory_uuid": str(uuid.uuid4()),
            "shop_id": shop.id,
            "product_id": product_id,
            "batch_id": "batch-1",
            "buy_price": 2.0,
            "quantity": 10,
            "expiration": "2025-01-01",
        }
        fields.update(overrides)
        return StockItem(**fields)

    return _make
