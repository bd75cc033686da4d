"""Tests for batch creation and its derived stock lines."""

import pytest

from shelfsync.gateway import StoreGateway
from shelfsync.models import BatchLineItem, BatchRecord, StockItem
from shelfsync.schema import CollectionSchemaManager
from shelfsync.services import (
    BatchService,
    BatchValidationError,
    BatchWriteError,
    InventoryService,
    PartialBatchError,
    ProductCatalog,
)
from shelfsync.vector_store import InMemoryVectorStore, VectorStoreError


class SelectiveFailureStore(InMemoryVectorStore):
    """Rejects upserts into the collections named in ``failing``."""

    def __init__(self, *failing: str):
        super().__init__()
        self.failing = set(failing)

    async def upsert(self, name, points):
        if name in self.failing:
            raise VectorStoreError(f"upsert into {name} rejected", status_code=500)
        await super().upsert(name, points)


def build_services(store):
    schema = CollectionSchemaManager(store, verify_delay=0)
    gateway = StoreGateway(store, schema, scroll_backoff=0)
    catalog = ProductCatalog(gateway)
    inventory = InventoryService(gateway)
    return gateway, catalog, BatchService(gateway, inventory, catalog)


class TestCreateBatch:
    @pytest.mark.asyncio
    async def test_acme_widget_scenario(self, suppliers, catalog, batches, gateway, shop):
        acme = await suppliers.register_local_supplier(shop, "Acme")
        widget = await catalog.create_product("Widget")

        creation = await batches.create_batch_for_shop(
            shop,
            supplier_id=acme.id,
            delivery_date="2024-01-01",
            line_items=[BatchLineItem(product_id=widget.id, quantity=50, cost=2.00)],
        )

        assert len(creation.items) == 1
        item = creation.items[0]
        assert item.quantity == 50
        assert item.expiration == "2025-01-01"
        assert item.sell_price == 2.80
        assert item.batch_id == creation.batch.id
        assert item.supplier_id == acme.id

        stored = await gateway.fetch_all(StockItem, shop.id)
        assert [(i.inventory_uuid, i.sell_price) for i in stored] == [
            (item.inventory_uuid, 2.80)
        ]

    @pytest.mark.asyncio
    async def test_one_stock_line_per_valid_line_item(self, catalog, batches, gateway, shop):
        milk = await catalog.create_product("Milk")
        bread = await catalog.create_product("Bread")

        creation = await batches.create_batch_for_shop(
            shop,
            delivery_date="2024-03-10",
            invoice_number="INV-7",
            line_items=[
                BatchLineItem(product_id=milk.id, quantity=12, cost=1.0, expiration="2024-04-01"),
                BatchLineItem(product_id=bread.id, quantity=0, cost=1.0),
                BatchLineItem(product_id=None, quantity=5, cost=1.0),
                BatchLineItem(product_id=bread.id, quantity=6, cost=2.0, sell_price=2.5),
            ],
        )

        assert len(await gateway.fetch_all(BatchRecord, shop.id)) == 1
        assert len(creation.batch.line_items) == 4
        lines = [(i.product_id, i.quantity, i.expiration, i.sell_price) for i in creation.items]
        assert lines == [
            (milk.id, 12, "2024-04-01", 1.4),
            (bread.id, 6, "2025-03-10", 2.5),
        ]
        assert len({i.inventory_uuid for i in creation.items}) == 2

    @pytest.mark.asyncio
    async def test_unknown_product_names_are_created(self, catalog, batches, shop):
        existing = await catalog.create_product("Oat Milk")

        creation = await batches.create_batch_for_shop(
            shop,
            delivery_date="2024-03-10",
            line_items=[
                BatchLineItem(product_name="oat milk", quantity=3, cost=1.0),
                BatchLineItem(product_name="Sourdough", quantity=2, cost=3.0),
            ],
        )

        product_ids = [line.product_id for line in creation.batch.line_items]
        assert product_ids[0] == existing.id
        assert (await catalog.find_by_name("Sourdough")).id == product_ids[1]
        assert len(creation.items) == 2

    @pytest.mark.asyncio
    async def test_scan_data_is_attached(self, catalog, batches, shop):
        milk = await catalog.create_product("Milk")

        creation = await batches.create_batch_for_shop(
            shop,
            delivery_date="2024-03-10",
            line_items=[BatchLineItem(product_id=milk.id, quantity=1, cost=1.0)],
            scan_data={milk.id: {"scan_metadata": {"barcode": "4006381333931"}}},
        )

        assert creation.items[0].scan_metadata == {"barcode": "4006381333931"}

    @pytest.mark.asyncio
    async def test_created_by_defaults_to_shop(self, catalog, batches, shop):
        milk = await catalog.create_product("Milk")
        creation = await batches.create_batch_for_shop(
            shop,
            delivery_date="2024-03-10",
            line_items=[BatchLineItem(product_id=milk.id, quantity=1, cost=1.0)],
        )
        assert creation.batch.created_by_user_id == shop.id
        assert creation.items[0].created_by_user_id == shop.id

    @pytest.mark.asyncio
    async def test_list_batches_newest_delivery_first(self, catalog, batches, shop):
        milk = await catalog.create_product("Milk")
        for day in ("2024-01-05", "2024-03-01", "2024-02-10"):
            await batches.create_batch_for_shop(
                shop,
                delivery_date=day,
                line_items=[BatchLineItem(product_id=milk.id, quantity=1, cost=1.0)],
            )

        days = [b.delivery_date for b in await batches.list_batches(shop)]
        assert days == ["2024-03-01", "2024-02-10", "2024-01-05"]


class TestValidation:
    @pytest.mark.asyncio
    async def test_delivery_date_required(self, batches, store, shop):
        with pytest.raises(BatchValidationError):
            await batches.create_batch_for_shop(
                shop,
                delivery_date="",
                line_items=[BatchLineItem(product_id="p-1", quantity=1)],
            )
        assert store.op_counts["upsert"] == 0

    @pytest.mark.asyncio
    async def test_no_valid_lines(self, batches, store, shop):
        with pytest.raises(BatchValidationError):
            await batches.create_batch_for_shop(
                shop,
                delivery_date="2024-01-01",
                line_items=[BatchLineItem(product_id="p-1", quantity=0)],
            )
        assert store.op_counts["upsert"] == 0


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_batch_write_failure(self, shop):
        gateway, _, batches = build_services(SelectiveFailureStore("batches"))

        with pytest.raises(BatchWriteError) as exc_info:
            await batches.create_batch_for_shop(
                shop,
                delivery_date="2024-01-01",
                line_items=[BatchLineItem(product_id="p-1", quantity=1, cost=1.0)],
            )

        assert not isinstance(exc_info.value, PartialBatchError)
        assert await gateway.fetch_all(StockItem) == []

    @pytest.mark.asyncio
    async def test_stock_failure_keeps_batch_and_reports_pending(self, shop):
        store = SelectiveFailureStore("items")
        gateway, _, batches = build_services(store)

        with pytest.raises(PartialBatchError) as exc_info:
            await batches.create_batch_for_shop(
                shop,
                delivery_date="2024-01-01",
                line_items=[
                    BatchLineItem(product_id="p-1", quantity=1, cost=1.0),
                    BatchLineItem(product_id="p-2", quantity=2, cost=1.0),
                ],
            )

        error = exc_info.value
        assert isinstance(error, BatchWriteError)
        assert [b.id for b in await gateway.fetch_all(BatchRecord)] == [error.batch.id]
        assert [i.product_id for i in error.pending] == ["p-1", "p-2"]
        assert await gateway.fetch_all(StockItem) == []

    @pytest.mark.asyncio
    async def test_retry_writes_pending_lines(self, shop):
        store = SelectiveFailureStore("items")
        gateway, _, batches = build_services(store)
        with pytest.raises(PartialBatchError) as exc_info:
            await batches.create_batch_for_shop(
                shop,
                delivery_date="2024-01-01",
                line_items=[BatchLineItem(product_id="p-1", quantity=4, cost=1.0)],
            )

        store.failing.clear()
        creation = await batches.retry_stock_lines(exc_info.value)

        stored = await gateway.fetch_all(StockItem)
        assert [i.inventory_uuid for i in stored] == [creation.items[0].inventory_uuid]
        assert stored[0].batch_id == exc_info.value.batch.id
        assert len(await gateway.fetch_all(BatchRecord)) == 1

    @pytest.mark.asyncio
    async def test_retry_that_fails_again_raises_again(self, shop):
        gateway, _, batches = build_services(SelectiveFailureStore("items"))
        with pytest.raises(PartialBatchError) as exc_info:
            await batches.create_batch_for_shop(
                shop,
                delivery_date="2024-01-01",
                line_items=[BatchLineItem(product_id="p-1", quantity=4, cost=1.0)],
            )

        with pytest.raises(PartialBatchError):
            await batches.retry_stock_lines(exc_info.value)
