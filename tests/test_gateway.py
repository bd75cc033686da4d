"""Tests for the generic upsert entry point and typed reads."""

from unittest.mock import AsyncMock

import pytest

from shelfsync.embedding import NullEmbeddingService
from shelfsync.gateway import StoreGateway
from shelfsync.models import ProductDefinition, StockItem, SupplierProfile
from shelfsync.schema import CollectionSchemaManager
from shelfsync.vector_store import InMemoryVectorStore, Point, VectorStoreError
from shelfsync.vectors import build_placeholder_vector, point_id


class ReadOnlyStore(InMemoryVectorStore):
    async def create_collection(self, name, **kwargs):
        raise VectorStoreError("read-only", status_code=403)


async def stored_points(store, collection):
    points, _ = await store.scroll(collection, limit=1000)
    return points


def stored_vector(store, collection, pid):
    return store._collections[collection].points[pid].vector


class TestUpsert:
    @pytest.mark.asyncio
    async def test_same_key_twice_is_one_point(self, store, gateway):
        await gateway.upsert(ProductDefinition(id="p-1", name="Oat Milk"))
        await gateway.upsert(ProductDefinition(id="p-1", name="Oat Milk 1L"))

        points = await stored_points(store, "products")
        assert len(points) == 1
        assert points[0].payload["name"] == "Oat Milk 1L"
        assert points[0].id == point_id("products", "p-1")

    @pytest.mark.asyncio
    async def test_native_key_is_used_directly(self, store, gateway, make_stock_item):
        item = make_stock_item()
        await gateway.upsert(item)

        points = await stored_points(store, "items")
        assert points[0].id == item.inventory_uuid

    @pytest.mark.asyncio
    async def test_payload_uses_camel_case(self, store, gateway):
        await gateway.upsert(SupplierProfile(id="s-1", name="Acme", shop_id="shop-1"))

        payload = (await stored_points(store, "suppliers"))[0].payload
        assert payload["supplierId"] == "s-1"
        assert payload["shopId"] == "shop-1"
        assert payload["linkedUserId"] is None

    @pytest.mark.asyncio
    async def test_malformed_vector_gets_placeholder(self, store, gateway):
        await gateway.upsert(ProductDefinition(id="p-1", name="Milk"), vector=[float("nan")] * 768)

        vector = stored_vector(store, "products", point_id("products", "p-1"))
        assert vector == build_placeholder_vector("p-1")

    @pytest.mark.asyncio
    async def test_valid_vector_is_kept(self, store, gateway):
        embedding = [0.5] * 768
        await gateway.upsert(ProductDefinition(id="p-1", name="Milk"), vector=embedding)

        assert stored_vector(store, "products", point_id("products", "p-1")) == embedding

    @pytest.mark.asyncio
    async def test_named_vector_collection(self, store, gateway):
        await store.create_collection("products", size=768, distance="Cosine", vector_name="text")

        assert await gateway.upsert(ProductDefinition(id="p-1", name="Milk")) is True

        vector = stored_vector(store, "products", point_id("products", "p-1"))
        assert set(vector) == {"text"}

    @pytest.mark.asyncio
    async def test_unready_collection_is_skipped(self):
        store = ReadOnlyStore()
        gateway = StoreGateway(store, CollectionSchemaManager(store, verify_delay=0))

        assert await gateway.upsert(ProductDefinition(id="p-1", name="Milk")) is False
        assert store.op_counts["upsert"] == 0

    @pytest.mark.asyncio
    async def test_mixed_collections_rejected(self, gateway, make_stock_item):
        with pytest.raises(TypeError):
            await gateway.upsert_many(
                [make_stock_item(), ProductDefinition(id="p-1", name="Milk")]
            )

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self, store, gateway):
        assert await gateway.upsert_many([]) is True
        assert store.op_counts["upsert"] == 0


class TestReads:
    @pytest.mark.asyncio
    async def test_retrieve_by_key(self, gateway):
        await gateway.upsert(ProductDefinition(id="p-1", name="Milk", category="Dairy"))

        product = await gateway.retrieve(ProductDefinition, "p-1")
        assert product.category == "Dairy"
        assert await gateway.retrieve(ProductDefinition, "p-2") is None

    @pytest.mark.asyncio
    async def test_malformed_payloads_are_skipped(self, store, gateway, make_stock_item):
        await gateway.upsert(make_stock_item())
        await store.upsert(
            "items",
            [Point(id="bad", vector=build_placeholder_vector("bad"), payload={"quantity": -3})],
        )

        items = await gateway.fetch_all(StockItem)
        assert len(items) == 1

    @pytest.mark.asyncio
    async def test_legacy_payload_without_key_uses_point_id(self, store, schema, gateway):
        await schema.ensure_collection("products")
        await store.upsert(
            "products",
            [Point(id="legacy-1", vector=build_placeholder_vector("x"), payload={"name": "Tea"})],
        )

        products = await gateway.fetch_all(ProductDefinition)
        assert products[0].id == "legacy-1"

    @pytest.mark.asyncio
    async def test_fetch_all_scoped_to_shop(self, gateway, make_stock_item):
        await gateway.upsert_many(
            [make_stock_item(), make_stock_item(shop_id="shop-2"), make_stock_item()]
        )

        assert len(await gateway.fetch_all(StockItem, "shop-1")) == 2
        assert len(await gateway.fetch_all(StockItem)) == 3

    @pytest.mark.asyncio
    async def test_search_returns_records_with_scores(self, gateway):
        query = [1.0] + [0.0] * 767
        await gateway.upsert(ProductDefinition(id="p-1", name="Milk"), vector=query)
        await gateway.upsert(ProductDefinition(id="p-2", name="Bread"))

        results = await gateway.search(ProductDefinition, query, limit=2)

        assert results[0][0].id == "p-1"
        assert results[0][1] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_search_with_invalid_query_is_skipped(self, store, gateway):
        assert await gateway.search(ProductDefinition, [1.0, 2.0]) == []
        assert await gateway.search(ProductDefinition, None) == []
        assert store.op_counts["search"] == 0


class TestEmbedText:
    @pytest.mark.asyncio
    async def test_null_service(self, gateway):
        assert isinstance(gateway.embedder, NullEmbeddingService)
        assert await gateway.embed_text("milk") is None

    @pytest.mark.asyncio
    async def test_failure_degrades_to_none(self, store, schema):
        embedder = AsyncMock()
        embedder.embed_text.side_effect = RuntimeError("quota exceeded")
        gateway = StoreGateway(store, schema, embedder=embedder)

        assert await gateway.embed_text("milk") is None
