"""Tests for filter builders, bulk scroll and filtered search."""

from unittest.mock import AsyncMock, call, patch

import pytest

from shelfsync.gateway import StoreGateway
from shelfsync.models import StockStatus
from shelfsync.queries import (
    fetch_all_points,
    is_not_null,
    match,
    match_any,
    must,
    search_with_filters,
    shop_condition,
    value_range,
)
from shelfsync.schema import CollectionSchemaManager
from shelfsync.vector_store import InMemoryVectorStore, VectorStoreError
from shelfsync.vectors import build_placeholder_vector


class FlakyScrollStore(InMemoryVectorStore):
    """Fails ``fail_pages`` scroll calls with ``status`` once ``after`` pages succeeded."""

    def __init__(self, fail_pages: int, *, status: int = 400, after: int = 0):
        super().__init__()
        self.fail_pages = fail_pages
        self.status = status
        self.after = after

    async def scroll(self, name, **kwargs):
        if self.after > 0:
            self.after -= 1
            return await super().scroll(name, **kwargs)
        if self.fail_pages > 0:
            self.fail_pages -= 1
            self.op_counts["scroll_failures"] += 1
            raise VectorStoreError("Bad request", status_code=self.status)
        return await super().scroll(name, **kwargs)


class FailingSearchStore(InMemoryVectorStore):
    async def search(self, name, vector, **kwargs):
        raise VectorStoreError("search exploded", status_code=500)


def wire(store):
    schema = CollectionSchemaManager(store, verify_delay=0)
    return schema, StoreGateway(store, schema, scroll_backoff=0)


async def seed_items(gateway, make_stock_item, count, **overrides):
    items = [make_stock_item(**overrides) for _ in range(count)]
    await gateway.upsert_many(items)
    return items


# ---------------------------------------------------------------------------
# Filter builders
# ---------------------------------------------------------------------------


class TestFilterBuilders:
    def test_match(self):
        assert match("shopId", "s1") == {"key": "shopId", "match": {"value": "s1"}}

    def test_match_any(self):
        assert match_any("productId", ("a", "b")) == {
            "key": "productId",
            "match": {"any": ["a", "b"]},
        }

    def test_value_range_drops_unset_bounds(self):
        assert value_range("quantity", gt=0) == {"key": "quantity", "range": {"gt": 0}}

    def test_is_not_null(self):
        assert is_not_null("linkedUserId") == {
            "must_not": [{"is_null": {"key": "linkedUserId"}}]
        }

    def test_must_skips_empty_conditions(self):
        assert must(None, match("a", 1), None) == {"must": [match("a", 1)]}
        assert must() is None
        assert must(None) is None

    def test_shop_condition(self):
        assert shop_condition(None) is None
        assert shop_condition("s1") == match("shopId", "s1")


# ---------------------------------------------------------------------------
# fetch_all_points
# ---------------------------------------------------------------------------


class TestFetchAllPoints:
    @pytest.mark.asyncio
    async def test_pages_through_everything(self, store, schema, gateway, make_stock_item):
        await seed_items(gateway, make_stock_item, 5)

        points = await fetch_all_points(store, schema, "items", "shop-1", limit=2)

        assert len(points) == 5
        assert store.op_counts["scroll"] == 3

    @pytest.mark.asyncio
    async def test_filters_by_shop(self, store, schema, gateway, make_stock_item):
        await seed_items(gateway, make_stock_item, 2)
        await seed_items(gateway, make_stock_item, 3, shop_id="shop-2")

        points = await fetch_all_points(store, schema, "items", "shop-2")

        assert len(points) == 3
        assert {p.payload["shopId"] for p in points} == {"shop-2"}

    @pytest.mark.asyncio
    async def test_extra_conditions(self, store, schema, gateway, make_stock_item):
        await seed_items(gateway, make_stock_item, 2, status=StockStatus.EXPIRED)
        await seed_items(gateway, make_stock_item, 1)

        points = await fetch_all_points(
            store, schema, "items", "shop-1", conditions=[match("status", "ACTIVE")]
        )
        assert len(points) == 1

    @pytest.mark.asyncio
    async def test_unready_collection_returns_empty(self):
        class NoCreateStore(InMemoryVectorStore):
            async def create_collection(self, name, **kwargs):
                raise VectorStoreError("forbidden", status_code=403)

        store = NoCreateStore()
        schema = CollectionSchemaManager(store, verify_delay=0)

        assert await fetch_all_points(store, schema, "items") == []

    @pytest.mark.asyncio
    async def test_retries_400_then_succeeds(self, make_stock_item):
        store = FlakyScrollStore(fail_pages=2)
        schema, gateway = wire(store)
        await seed_items(gateway, make_stock_item, 3)

        points = await fetch_all_points(store, schema, "items", backoff=0)

        assert len(points) == 3
        assert store.op_counts["scroll_failures"] == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_truncate(self, make_stock_item):
        store = FlakyScrollStore(fail_pages=10)
        schema, gateway = wire(store)
        await seed_items(gateway, make_stock_item, 3)

        points = await fetch_all_points(store, schema, "items", retries=3, backoff=0)

        assert points == []
        assert store.op_counts["scroll_failures"] == 4

    @pytest.mark.asyncio
    async def test_failure_mid_scroll_keeps_earlier_pages(self, make_stock_item):
        store = FlakyScrollStore(fail_pages=10, after=1)
        schema, gateway = wire(store)
        await seed_items(gateway, make_stock_item, 5)

        points = await fetch_all_points(store, schema, "items", limit=2, retries=1, backoff=0)

        assert len(points) == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        store = FlakyScrollStore(fail_pages=10, status=500)
        schema = CollectionSchemaManager(store, verify_delay=0)
        await schema.ensure_collection("items")

        points = await fetch_all_points(store, schema, "items", backoff=0)

        assert points == []
        assert store.op_counts["scroll_failures"] == 1

    @pytest.mark.asyncio
    async def test_backoff_is_linear(self):
        store = FlakyScrollStore(fail_pages=3)
        schema = CollectionSchemaManager(store, verify_delay=0)
        await schema.ensure_collection("items")

        with patch("shelfsync.queries.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await fetch_all_points(store, schema, "items", retries=3, backoff=0.5)

        assert sleep.await_args_list == [call(0.5), call(1.0), call(1.5)]

    @pytest.mark.asyncio
    async def test_max_points_cap(self, store, schema, gateway, make_stock_item):
        await seed_items(gateway, make_stock_item, 6)

        points = await fetch_all_points(store, schema, "items", limit=2, max_points=3)

        assert len(points) == 4


# ---------------------------------------------------------------------------
# search_with_filters
# ---------------------------------------------------------------------------


class TestSearchWithFilters:
    @pytest.mark.asyncio
    async def test_quantity_min_is_exclusive(self, store, schema, gateway, make_stock_item):
        await seed_items(gateway, make_stock_item, 1, quantity=0)
        await seed_items(gateway, make_stock_item, 2, quantity=4)

        results = await search_with_filters(
            store,
            schema,
            "items",
            build_placeholder_vector("query"),
            shop_id="shop-1",
            status="ACTIVE",
            quantity_min=0,
        )

        assert len(results) == 2
        assert all(p.payload["quantity"] == 4 for p in results)

    @pytest.mark.asyncio
    async def test_extra_exact_matches(self, store, schema, gateway, make_stock_item):
        await seed_items(gateway, make_stock_item, 2, product_id="milk")
        await seed_items(gateway, make_stock_item, 1, product_id="bread")

        results = await search_with_filters(
            store,
            schema,
            "items",
            build_placeholder_vector("query"),
            extra={"productId": "bread", "batchId": None},
        )

        assert [p.payload["productId"] for p in results] == ["bread"]

    @pytest.mark.asyncio
    async def test_store_failure_returns_empty(self):
        store = FailingSearchStore()
        schema = CollectionSchemaManager(store, verify_delay=0)

        results = await search_with_filters(
            store, schema, "items", build_placeholder_vector("query")
        )
        assert results == []
