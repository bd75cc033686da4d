"""Tests for the product summary projection and FEFO ordering."""

import pytest

from shelfsync.models import ProductDefinition, StockStatus
from shelfsync.summaries import build_product_summaries, fefo_key


@pytest.fixture
def products():
    return {
        "milk": ProductDefinition(id="milk", name="Oat Milk", category="Beverages"),
        "bread": ProductDefinition(id="bread", name="bread"),
    }


class TestFefoKey:
    def test_earliest_expiration_first(self, make_stock_item):
        late = make_stock_item(expiration="2024-03-01")
        early = make_stock_item(expiration="2024-01-01")
        undated = make_stock_item(expiration="")

        ordered = sorted([undated, late, early], key=fefo_key)
        assert ordered == [early, late, undated]

    def test_ties_break_on_creation_time(self, make_stock_item):
        second = make_stock_item(created_at="2024-01-02T00:00:00+00:00")
        first = make_stock_item(created_at="2024-01-01T00:00:00+00:00")

        assert sorted([second, first], key=fefo_key) == [first, second]


class TestBuildProductSummaries:
    def test_aggregates_per_product(self, products, make_stock_item):
        items = [
            make_stock_item("milk", quantity=10, buy_price=2.0, sell_price=3.0,
                            expiration="2024-02-01", supplier_id="acme"),
            make_stock_item("milk", quantity=30, buy_price=1.0, sell_price=None,
                            expiration="2024-01-15", supplier_id="global"),
            make_stock_item("bread", quantity=4, buy_price=1.0, sell_price=1.5),
        ]

        summaries = build_product_summaries(items, products)

        assert [s.product_name for s in summaries] == ["bread", "Oat Milk"]
        milk = summaries[1]
        assert milk.total_quantity == 40
        assert milk.earliest_expiration == "2024-01-15"
        assert milk.average_cost_per_unit == pytest.approx((10 * 2.0 + 30 * 1.0) / 40)
        assert milk.average_sell_price == pytest.approx((10 * 3.0 + 30 * 1.4) / 40)
        assert milk.supplier_ids == ["acme", "global"]
        assert [b.expiration for b in milk.batches] == ["2024-01-15", "2024-02-01"]
        assert milk.category == "Beverages"

    def test_unavailable_lines_are_ignored(self, products, make_stock_item):
        items = [
            make_stock_item("milk", quantity=0),
            make_stock_item("milk", quantity=5, status=StockStatus.EXPIRED),
            make_stock_item("milk", quantity=5, status=StockStatus.EMPTY),
        ]
        assert build_product_summaries(items, products) == []

    def test_unknown_products_are_ignored(self, products, make_stock_item):
        assert build_product_summaries([make_stock_item("ghost")], products) == []

    def test_supplier_allow_list(self, products, make_stock_item):
        items = [
            make_stock_item("milk", supplier_id="acme"),
            make_stock_item("milk", supplier_id="foreign"),
            make_stock_item("bread", supplier_id="foreign"),
        ]

        summaries = build_product_summaries(items, products, ["acme"])

        assert [s.product_id for s in summaries] == ["milk"]
        assert summaries[0].supplier_ids == ["acme"]
        assert summaries[0].total_quantity == 20

    def test_products_without_supplier_pass_allow_list(self, products, make_stock_item):
        summaries = build_product_summaries([make_stock_item("bread")], products, [])
        assert [s.product_id for s in summaries] == ["bread"]

    def test_custom_markup(self, products, make_stock_item):
        item = make_stock_item("bread", buy_price=10.0, sell_price=None)
        summary = build_product_summaries([item], products, markup=1.5)[0]
        assert summary.average_sell_price == pytest.approx(15.0)

    def test_undated_batches_are_listed_last(self, products, make_stock_item):
        items = [
            make_stock_item("milk", expiration="", batch_id="batch-undated"),
            make_stock_item("milk", expiration="2024-05-01", batch_id="batch-may"),
            make_stock_item("milk", expiration="2024-02-01", batch_id="batch-feb"),
        ]

        (milk,) = build_product_summaries(items, products)

        assert [b.batch_id for b in milk.batches] == ["batch-feb", "batch-may", "batch-undated"]
        assert milk.earliest_expiration == "2024-02-01"
