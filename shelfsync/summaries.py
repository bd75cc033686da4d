"""Product summary projection over available stock lines."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .models import BatchAllocation, ProductDefinition, ProductSummary, StockItem

DEFAULT_MARKUP = 1.4
NO_EXPIRATION = "9999-12-31"


def fefo_key(item: StockItem) -> tuple[str, str, str]:
    """Sort key putting the earliest-expiring line first (FEFO).

    Lines without an expiration sort last; ties break on creation time and
    then on the inventory uuid so the order is total.
    """
    return (item.expiration or NO_EXPIRATION, item.created_at, item.inventory_uuid)


@dataclass
class _Accumulator:
    product: ProductDefinition
    quantity: int = 0
    earliest: str | None = None
    total_cost: float = 0.0
    total_sell: float = 0.0
    supplier_ids: set[str] = field(default_factory=set)
    batches: list[BatchAllocation] = field(default_factory=list)

    def add(self, item: StockItem, markup: float) -> None:
        self.quantity += item.quantity
        if item.expiration and (self.earliest is None or item.expiration < self.earliest):
            self.earliest = item.expiration
        if item.supplier_id:
            self.supplier_ids.add(item.supplier_id)
        self.batches.append(
            BatchAllocation(
                batch_id=item.batch_id,
                inventory_uuid=item.inventory_uuid,
                quantity=item.quantity,
                expiration=item.expiration,
            )
        )
        sell = item.sell_price if item.sell_price is not None else item.cost_per_unit * markup
        self.total_cost += item.cost_per_unit * item.quantity
        self.total_sell += sell * item.quantity


def build_product_summaries(
    stock_items: Iterable[StockItem],
    products: Mapping[str, ProductDefinition],
    allowed_supplier_ids: Iterable[str] | None = None,
    *,
    markup: float = DEFAULT_MARKUP,
) -> list[ProductSummary]:
    """Aggregate available stock per product, sorted by product name.

    Lines that are not available (quantity <= 0 or a non-ACTIVE status) and
    lines whose product is unknown are ignored. When ``allowed_supplier_ids``
    is given, a product is kept only if it has no supplier or at least one
    allowed supplier, and its ``supplier_ids`` are restricted to the allowed
    set.
    """
    accumulators: dict[str, _Accumulator] = {}
    for item in stock_items:
        if not item.is_available:
            continue
        product = products.get(item.product_id)
        if product is None:
            continue
        acc = accumulators.setdefault(product.id, _Accumulator(product))
        acc.add(item, markup)

    allowed = set(allowed_supplier_ids) if allowed_supplier_ids is not None else None
    summaries = []
    for acc in accumulators.values():
        supplier_ids = acc.supplier_ids
        if allowed is not None:
            if supplier_ids and not supplier_ids & allowed:
                continue
            supplier_ids = supplier_ids & allowed
        summaries.append(
            ProductSummary(
                product_id=acc.product.id,
                product_name=acc.product.name,
                manufacturer=acc.product.manufacturer,
                category=acc.product.category,
                total_quantity=acc.quantity,
                earliest_expiration=acc.earliest,
                average_cost_per_unit=acc.total_cost / acc.quantity if acc.quantity else 0.0,
                average_sell_price=acc.total_sell / acc.quantity if acc.quantity else 0.0,
                supplier_ids=sorted(supplier_ids),
                batches=sorted(
                    acc.batches, key=lambda b: (b.expiration or NO_EXPIRATION, b.inventory_uuid)
                ),
            )
        )
    return sorted(summaries, key=lambda s: s.product_name.lower())
