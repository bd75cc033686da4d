"""FEFO stock allocation.

Demand for a product is served from its available stock lines in
earliest-expiration-first order. Each line touched becomes one sale ledger
line, so a sale spanning several batches records several lines.

Deductions for the same (shop, product) are serialized with an
``asyncio.Lock``; all cache mutations of one deduction happen without an
intervening await, so no two deductions can consume the same units.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .cache import ReadModelCache
from .models import SaleLineItem, SaleSource, SaleTransaction, StockItem, utc_now_iso
from .services.sales import new_sale

logger = logging.getLogger("shelfsync.allocator")


class InsufficientStockError(ValueError):
    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


@dataclass(frozen=True)
class ConsumedLine:
    inventory_uuid: str
    batch_id: str
    product_id: str
    quantity: int
    cost_per_unit: float
    price_at_sale: float
    remaining: int
    expiration: str


@dataclass
class DeductionResult:
    product_id: str
    requested: int
    consumed_lines: list[ConsumedLine] = field(default_factory=list)
    total_cost: float = 0.0
    shortfall: int = 0
    sale: SaleTransaction | None = None
    # lines shared with DAN as they were before this deduction, with units taken
    shared_lines: list[tuple[StockItem, int]] = field(default_factory=list, repr=False)

    @property
    def fulfilled(self) -> int:
        return self.requested - self.shortfall

    def sale_lines(self) -> list[SaleLineItem]:
        return [
            SaleLineItem(
                product_id=line.product_id,
                quantity=line.quantity,
                price_at_sale=line.price_at_sale,
                inventory_uuid=line.inventory_uuid,
                batch_id=line.batch_id,
            )
            for line in self.consumed_lines
        ]


class StockAllocator:
    def __init__(self, cache: ReadModelCache, *, markup: float | None = None) -> None:
        self.cache = cache
        self.markup = cache.markup if markup is None else markup
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock(self, product_id: str) -> asyncio.Lock:
        return self._locks.setdefault((self.cache.shop.id, product_id), asyncio.Lock())

    def price_at_sale(self, line: StockItem) -> float:
        if line.sell_price is not None:
            return line.sell_price
        return round(line.cost_per_unit * self.markup, 2)

    def available(self, product_id: str) -> int:
        return sum(line.quantity for line in self.cache.stock_items(product_id))

    def _consume(self, product_id: str, quantity: int, allow_partial: bool) -> DeductionResult:
        lines = self.cache.stock_items(product_id)
        available = sum(line.quantity for line in lines)
        if available < quantity and not allow_partial:
            raise InsufficientStockError(product_id, quantity, available)

        result = DeductionResult(product_id=product_id, requested=quantity)
        remaining = quantity
        now = utc_now_iso()
        for line in lines:
            if remaining <= 0:
                break
            take = min(line.quantity, remaining)
            remaining -= take
            left = line.quantity - take
            result.consumed_lines.append(
                ConsumedLine(
                    inventory_uuid=line.inventory_uuid,
                    batch_id=line.batch_id,
                    product_id=product_id,
                    quantity=take,
                    cost_per_unit=line.cost_per_unit,
                    price_at_sale=self.price_at_sale(line),
                    remaining=left,
                    expiration=line.expiration,
                )
            )
            result.total_cost += take * line.cost_per_unit
            if line.shared_with_dan:
                result.shared_lines.append((line, take))
            updated = line.model_copy(update={"quantity": left, "updated_at": now})
            if left == 0:
                self.cache.remove_stock(updated)
            else:
                self.cache.put_stock(updated)

        result.total_cost = round(result.total_cost, 2)
        result.shortfall = remaining
        if remaining:
            logger.warning(
                "Under-fulfilled product %s: %d of %d unit(s) short",
                product_id,
                remaining,
                quantity,
            )
        return result

    async def _announce_fulfilment(self, results: Iterable[DeductionResult]) -> None:
        offers = self.cache.offers
        if offers is None:
            return
        for result in results:
            for line, taken in result.shared_lines:
                await offers.offer_fulfilled(
                    self.cache.shop,
                    line,
                    product_name=self.cache.product_name(line.product_id),
                    fulfilled_quantity=taken,
                )

    async def deduct(
        self,
        product_id: str,
        quantity: int,
        *,
        allow_partial: bool = False,
        record_sale: bool = True,
        source: SaleSource | None = None,
    ) -> DeductionResult:
        """Consume ``quantity`` units of ``product_id`` in FEFO order.

        Raises InsufficientStockError, leaving stock untouched, when fewer
        units are available, unless ``allow_partial`` is set; the result
        then reports the ``shortfall``. With ``record_sale`` a sale with one
        line per touched stock line is appended to the ledger.
        """
        if quantity <= 0:
            raise ValueError("Deduction quantity must be positive")
        async with self._lock(product_id):
            await self.cache.load()
            result = self._consume(product_id, quantity, allow_partial)
        if record_sale and result.consumed_lines:
            result.sale = new_sale(self.cache.shop, result.sale_lines(), source=source)
            self.cache.put_sale(result.sale)
        await self._announce_fulfilment([result])
        return result

    async def fulfil_order(self, product_id: str, quantity: int) -> DeductionResult:
        """Deduct stock for an order without writing a sale."""
        result = await self.deduct(product_id, quantity, record_sale=False)
        logger.info("Deducted %d unit(s) of %s for order fulfilment", quantity, product_id)
        return result

    async def record_sale(
        self,
        cart: Mapping[str, int] | Iterable[tuple[str, int]],
        *,
        allow_partial: bool = False,
        source: SaleSource | None = None,
    ) -> SaleTransaction | None:
        """Sell a multi-product cart as one sale.

        Locks are taken in product-id order. Every product is checked before
        any stock is touched, so an insufficient line rejects the whole cart.
        With ``allow_partial`` and nothing in stock no sale is written and
        None is returned.
        """
        demand: dict[str, int] = {}
        for product_id, quantity in cart.items() if isinstance(cart, Mapping) else cart:
            if quantity <= 0:
                raise ValueError(f"Quantity for {product_id} must be positive")
            demand[product_id] = demand.get(product_id, 0) + quantity
        if not demand:
            raise ValueError("Cart is empty")

        async with contextlib.AsyncExitStack() as stack:
            for product_id in sorted(demand):
                await stack.enter_async_context(self._lock(product_id))
            await self.cache.load()
            if not allow_partial:
                for product_id, quantity in demand.items():
                    available = self.available(product_id)
                    if available < quantity:
                        raise InsufficientStockError(product_id, quantity, available)
            results = [
                self._consume(product_id, quantity, allow_partial)
                for product_id, quantity in demand.items()
            ]

        lines = [line for result in results for line in result.sale_lines()]
        if not lines:
            logger.warning("Nothing in stock for cart %s; no sale recorded", sorted(demand))
            return None
        sale = new_sale(self.cache.shop, lines, source=source)
        self.cache.put_sale(sale)
        await self._announce_fulfilment(results)
        logger.info("Recorded sale %s with total %.2f", sale.id, sale.total_amount)
        return sale
