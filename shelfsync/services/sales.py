"""Append-only sales ledger."""

from __future__ import annotations

import logging
import uuid

from ..gateway import StoreGateway
from ..models import SaleLineItem, SaleSource, SaleTransaction, ShopContext

logger = logging.getLogger("shelfsync.services.sales")


def new_sale(
    shop: ShopContext,
    items: list[SaleLineItem],
    *,
    source: SaleSource | None = None,
) -> SaleTransaction:
    total = round(sum(line.quantity * line.price_at_sale for line in items), 2)
    return SaleTransaction(
        id=str(uuid.uuid4()),
        shop_id=shop.id,
        items=items,
        total_amount=total,
        source=source,
    )


class SalesLedger:
    def __init__(self, gateway: StoreGateway) -> None:
        self._gateway = gateway

    async def persist_sale(self, shop: ShopContext, sale: SaleTransaction) -> bool:
        if sale.shop_id != shop.id:
            sale = sale.model_copy(update={"shop_id": shop.id})
        stored = await self._gateway.upsert(sale)
        if stored:
            logger.info("Recorded sale %s with total %.2f", sale.id, sale.total_amount)
        return stored

    async def list_sales(self, shop: ShopContext) -> list[SaleTransaction]:
        sales = await self._gateway.fetch_all(SaleTransaction, shop.id)
        return sorted(sales, key=lambda sale: sale.timestamp, reverse=True)
