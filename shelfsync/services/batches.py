"""Delivery batches and the stock lines derived from them.

Batch creation is a two-step write: the batch record first, then every
derived stock line in one upsert. There is no transaction across the two.
If the second step fails the batch record stays and ``PartialBatchError``
carries the unwritten lines so they can be retried against it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ..gateway import StoreGateway
from ..models import BatchLineItem, BatchRecord, ShopContext, StockItem, utc_now_iso
from ..vector_store import VectorStoreError
from .catalog import ProductCatalog
from .inventory import InventoryService

logger = logging.getLogger("shelfsync.services.batches")


class BatchValidationError(ValueError):
    """Missing delivery date or no usable line items."""


class BatchWriteError(RuntimeError):
    """The batch record could not be stored."""


class PartialBatchError(BatchWriteError):
    """The batch record was stored but some of its stock lines were not."""

    def __init__(self, message: str, batch: BatchRecord, pending: list[StockItem]):
        super().__init__(message)
        self.batch = batch
        self.pending = pending


@dataclass
class BatchCreation:
    batch: BatchRecord
    items: list[StockItem] = field(default_factory=list)


class BatchService:
    def __init__(
        self,
        gateway: StoreGateway,
        inventory: InventoryService,
        catalog: ProductCatalog,
    ) -> None:
        self._gateway = gateway
        self._inventory = inventory
        self._catalog = catalog

    async def list_batches(self, shop: ShopContext) -> list[BatchRecord]:
        batches = await self._gateway.fetch_all(BatchRecord, shop.id)
        return sorted(batches, key=lambda b: (b.delivery_date, b.created_at), reverse=True)

    async def upsert_batch(self, batch: BatchRecord) -> bool:
        return await self._gateway.upsert(batch)

    async def _resolve_line(
        self, shop: ShopContext, line: BatchLineItem, user_id: str
    ) -> BatchLineItem:
        if line.product_id or not line.product_name.strip():
            return line
        product = await self._catalog.find_or_create(
            line.product_name, shop=shop, user_id=user_id
        )
        self._inventory.remember_product(product)
        return line.model_copy(
            update={"product_id": product.id, "product_name": product.name}
        )

    async def create_batch_for_shop(
        self,
        shop: ShopContext,
        *,
        delivery_date: str,
        line_items: list[BatchLineItem],
        supplier_id: str | None = None,
        inventory_date: str | None = None,
        invoice_number: str | None = None,
        documents: list[dict[str, Any]] | None = None,
        created_by_user_id: str | None = None,
        scan_data: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> BatchCreation:
        """Store a batch record and derive one stock line per valid line item.

        Line items naming a product without an id are resolved through the
        catalog, creating the product when the name is unknown.

        Raises BatchValidationError before writing anything, BatchWriteError
        when the batch record is not stored, and PartialBatchError when the
        stock lines are not.
        """
        if not delivery_date:
            raise BatchValidationError("Delivery date is required")
        user_id = created_by_user_id or shop.id
        resolved = [await self._resolve_line(shop, line, user_id) for line in line_items]
        if not any(line.is_valid for line in resolved):
            raise BatchValidationError(
                "At least one line item with a product and quantity is required"
            )

        batch = BatchRecord(
            id=str(uuid.uuid4()),
            shop_id=shop.id,
            supplier_id=supplier_id,
            delivery_date=delivery_date,
            inventory_date=inventory_date,
            invoice_number=invoice_number,
            documents=documents or [],
            line_items=resolved,
            created_at=utc_now_iso(),
            created_by_user_id=user_id,
        )

        try:
            stored = await self._gateway.upsert(batch)
        except VectorStoreError as e:
            raise BatchWriteError(f"Batch {batch.id} could not be stored: {e}") from e
        if not stored:
            raise BatchWriteError(f"Batch {batch.id} skipped: 'batches' collection is not ready")

        items = self._inventory.build_from_batch(shop, batch, resolved, scan_data)
        await self._write_lines(batch, items)
        logger.info(
            "Created batch %s for shop %s with %d stock line(s)", batch.id, shop.id, len(items)
        )
        return BatchCreation(batch=batch, items=items)

    async def _write_lines(self, batch: BatchRecord, items: list[StockItem]) -> None:
        try:
            written = await self._inventory.write_stock_items(items)
        except VectorStoreError as e:
            logger.error("Stock lines for batch %s failed: %s", batch.id, e)
            raise PartialBatchError(
                f"Batch {batch.id} stored but its stock lines failed: {e}", batch, items
            ) from e
        if not written:
            raise PartialBatchError(
                f"Batch {batch.id} stored but 'items' collection is not ready", batch, items
            )

    async def retry_stock_lines(self, error: PartialBatchError) -> BatchCreation:
        """Re-issue the unwritten stock lines of a partially created batch."""
        await self._write_lines(error.batch, error.pending)
        logger.info("Recovered %d stock line(s) for batch %s", len(error.pending), error.batch.id)
        return BatchCreation(batch=error.batch, items=error.pending)
