"""Per-collection domain services over a ``StoreGateway``."""

from .accounts import AccountDirectory
from .batches import (
    BatchCreation,
    BatchService,
    BatchValidationError,
    BatchWriteError,
    PartialBatchError,
)
from .catalog import ProductCatalog, ProductNotFoundError
from .dan_inventory import DanInventoryService, DanOfferPublisher
from .inventory import InventoryService, default_expiration
from .marketplace import ListingError, MarketplacePurchase, MarketplaceService
from .sales import SalesLedger, new_sale
from .suppliers import SupplierDirectory, SupplierScopeError, validate_supplier_scope
from .visual import VisualCaptureService

__all__ = [
    "AccountDirectory",
    "BatchCreation",
    "BatchService",
    "BatchValidationError",
    "BatchWriteError",
    "DanInventoryService",
    "DanOfferPublisher",
    "InventoryService",
    "ListingError",
    "MarketplacePurchase",
    "MarketplaceService",
    "PartialBatchError",
    "ProductCatalog",
    "ProductNotFoundError",
    "SalesLedger",
    "SupplierDirectory",
    "SupplierScopeError",
    "VisualCaptureService",
    "default_expiration",
    "new_sale",
    "validate_supplier_scope",
]
