"""Pydantic models for every collection ShelfSync persists.

Each collection has exactly one record type. The record type names its
collection via ``COLLECTION`` and its natural key via ``KEY_FIELD``; the
camelCase aliases are the payload field names stored in the vector store,
so ``record.to_payload()`` is the stored payload and
``Record.from_payload(payload)`` projects it back.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def today_iso() -> str:
    return date.today().isoformat()


class StockStatus(str, Enum):
    """Lifecycle status of a stock line."""

    ACTIVE = "ACTIVE"
    EMPTY = "EMPTY"
    EXPIRED = "EXPIRED"


class DanShareScope(str, Enum):
    LOCAL = "local"
    MARKETPLACE = "marketplace"
    DAN = "dan"


class CamelModel(BaseModel):
    """Base for nested payload objects (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ShopContext(CamelModel):
    """Explicit tenant scope passed into every shop-scoped call."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    id: str
    name: str = ""
    contact_email: str = ""
    location: str = ""
    namespace: str | None = None


# ---------------------------------------------------------------------------
# Collection records
# ---------------------------------------------------------------------------


class CollectionRecord(CamelModel):
    """A record stored as the payload of one point in one collection."""

    COLLECTION: ClassVar[str] = ""
    KEY_FIELD: ClassVar[str] = "id"
    # True when the natural key is already a store-compatible UUID
    NATIVE_KEY: ClassVar[bool] = False

    def entity_key(self) -> str:
        return str(getattr(self, self.KEY_FIELD))

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_payload(
        cls, payload: dict[str, Any] | None, *, fallback_id: Any = None
    ):
        """Build a record from a stored payload.

        Legacy points may lack the key field in their payload; the point id
        is used in that case.
        """
        data = dict(payload or {})
        key_alias = cls.model_fields[cls.KEY_FIELD].alias or cls.KEY_FIELD
        if not data.get(key_alias) and fallback_id is not None:
            data[key_alias] = str(fallback_id)
        return cls.model_validate(data)


class AuditEntry(CamelModel):
    user_id: str
    shop_id: str | None = None
    action: str
    timestamp: str = Field(default_factory=utc_now_iso)


class ProductImage(CamelModel):
    url: str
    type: str = "reference"
    source: str = "upload"
    added_at: str = Field(default_factory=utc_now_iso)


class ProductDefinition(CollectionRecord):
    """Canonical product, global across shops."""

    COLLECTION: ClassVar[str] = "products"

    id: str = Field(alias="productId")
    name: str
    manufacturer: str = ""
    category: str = ""
    description: str = ""
    default_supplier_id: str | None = None
    images: list[ProductImage] = Field(default_factory=list)
    audit: list[AuditEntry] = Field(default_factory=list)
    embeddings: list[float] | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class SupplierProfile(CollectionRecord):
    """Supplier that is either shop-local or a global linked account."""

    COLLECTION: ClassVar[str] = "suppliers"

    id: str = Field(alias="supplierId")
    name: str
    shop_id: str | None = None
    linked_user_id: str | None = None
    contact: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    embeddings: list[float] | None = None

    @property
    def is_local(self) -> bool:
        return self.shop_id is not None and self.linked_user_id is None

    @property
    def is_linked(self) -> bool:
        return self.linked_user_id is not None and self.shop_id is None


class BatchLineItem(CamelModel):
    """Snapshot of one invoice line; independent of live stock."""

    product_id: str | None = None
    product_name: str = ""
    quantity: int = 0
    cost: float = 0.0
    expiration: str | None = None
    sell_price: float | None = None
    location: str | None = None
    share_scope: list[DanShareScope] = Field(default_factory=lambda: [DanShareScope.LOCAL])

    @property
    def is_valid(self) -> bool:
        return bool(self.product_id) and self.quantity > 0


class BatchRecord(CollectionRecord):
    COLLECTION: ClassVar[str] = "batches"

    id: str = Field(alias="batchId")
    shop_id: str
    supplier_id: str | None = None
    delivery_date: str
    inventory_date: str | None = None
    invoice_number: str | None = None
    documents: list[dict[str, Any]] = Field(default_factory=list)
    line_items: list[BatchLineItem] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now_iso)
    created_by_user_id: str = ""


class StockItem(CollectionRecord):
    """One stock line in the ``items`` collection."""

    COLLECTION: ClassVar[str] = "items"
    KEY_FIELD: ClassVar[str] = "inventory_uuid"
    NATIVE_KEY: ClassVar[bool] = True

    inventory_uuid: str
    shop_id: str
    product_id: str
    batch_id: str
    supplier_id: str | None = None
    buy_price: float | None = None
    sell_price: float | None = None
    quantity: int = Field(default=0, ge=0)
    expiration: str = ""
    location: str | None = None
    status: StockStatus = StockStatus.ACTIVE
    images: list[ProductImage] = Field(default_factory=list)
    share_scope: list[DanShareScope] = Field(default_factory=lambda: [DanShareScope.LOCAL])
    scan_metadata: dict[str, Any] | None = None
    created_by_user_id: str = ""
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    embeddings: list[float] | None = None
    # UI convenience only; never a stable key across reloads
    legacy_id: int | None = Field(default=None, exclude=True)

    @property
    def is_available(self) -> bool:
        return self.quantity > 0 and self.status == StockStatus.ACTIVE

    @property
    def cost_per_unit(self) -> float:
        return self.buy_price or 0.0

    @property
    def shared_with_dan(self) -> bool:
        return DanShareScope.DAN in self.share_scope


class SaleLineItem(CamelModel):
    product_id: str
    quantity: int
    price_at_sale: float
    inventory_uuid: str | None = None
    batch_id: str | None = None


class SaleSource(CamelModel):
    type: str = "pos"
    supplier_name: str | None = None
    listing_id: str | None = None


class SaleTransaction(CollectionRecord):
    """Append-only ledger entry."""

    COLLECTION: ClassVar[str] = "sales"

    id: str = Field(alias="saleId")
    shop_id: str
    timestamp: str = Field(default_factory=utc_now_iso)
    items: list[SaleLineItem] = Field(default_factory=list, alias="lineItems")
    total_amount: float = 0.0
    source: SaleSource | None = None


class MarketplaceListing(CollectionRecord):
    COLLECTION: ClassVar[str] = "marketplace"

    id: str = Field(alias="listingId")
    shop_id: str
    product_id: str
    product_name: str
    manufacturer: str = ""
    category: str = ""
    quantity: int = 0
    quantity_type: str = "units"
    price: float = 0.0
    seller_name: str = ""
    created_at: str = Field(default_factory=utc_now_iso)


class UserProfile(CollectionRecord):
    COLLECTION: ClassVar[str] = "users"
    KEY_FIELD: ClassVar[str] = "user_id"

    user_id: str
    display_name: str = ""
    contact_email: str = ""
    email: str = ""
    shop_id: str | None = None
    is_verified: bool | None = None
    is_driver_verified: bool | None = None


class ShopRecord(CollectionRecord):
    COLLECTION: ClassVar[str] = "shops"
    KEY_FIELD: ClassVar[str] = "shop_id"

    shop_id: str
    user_id: str = ""
    name: str
    contact: str = ""
    contact_email: str = ""
    qdrant_namespace: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_context(self) -> ShopContext:
        return ShopContext(
            id=self.shop_id,
            name=self.name,
            contact_email=self.contact_email,
            location=str(self.metadata.get("location", "")),
            namespace=self.qdrant_namespace,
        )


class CustomerRecord(CollectionRecord):
    COLLECTION: ClassVar[str] = "customers"
    KEY_FIELD: ClassVar[str] = "customer_id"

    customer_id: str
    user_id: str | None = None
    name: str
    contact: str = ""


class DriverRecord(CollectionRecord):
    COLLECTION: ClassVar[str] = "drivers"
    KEY_FIELD: ClassVar[str] = "driver_id"

    driver_id: str
    user_id: str | None = None
    name: str
    contact: str = ""
    status: str = "available"


class VisualCapture(CollectionRecord):
    """An image crop of one product field plus the value read from it."""

    COLLECTION: ClassVar[str] = "visual"

    id: str = Field(alias="captureId")
    shop_id: str
    product_name: str
    field_name: str
    product_id: str | None = None
    mime_type: str = "image/jpeg"
    image_base64: str = ""
    extracted_value: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)


class DanInventoryOffer(CollectionRecord):
    """Stock line shared with the DAN network."""

    COLLECTION: ClassVar[str] = "dan_inventory"
    KEY_FIELD: ClassVar[str] = "inventory_uuid"
    NATIVE_KEY: ClassVar[bool] = True

    inventory_uuid: str
    shop_id: str
    shop_name: str | None = None
    product_id: str
    product_name: str
    quantity: int = 0
    expiration_date: str = ""
    location_bucket: str | None = None
    sell_price: float | None = None
    share_scope: list[DanShareScope] = Field(
        default_factory=lambda: [DanShareScope.LOCAL]
    )
    proof_hash: str | None = None
    updated_at: str = Field(default_factory=utc_now_iso)


# ---------------------------------------------------------------------------
# Derived (not persisted)
# ---------------------------------------------------------------------------


class BatchAllocation(CamelModel):
    batch_id: str
    inventory_uuid: str
    quantity: int
    expiration: str


class ProductSummary(CamelModel):
    """Projection over the available stock lines of one product."""

    product_id: str
    product_name: str
    manufacturer: str = ""
    category: str = ""
    total_quantity: int = 0
    earliest_expiration: str | None = None
    average_cost_per_unit: float = 0.0
    average_sell_price: float = 0.0
    supplier_ids: list[str] = Field(default_factory=list)
    batches: list[BatchAllocation] = Field(default_factory=list)


class PeerListing(CamelModel):
    """A listing from another shop as seen by a buyer."""

    listing_id: str
    shop_id: str
    product_id: str
    product_name: str
    manufacturer: str = ""
    category: str = ""
    price: float
    quantity: int
    quantity_type: str = "units"
    seller_name: str = ""


COLLECTION_RECORDS: dict[str, type[CollectionRecord]] = {
    cls.COLLECTION: cls
    for cls in (
        UserProfile,
        ShopRecord,
        CustomerRecord,
        SupplierProfile,
        ProductDefinition,
        StockItem,
        BatchRecord,
        SaleTransaction,
        DriverRecord,
        VisualCapture,
        MarketplaceListing,
        DanInventoryOffer,
    )
}
