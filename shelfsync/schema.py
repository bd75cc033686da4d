"""Collection schema management.

Ensures each logical collection exists with the expected vector
configuration, self-heals incompatible collections (delete + recreate)
and reconciles declared payload indexes.

Concurrent ``ensure_collection`` calls for the same name share a single
in-flight task; only one create ever reaches the store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .diagnostics import DiagnosticLog, describe_error
from .vector_store import VectorStore, VectorStoreError

logger = logging.getLogger("shelfsync.schema")

BASE_COLLECTIONS: tuple[str, ...] = (
    "users",
    "shops",
    "customers",
    "suppliers",
    "products",
    "items",
    "batches",
    "sales",
    "drivers",
    "visual",
    "marketplace",
    "dan_inventory",
)

COLLECTION_PAYLOAD_INDEXES: dict[str, dict[str, str]] = {
    "users": {
        "userId": "keyword",
        "displayName": "keyword",
        "contactEmail": "keyword",
        "email": "keyword",
        "shopId": "keyword",
        "isVerified": "bool",
        "isDriverVerified": "bool",
    },
    "shops": {
        "shopId": "keyword",
        "userId": "keyword",
        "name": "keyword",
    },
    "suppliers": {
        "supplierId": "keyword",
        "shopId": "keyword",
        "linkedUserId": "keyword",
        "name": "keyword",
    },
    "products": {
        "productId": "keyword",
        "category": "keyword",
        "manufacturer": "keyword",
        "defaultSupplierId": "keyword",
    },
    "items": {
        "inventoryUuid": "keyword",
        "shopId": "keyword",
        "productId": "keyword",
        "batchId": "keyword",
        "supplierId": "keyword",
        "status": "keyword",
        "quantity": "integer",
        "expiration": "keyword",
    },
    "batches": {
        "batchId": "keyword",
        "shopId": "keyword",
        "supplierId": "keyword",
        "deliveryDate": "keyword",
        "inventoryDate": "keyword",
    },
    "sales": {
        "saleId": "keyword",
        "shopId": "keyword",
        "timestamp": "keyword",
    },
    "customers": {
        "customerId": "keyword",
        "userId": "keyword",
        "name": "keyword",
    },
    "drivers": {
        "driverId": "keyword",
        "userId": "keyword",
        "status": "keyword",
    },
    "visual": {
        "shopId": "keyword",
        "productId": "keyword",
        "fieldName": "keyword",
    },
    "marketplace": {
        "listingId": "keyword",
        "shopId": "keyword",
        "productId": "keyword",
    },
    "dan_inventory": {
        "inventoryUuid": "keyword",
        "shopId": "keyword",
        "productId": "keyword",
        "productName": "keyword",
        "locationBucket": "keyword",
        "shareScope": "keyword",
        "expirationDate": "keyword",
    },
}


@dataclass(frozen=True)
class VectorLayout:
    """Whether a collection stores a named vector, and under which name."""

    named: bool = False
    vector_name: str | None = None


UNNAMED = VectorLayout()


def analyze_vector_config(
    raw: Any,
) -> tuple[dict[str, Any] | None, VectorLayout]:
    """Split a reported vector config into its params and layout.

    Qdrant reports either ``{"size": ..., "distance": ...}`` for a single
    unnamed vector or ``{name: {"size": ..., "distance": ...}, ...}`` for
    named vectors. A ``default`` entry wins when several are present.
    """
    if not isinstance(raw, dict) or not raw:
        return None, UNNAMED
    if isinstance(raw.get("size"), int):
        return raw, UNNAMED

    names = sorted(raw, key=lambda key: key != "default")
    for name in names:
        params = raw[name]
        if isinstance(params, dict) and isinstance(params.get("size"), int):
            return params, VectorLayout(named=True, vector_name=name)
    return None, VectorLayout(named=True)


class CollectionSchemaManager:
    """Tracks readiness of collections and converges them on the expected schema."""

    def __init__(
        self,
        store: VectorStore,
        *,
        vector_size: int = 768,
        distance: str = "Cosine",
        verify_attempts: int = 3,
        verify_delay: float = 0.5,
        diagnostics: DiagnosticLog | None = None,
        index_definitions: dict[str, dict[str, str]] | None = None,
    ) -> None:
        self._store = store
        self.vector_size = vector_size
        self.distance = distance
        self._verify_attempts = max(1, verify_attempts)
        self._verify_delay = verify_delay
        self.diagnostics = diagnostics or DiagnosticLog()
        self._indexes = (
            COLLECTION_PAYLOAD_INDEXES if index_definitions is None else index_definitions
        )
        self._ready: set[str] = set()
        self._layouts: dict[str, VectorLayout] = {}
        self._inflight: dict[str, asyncio.Task[bool]] = {}

    # -----------------------------------------------------------------
    # Readiness
    # -----------------------------------------------------------------

    def is_ready(self, name: str) -> bool:
        return name in self._ready

    def layout_for(self, name: str) -> VectorLayout:
        return self._layouts.get(name, UNNAMED)

    def reset(self, name: str | None = None) -> None:
        """Forget readiness so the next ensure re-checks the store."""
        if name is None:
            self._ready.clear()
            self._layouts.clear()
        else:
            self._ready.discard(name)
            self._layouts.pop(name, None)

    async def ensure_collection(self, name: str) -> bool:
        if name in self._ready:
            return True

        task = self._inflight.get(name)
        if task is None:
            task = asyncio.ensure_future(self._ensure(name))
            self._inflight[name] = task

            def _clear(done: asyncio.Task[bool], key: str = name) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_clear)
        return await asyncio.shield(task)

    async def ensure_ready_or_warn(self, name: str) -> bool:
        ready = await self.ensure_collection(name)
        if not ready:
            logger.warning("Collection '%s' is not ready; operation skipped", name)
        return ready

    async def ensure_base_collections(
        self, names: tuple[str, ...] | list[str] = BASE_COLLECTIONS
    ) -> dict[str, bool]:
        self.diagnostics.info("Ensuring all base collections are ready...")
        results = await asyncio.gather(*(self.ensure_collection(n) for n in names))
        status = dict(zip(names, results))
        failed = [n for n, ok in status.items() if not ok]
        if failed:
            self.diagnostics.warn(f"Collections not ready: {', '.join(failed)}")
        else:
            self.diagnostics.info("All base collections are ready")
        return status

    async def recreate(self, name: str) -> bool:
        """Drop a collection (if present) and ensure it from scratch."""
        self.reset(name)
        try:
            await self._store.delete_collection(name)
            self.diagnostics.info(f"Deleted collection '{name}' for recreation")
        except VectorStoreError as exc:
            if exc.status_code != 404:
                self.diagnostics.error(
                    f"Failed to delete collection '{name}': {describe_error(exc)}"
                )
                return False
        return await self.ensure_collection(name)

    # -----------------------------------------------------------------
    # Convergence
    # -----------------------------------------------------------------

    def _matches(self, params: dict[str, Any] | None) -> bool:
        return (
            params is not None
            and params.get("size") == self.vector_size
            and params.get("distance") == self.distance
        )

    async def _ensure(self, name: str) -> bool:
        try:
            existing = await self._store.list_collections()
            if name in existing:
                info = await self._store.get_collection(name)
                params, layout = analyze_vector_config(
                    info.get("config", {}).get("params", {}).get("vectors")
                )
                if not self._matches(params):
                    found = params or {}
                    self.diagnostics.warn(
                        f"Collection '{name}' has incompatible vectors "
                        f"(size={found.get('size')}, distance={found.get('distance')}; "
                        f"expected size={self.vector_size}, distance={self.distance}). "
                        "Recreating."
                    )
                    await self._store.delete_collection(name)
                    layout = await self._create(name)
            else:
                layout = await self._create(name)
        except VectorStoreError as exc:
            self.diagnostics.error(
                f"Failed to ensure collection '{name}': {describe_error(exc)}"
            )
            return False

        if layout is None:
            return False

        self._layouts[name] = layout
        await self._reconcile_indexes(name)
        self._ready.add(name)
        self.diagnostics.info(f"Collection '{name}' is ready")
        return True

    async def _create(self, name: str) -> VectorLayout | None:
        try:
            await self._store.create_collection(
                name, size=self.vector_size, distance=self.distance
            )
            self.diagnostics.info(
                f"Created collection '{name}' "
                f"(size={self.vector_size}, distance={self.distance})"
            )
        except VectorStoreError as exc:
            if exc.status_code != 409:
                raise
            self.diagnostics.info(
                f"Collection '{name}' already exists (created concurrently)"
            )
        return await self._verify(name)

    async def _verify(self, name: str) -> VectorLayout | None:
        for attempt in range(1, self._verify_attempts + 1):
            try:
                info = await self._store.get_collection(name)
                params, layout = analyze_vector_config(
                    info.get("config", {}).get("params", {}).get("vectors")
                )
                if self._matches(params):
                    return layout
                self.diagnostics.warn(
                    f"Collection '{name}' verification {attempt}/{self._verify_attempts}: "
                    "vector configuration does not match"
                )
            except VectorStoreError as exc:
                self.diagnostics.warn(
                    f"Collection '{name}' verification {attempt}/{self._verify_attempts} "
                    f"failed: {describe_error(exc)}"
                )
            if attempt < self._verify_attempts:
                await asyncio.sleep(self._verify_delay)

        self.diagnostics.error(
            f"Collection '{name}' could not be verified after "
            f"{self._verify_attempts} attempts; marking not ready"
        )
        return None

    async def _reconcile_indexes(self, name: str) -> None:
        definitions = self._indexes.get(name)
        if not definitions:
            return

        try:
            info = await self._store.get_collection(name)
        except VectorStoreError as exc:
            self.diagnostics.error(
                f"Failed to read indexes for '{name}': {describe_error(exc)}"
            )
            return
        existing_schema = info.get("payload_schema") or {}

        for field_name, field_type in definitions.items():
            existing = existing_schema.get(field_name)
            existing_type = existing.get("data_type") if existing else None
            if existing_type == field_type:
                continue

            if existing is not None:
                try:
                    await self._store.delete_payload_index(name, field_name)
                    self.diagnostics.info(
                        f"Deleted index '{name}.{field_name}' "
                        f"(was {existing_type}, want {field_type})"
                    )
                except VectorStoreError as exc:
                    self.diagnostics.warn(
                        f"Failed to delete index '{name}.{field_name}': "
                        f"{describe_error(exc)}"
                    )

            try:
                await self._store.create_payload_index(name, field_name, field_type)
                self.diagnostics.info(f"Created index '{name}.{field_name}' ({field_type})")
            except VectorStoreError as exc:
                self.diagnostics.error(
                    f"Failed to create index '{name}.{field_name}': {describe_error(exc)}"
                )
