"""Typed access to the vector store.

``StoreGateway.upsert`` is the single write path for every collection: the
record type names its collection, its key gives the deterministic point id,
and the vector is validated before the write. Reads project payloads back
into record types, skipping points whose payload no longer validates.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, TypeVar

from pydantic import ValidationError

from .embedding import EmbeddingService, NullEmbeddingService
from .models import CollectionRecord
from .queries import (
    MAX_POINTS,
    SCROLL_BACKOFF_SECONDS,
    SCROLL_LIMIT,
    SCROLL_RETRIES,
    fetch_all_points,
    must,
    search_with_filters,
)
from .schema import CollectionSchemaManager
from .vector_store import Point, VectorStore
from .vectors import (
    compose_point_vector,
    compose_query_vector,
    point_id,
    resolve_vector,
    vector_problem,
)

logger = logging.getLogger("shelfsync.gateway")

R = TypeVar("R", bound=CollectionRecord)


class StoreGateway:
    """Store, schema manager and embedding service bundled for the façade."""

    def __init__(
        self,
        store: VectorStore,
        schema: CollectionSchemaManager,
        *,
        embedder: EmbeddingService | None = None,
        scroll_limit: int = SCROLL_LIMIT,
        scroll_retries: int = SCROLL_RETRIES,
        scroll_backoff: float = SCROLL_BACKOFF_SECONDS,
        max_points: int = MAX_POINTS,
    ) -> None:
        self.store = store
        self.schema = schema
        self.embedder = embedder or NullEmbeddingService()
        self._scroll_limit = scroll_limit
        self._scroll_retries = scroll_retries
        self._scroll_backoff = scroll_backoff
        self._max_points = max_points

    @property
    def vector_size(self) -> int:
        return self.schema.vector_size

    @staticmethod
    def point_id_for(model: type[CollectionRecord], key: str) -> str:
        return key if model.NATIVE_KEY else point_id(model.COLLECTION, key)

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    async def upsert(self, record: CollectionRecord, *, vector: Any = None) -> bool:
        """Insert or replace one record. False when the collection is not ready.

        Raises VectorStoreError if the store rejects the write.
        """
        return await self.upsert_many([record], vectors=[vector])

    async def upsert_many(
        self,
        records: Sequence[CollectionRecord],
        *,
        vectors: Sequence[Any] | None = None,
    ) -> bool:
        if not records:
            return True
        model = type(records[0])
        if any(type(r) is not model for r in records):
            raise TypeError("upsert_many needs records of a single collection")
        collection = model.COLLECTION
        if not await self.schema.ensure_ready_or_warn(collection):
            return False

        layout = self.schema.layout_for(collection)
        candidates = list(vectors) if vectors is not None else [None] * len(records)
        points = []
        for record, candidate in zip(records, candidates):
            key = record.entity_key()
            vector = resolve_vector(
                candidate, key, f"{collection}:{key}", self.vector_size
            )
            points.append(
                Point(
                    id=self.point_id_for(model, key),
                    vector=compose_point_vector(layout, vector),
                    payload=record.to_payload(),
                )
            )
        await self.store.upsert(collection, points)
        logger.debug("Upserted %d point(s) into '%s'", len(points), collection)
        return True

    async def delete(self, model: type[CollectionRecord], keys: list[str]) -> bool:
        collection = model.COLLECTION
        if not keys:
            return True
        if not await self.schema.ensure_ready_or_warn(collection):
            return False
        ids = [self.point_id_for(model, key) for key in keys]
        await self.store.delete_points(collection, ids=ids)
        return True

    async def delete_where(
        self, model: type[CollectionRecord], conditions: list[dict[str, Any]]
    ) -> bool:
        collection = model.COLLECTION
        if not await self.schema.ensure_ready_or_warn(collection):
            return False
        await self.store.delete_points(collection, points_filter=must(*conditions))
        return True

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    @staticmethod
    def project(model: type[R], points: list[Point]) -> list[R]:
        records = []
        for point in points:
            try:
                records.append(model.from_payload(point.payload, fallback_id=point.id))
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed %s point %s: %s",
                    model.COLLECTION,
                    point.id,
                    e.errors()[0]["msg"] if e.errors() else e,
                )
        return records

    async def retrieve(self, model: type[R], key: str) -> R | None:
        collection = model.COLLECTION
        if not await self.schema.ensure_ready_or_warn(collection):
            return None
        points = await self.store.retrieve(collection, [self.point_id_for(model, key)])
        records = self.project(model, points)
        return records[0] if records else None

    async def fetch_all(
        self,
        model: type[R],
        shop_id: str | None = None,
        *,
        conditions: list[dict[str, Any]] | None = None,
    ) -> list[R]:
        points = await fetch_all_points(
            self.store,
            self.schema,
            model.COLLECTION,
            shop_id,
            conditions=conditions,
            limit=self._scroll_limit,
            retries=self._scroll_retries,
            backoff=self._scroll_backoff,
            max_points=self._max_points,
        )
        return self.project(model, points)

    async def search(
        self,
        model: type[R],
        vector: list[float] | None,
        *,
        shop_id: str | None = None,
        status: str | None = None,
        quantity_min: int | None = None,
        extra: dict[str, Any] | None = None,
        limit: int = 10,
    ) -> list[tuple[R, float]]:
        """Vector search returning ``(record, score)`` pairs, best first."""
        collection = model.COLLECTION
        problem = vector_problem(vector, self.vector_size)
        if problem is not None:
            logger.warning("Search in '%s' skipped: %s", collection, problem)
            return []
        if not await self.schema.ensure_ready_or_warn(collection):
            return []
        query = compose_query_vector(self.schema.layout_for(collection), list(vector))
        points = await search_with_filters(
            self.store,
            self.schema,
            collection,
            query,
            shop_id=shop_id,
            status=status,
            quantity_min=quantity_min,
            extra=extra,
            limit=limit,
        )
        results = []
        for point in points:
            for record in self.project(model, [point]):
                results.append((record, point.score or 0.0))
        return results

    # -----------------------------------------------------------------
    # Embeddings
    # -----------------------------------------------------------------

    async def embed_text(self, text: str) -> list[float] | None:
        try:
            return await self.embedder.embed_text(text)
        except Exception as e:
            logger.warning("Embedding failed for %r: %s", text[:40], e)
            return None
