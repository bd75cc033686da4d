"""Vector record store clients.

Generic client abstraction over a document+vector store: collection CRUD,
payload indexes, point upsert, retrieve, filtered scroll and filtered
vector search.

Two implementations:
    - QdrantStore          Qdrant REST API over httpx (production)
    - InMemoryVectorStore  ephemeral store with the same semantics (dev/testing)

Filters use the Qdrant shape: ``{"must": [{"key": ..., "match": {"value": ...}}]}``
with ``range`` conditions for numeric fields.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

import httpx
import numpy as np

logger = logging.getLogger("shelfsync.vector_store")

VectorData = list[float] | dict[str, list[float]]
QueryVector = list[float] | dict[str, Any]


class VectorStoreError(Exception):
    """Raised when a store operation fails (transport error or HTTP >= 400)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class Point:
    id: str | int
    payload: dict[str, Any] = field(default_factory=dict)
    vector: VectorData | None = None
    score: float | None = None


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class VectorStore(ABC):
    """Abstract interface for the remote vector store."""

    @abstractmethod
    async def list_collections(self) -> list[str]:
        ...

    @abstractmethod
    async def get_collection(self, name: str) -> dict[str, Any]:
        """Return collection info (``config.params.vectors`` and ``payload_schema``).

        Raises VectorStoreError with status 404 when the collection is absent.
        """
        ...

    @abstractmethod
    async def create_collection(
        self,
        name: str,
        *,
        size: int,
        distance: str,
        vector_name: str | None = None,
    ) -> None:
        """Create a collection. Raises VectorStoreError 409 if it exists."""
        ...

    @abstractmethod
    async def delete_collection(self, name: str) -> None:
        ...

    @abstractmethod
    async def create_payload_index(
        self, name: str, field_name: str, field_schema: str
    ) -> None:
        ...

    @abstractmethod
    async def delete_payload_index(self, name: str, field_name: str) -> None:
        ...

    @abstractmethod
    async def upsert(self, name: str, points: list[Point]) -> None:
        """Insert or replace points by id."""
        ...

    @abstractmethod
    async def retrieve(self, name: str, ids: list[str | int]) -> list[Point]:
        ...

    @abstractmethod
    async def scroll(
        self,
        name: str,
        *,
        scroll_filter: dict | None = None,
        limit: int = 100,
        offset: str | int | None = None,
    ) -> tuple[list[Point], str | int | None]:
        """Return one page of points and the next page offset (None at end)."""
        ...

    @abstractmethod
    async def search(
        self,
        name: str,
        vector: QueryVector,
        *,
        query_filter: dict | None = None,
        limit: int = 10,
    ) -> list[Point]:
        ...

    @abstractmethod
    async def delete_points(
        self,
        name: str,
        *,
        ids: list[str | int] | None = None,
        points_filter: dict | None = None,
    ) -> None:
        ...

    async def close(self) -> None:
        """Release network resources."""


# ---------------------------------------------------------------------------
# Qdrant REST implementation (production)
# ---------------------------------------------------------------------------


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    status = body.get("status") if isinstance(body, dict) else None
    if isinstance(status, dict) and status.get("error"):
        return str(status["error"])
    return str(body)[:200]


def _point_from_json(raw: dict[str, Any]) -> Point:
    return Point(
        id=raw.get("id"),
        payload=raw.get("payload") or {},
        vector=raw.get("vector"),
        score=raw.get("score"),
    )


class QdrantStore(VectorStore):
    """Vector store backed by the Qdrant REST API.

    ``url`` may include a path prefix (e.g. ``http://localhost:8787/qdrant``
    when talking through the forwarding proxy).
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["api-key"] = api_key
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        logger.info("QdrantStore: initialized with %s", url)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        try:
            resp = await self._client.request(
                method, path, json=json_data, params=params
            )
        except httpx.HTTPError as exc:
            raise VectorStoreError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise VectorStoreError(
                f"{method} {path} returned {resp.status_code}: {_error_detail(resp)}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        return resp.json().get("result")

    async def list_collections(self) -> list[str]:
        result = await self._request("GET", "/collections") or {}
        return [c["name"] for c in result.get("collections", [])]

    async def get_collection(self, name: str) -> dict[str, Any]:
        return await self._request("GET", f"/collections/{name}") or {}

    async def create_collection(
        self,
        name: str,
        *,
        size: int,
        distance: str,
        vector_name: str | None = None,
    ) -> None:
        params = {"size": size, "distance": distance}
        vectors = {vector_name: params} if vector_name else params
        await self._request("PUT", f"/collections/{name}", json_data={"vectors": vectors})

    async def delete_collection(self, name: str) -> None:
        await self._request("DELETE", f"/collections/{name}")

    async def create_payload_index(
        self, name: str, field_name: str, field_schema: str
    ) -> None:
        await self._request(
            "PUT",
            f"/collections/{name}/index",
            json_data={"field_name": field_name, "field_schema": field_schema},
            params={"wait": "true"},
        )

    async def delete_payload_index(self, name: str, field_name: str) -> None:
        await self._request(
            "DELETE",
            f"/collections/{name}/index/{field_name}",
            params={"wait": "true"},
        )

    async def upsert(self, name: str, points: list[Point]) -> None:
        body = {
            "points": [
                {"id": p.id, "vector": p.vector, "payload": p.payload} for p in points
            ]
        }
        await self._request(
            "PUT", f"/collections/{name}/points", json_data=body, params={"wait": "true"}
        )

    async def retrieve(self, name: str, ids: list[str | int]) -> list[Point]:
        result = await self._request(
            "POST",
            f"/collections/{name}/points",
            json_data={"ids": ids, "with_payload": True, "with_vector": False},
        )
        return [_point_from_json(raw) for raw in result or []]

    async def scroll(
        self,
        name: str,
        *,
        scroll_filter: dict | None = None,
        limit: int = 100,
        offset: str | int | None = None,
    ) -> tuple[list[Point], str | int | None]:
        body: dict[str, Any] = {"limit": limit, "with_payload": True}
        if scroll_filter:
            body["filter"] = scroll_filter
        if offset is not None:
            body["offset"] = offset
        result = await self._request(
            "POST", f"/collections/{name}/points/scroll", json_data=body
        ) or {}
        points = [_point_from_json(raw) for raw in result.get("points", [])]
        return points, result.get("next_page_offset")

    async def search(
        self,
        name: str,
        vector: QueryVector,
        *,
        query_filter: dict | None = None,
        limit: int = 10,
    ) -> list[Point]:
        body: dict[str, Any] = {"vector": vector, "limit": limit, "with_payload": True}
        if query_filter:
            body["filter"] = query_filter
        result = await self._request(
            "POST", f"/collections/{name}/points/search", json_data=body
        )
        return [_point_from_json(raw) for raw in result or []]

    async def delete_points(
        self,
        name: str,
        *,
        ids: list[str | int] | None = None,
        points_filter: dict | None = None,
    ) -> None:
        if ids is None and points_filter is None:
            raise ValueError("delete_points needs ids or a filter")
        body: dict[str, Any] = {"points": ids} if ids is not None else {"filter": points_filter}
        await self._request(
            "POST",
            f"/collections/{name}/points/delete",
            json_data=body,
            params={"wait": "true"},
        )

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# In-memory implementation (dev/testing)
# ---------------------------------------------------------------------------


def _condition_matches(payload: dict[str, Any], condition: dict[str, Any]) -> bool:
    if any(k in condition for k in ("must", "should", "must_not")):
        return filter_matches(payload, condition)

    if "is_null" in condition:
        return payload.get(condition["is_null"]["key"]) is None

    value = payload.get(condition.get("key", ""))

    if "match" in condition:
        match = condition["match"]
        if "value" in match:
            expected = match["value"]
            if isinstance(value, list):
                return expected in value
            return value == expected
        if "any" in match:
            options = match["any"]
            if isinstance(value, list):
                return any(v in options for v in value)
            return value in options
        return False

    if "range" in condition:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        bounds = condition["range"]
        if "gt" in bounds and not value > bounds["gt"]:
            return False
        if "gte" in bounds and not value >= bounds["gte"]:
            return False
        if "lt" in bounds and not value < bounds["lt"]:
            return False
        if "lte" in bounds and not value <= bounds["lte"]:
            return False
        return True

    return False


def filter_matches(payload: dict[str, Any], flt: dict[str, Any] | None) -> bool:
    """Evaluate a Qdrant-shaped filter against a payload."""
    if not flt:
        return True
    for cond in flt.get("must", []) or []:
        if not _condition_matches(payload, cond):
            return False
    for cond in flt.get("must_not", []) or []:
        if _condition_matches(payload, cond):
            return False
    should = flt.get("should") or []
    if should and not any(_condition_matches(payload, c) for c in should):
        return False
    return True


@dataclass
class _MemoryCollection:
    vectors: dict[str, Any]
    payload_schema: dict[str, dict[str, Any]] = field(default_factory=dict)
    points: dict[str, Point] = field(default_factory=dict)

    @property
    def vector_name(self) -> str | None:
        if isinstance(self.vectors.get("size"), int):
            return None
        return next(iter(self.vectors), None)

    @property
    def size(self) -> int:
        name = self.vector_name
        params = self.vectors[name] if name else self.vectors
        return params["size"]


class InMemoryVectorStore(VectorStore):
    """Ephemeral in-memory vector store.

    Mirrors Qdrant's behaviour closely enough for the schema manager and
    the façade: 404 for unknown collections, 409 on duplicate create, 400
    for vectors of the wrong shape. ``op_counts`` tallies calls per method.
    """

    def __init__(self) -> None:
        self._collections: dict[str, _MemoryCollection] = {}
        self.op_counts: Counter[str] = Counter()

    def _get(self, name: str) -> _MemoryCollection:
        collection = self._collections.get(name)
        if collection is None:
            raise VectorStoreError(f"Collection '{name}' not found", status_code=404)
        return collection

    async def list_collections(self) -> list[str]:
        self.op_counts["list_collections"] += 1
        return list(self._collections)

    async def get_collection(self, name: str) -> dict[str, Any]:
        self.op_counts["get_collection"] += 1
        collection = self._get(name)
        return {
            "status": "green",
            "points_count": len(collection.points),
            "config": {"params": {"vectors": copy.deepcopy(collection.vectors)}},
            "payload_schema": copy.deepcopy(collection.payload_schema),
        }

    async def create_collection(
        self,
        name: str,
        *,
        size: int,
        distance: str,
        vector_name: str | None = None,
    ) -> None:
        self.op_counts["create_collection"] += 1
        if name in self._collections:
            raise VectorStoreError(
                f"Collection '{name}' already exists", status_code=409
            )
        params = {"size": size, "distance": distance}
        vectors = {vector_name: params} if vector_name else params
        self._collections[name] = _MemoryCollection(vectors=vectors)
        logger.info("InMemoryVectorStore: created collection %s", name)

    async def delete_collection(self, name: str) -> None:
        self.op_counts["delete_collection"] += 1
        self._get(name)
        del self._collections[name]

    async def create_payload_index(
        self, name: str, field_name: str, field_schema: str
    ) -> None:
        self.op_counts["create_payload_index"] += 1
        collection = self._get(name)
        collection.payload_schema[field_name] = {"data_type": field_schema, "points": 0}

    async def delete_payload_index(self, name: str, field_name: str) -> None:
        self.op_counts["delete_payload_index"] += 1
        collection = self._get(name)
        collection.payload_schema.pop(field_name, None)

    def _check_vector(self, collection: _MemoryCollection, vector: Any) -> None:
        name = collection.vector_name
        if name:
            if not isinstance(vector, dict) or name not in vector:
                raise VectorStoreError(
                    f"Expected named vector '{name}'", status_code=400
                )
            vector = vector[name]
        elif isinstance(vector, dict):
            raise VectorStoreError("Collection uses an unnamed vector", status_code=400)
        if not isinstance(vector, list) or len(vector) != collection.size:
            raise VectorStoreError(
                f"Wrong input: Vector dimension error: expected dim: {collection.size}",
                status_code=400,
            )

    async def upsert(self, name: str, points: list[Point]) -> None:
        self.op_counts["upsert"] += 1
        collection = self._get(name)
        for point in points:
            self._check_vector(collection, point.vector)
        for point in points:
            collection.points[str(point.id)] = Point(
                id=point.id,
                payload=copy.deepcopy(point.payload),
                vector=copy.deepcopy(point.vector),
            )

    async def retrieve(self, name: str, ids: list[str | int]) -> list[Point]:
        self.op_counts["retrieve"] += 1
        collection = self._get(name)
        found = []
        for point_id in ids:
            point = collection.points.get(str(point_id))
            if point is not None:
                found.append(Point(id=point.id, payload=copy.deepcopy(point.payload)))
        return found

    async def scroll(
        self,
        name: str,
        *,
        scroll_filter: dict | None = None,
        limit: int = 100,
        offset: str | int | None = None,
    ) -> tuple[list[Point], str | int | None]:
        self.op_counts["scroll"] += 1
        collection = self._get(name)
        keys = sorted(collection.points)
        if offset is not None:
            keys = [k for k in keys if k >= str(offset)]
        matching = [
            collection.points[k]
            for k in keys
            if filter_matches(collection.points[k].payload, scroll_filter)
        ]
        page = matching[:limit]
        next_offset = matching[limit].id if len(matching) > limit else None
        return (
            [Point(id=p.id, payload=copy.deepcopy(p.payload)) for p in page],
            next_offset,
        )

    async def search(
        self,
        name: str,
        vector: QueryVector,
        *,
        query_filter: dict | None = None,
        limit: int = 10,
    ) -> list[Point]:
        self.op_counts["search"] += 1
        collection = self._get(name)
        vector_name = collection.vector_name
        if isinstance(vector, dict):
            query = vector.get("vector")
            if vector.get("name") != vector_name:
                raise VectorStoreError(
                    f"Unknown vector name '{vector.get('name')}'", status_code=400
                )
        else:
            query = vector
        q = np.asarray(query, dtype=float)
        q_norm = np.linalg.norm(q) or 1.0

        scored = []
        for point in collection.points.values():
            if not filter_matches(point.payload, query_filter):
                continue
            stored = point.vector[vector_name] if vector_name else point.vector
            v = np.asarray(stored, dtype=float)
            score = float(np.dot(q, v) / (q_norm * (np.linalg.norm(v) or 1.0)))
            scored.append(Point(id=point.id, payload=copy.deepcopy(point.payload), score=score))
        scored.sort(key=lambda p: p.score, reverse=True)
        return scored[:limit]

    async def delete_points(
        self,
        name: str,
        *,
        ids: list[str | int] | None = None,
        points_filter: dict | None = None,
    ) -> None:
        self.op_counts["delete_points"] += 1
        collection = self._get(name)
        if ids is not None:
            for point_id in ids:
                collection.points.pop(str(point_id), None)
            return
        if points_filter is None:
            raise ValueError("delete_points needs ids or a filter")
        for key in [
            k for k, p in collection.points.items() if filter_matches(p.payload, points_filter)
        ]:
            del collection.points[key]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_vector_store(
    url: str = "",
    api_key: str = "",
    *,
    timeout: float = 15.0,
) -> VectorStore:
    """Create a vector store.

    Returns QdrantStore when a URL is configured, InMemoryVectorStore otherwise.
    """
    if url:
        logger.info("Using Qdrant-backed vector store")
        return QdrantStore(url, api_key, timeout=timeout)

    logger.info("Using in-memory vector store (non-persistent)")
    return InMemoryVectorStore()
