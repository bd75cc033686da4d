"""Bulk reads and filtered search.

``fetch_all_points`` pages through a collection with a bounded
retry-on-400 budget (linear backoff). Exhausting the budget, or any other
store error, truncates the result rather than raising; readers always get
a list.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .schema import CollectionSchemaManager
from .vector_store import Point, QueryVector, VectorStore, VectorStoreError

logger = logging.getLogger("shelfsync.queries")

SCROLL_LIMIT = 1000
SCROLL_RETRIES = 3
SCROLL_BACKOFF_SECONDS = 1.0
MAX_POINTS = 100_000


# ---------------------------------------------------------------------------
# Filter builders
# ---------------------------------------------------------------------------


def match(key: str, value: Any) -> dict[str, Any]:
    return {"key": key, "match": {"value": value}}


def match_any(key: str, values: list[Any]) -> dict[str, Any]:
    return {"key": key, "match": {"any": list(values)}}


def value_range(
    key: str,
    *,
    gt: float | None = None,
    gte: float | None = None,
    lt: float | None = None,
    lte: float | None = None,
) -> dict[str, Any]:
    bounds = {
        name: bound
        for name, bound in (("gt", gt), ("gte", gte), ("lt", lt), ("lte", lte))
        if bound is not None
    }
    return {"key": key, "range": bounds}


def is_not_null(key: str) -> dict[str, Any]:
    return {"must_not": [{"is_null": {"key": key}}]}


def must(*conditions: dict[str, Any] | None) -> dict[str, Any] | None:
    """Conjunction of the given conditions; None when there are none."""
    present = [c for c in conditions if c]
    return {"must": present} if present else None


def shop_condition(shop_id: str | None) -> dict[str, Any] | None:
    return match("shopId", shop_id) if shop_id else None


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def fetch_all_points(
    store: VectorStore,
    schema: CollectionSchemaManager,
    collection: str,
    shop_id: str | None = None,
    *,
    conditions: list[dict[str, Any]] | None = None,
    limit: int = SCROLL_LIMIT,
    retries: int = SCROLL_RETRIES,
    backoff: float = SCROLL_BACKOFF_SECONDS,
    max_points: int = MAX_POINTS,
) -> list[Point]:
    """Scroll every point of ``collection`` matching the shop and conditions.

    Returns an empty list when the collection is not ready.
    """
    if not schema.is_ready(collection):
        if not await schema.ensure_ready_or_warn(collection):
            return []

    scroll_filter = must(shop_condition(shop_id), *(conditions or []))
    points: list[Point] = []
    offset: str | int | None = None
    attempts_left = retries
    failures = 0

    while True:
        try:
            page, offset = await store.scroll(
                collection, scroll_filter=scroll_filter, limit=limit, offset=offset
            )
        except VectorStoreError as exc:
            if exc.status_code == 400 and attempts_left > 0:
                attempts_left -= 1
                failures += 1
                logger.warning(
                    "Scroll error in '%s' (filter=%s), retry %d/%d: %s",
                    collection,
                    scroll_filter,
                    failures,
                    retries,
                    exc,
                )
                await asyncio.sleep(backoff * failures)
                continue
            logger.error(
                "Scroll of '%s' stopped after %d points: %s",
                collection,
                len(points),
                exc,
            )
            break

        points.extend(page)
        if offset is None:
            break
        if len(points) >= max_points:
            logger.warning(
                "Scroll of '%s' hit the %d point safety cap; result truncated",
                collection,
                max_points,
            )
            break

    return points


async def search_with_filters(
    store: VectorStore,
    schema: CollectionSchemaManager,
    collection: str,
    vector: QueryVector,
    *,
    shop_id: str | None = None,
    status: str | None = None,
    quantity_min: int | None = None,
    extra: dict[str, Any] | None = None,
    limit: int = 10,
) -> list[Point]:
    """Top-k vector search constrained by payload filters.

    ``quantity_min`` is exclusive (``quantity > quantity_min``); ``extra``
    adds exact-match conditions. Search failures return an empty list.
    """
    if not schema.is_ready(collection):
        if not await schema.ensure_ready_or_warn(collection):
            return []

    conditions = [
        shop_condition(shop_id),
        match("status", status) if status else None,
        value_range("quantity", gt=quantity_min) if quantity_min is not None else None,
    ]
    for key, value in (extra or {}).items():
        if value is not None:
            conditions.append(match(key, value))

    try:
        return await store.search(
            collection, vector, query_filter=must(*conditions), limit=limit
        )
    except VectorStoreError as exc:
        logger.error("Search failed in '%s': %s", collection, exc)
        return []
