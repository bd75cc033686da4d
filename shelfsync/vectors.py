"""Point ids and vectors.

Point ids are name-based UUIDs so repeated upserts of the same logical
entity always overwrite the same point. Every vector written to the store
goes through ``resolve_vector``: malformed embeddings are replaced by a
deterministic placeholder derived from a seed string.
"""

from __future__ import annotations

import hashlib
import logging
import math
import uuid
from typing import Any

import numpy as np

from .schema import VectorLayout

logger = logging.getLogger("shelfsync.vectors")

UUID_NAMESPACE = uuid.UUID("58fc3ff2-2f13-11ef-b75e-0242ac110002")
EMBEDDING_VECTOR_SIZE = 768
PLACEHOLDER_SCALE = 0.1


def point_id(collection: str, entity_id: str | int) -> str:
    """Deterministic point id for ``entity_id`` within ``collection``."""
    return str(uuid.uuid5(UUID_NAMESPACE, f"{collection}:{entity_id}"))


def build_placeholder_vector(
    seed: str | int | None, size: int = EMBEDDING_VECTOR_SIZE
) -> list[float]:
    """Generate a deterministic pseudo-random vector from a seed string.

    The SHA-256 digest of the seed seeds a numpy generator, so the same seed
    always produces the same vector. Values are small and non-negative so a
    placeholder never dominates a similarity search.
    """
    safe_seed = str(seed) if seed not in (None, "") else "default"
    digest = hashlib.sha256(safe_seed.encode()).digest()
    rng = np.random.default_rng(int.from_bytes(digest, "big") % (2**32))
    return (rng.random(size) * PLACEHOLDER_SCALE).tolist()


def vector_problem(candidate: Any, size: int = EMBEDDING_VECTOR_SIZE) -> str | None:
    """Return why ``candidate`` is not a usable vector, or None if it is."""
    if candidate is None:
        return "no embedding"
    if isinstance(candidate, np.ndarray):
        candidate = candidate.tolist()
    if not isinstance(candidate, (list, tuple)):
        return f"expected a list, got {type(candidate).__name__}"
    if len(candidate) != size:
        return f"length {len(candidate)} != {size}"
    for index, value in enumerate(candidate):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"non-numeric value at index {index}: {value!r}"
        if not math.isfinite(value):
            return f"non-finite value at index {index}: {value!r}"
    return None


def resolve_vector(
    candidate: Any,
    seed: str | int | None,
    context: str,
    size: int = EMBEDDING_VECTOR_SIZE,
) -> list[float]:
    """Return ``candidate`` if valid, else the placeholder for ``seed``."""
    problem = vector_problem(candidate, size)
    if problem is None:
        return [float(v) for v in candidate]
    if candidate is not None:
        logger.warning("%s: %s; using placeholder vector", context, problem)
    return build_placeholder_vector(seed, size)


def compose_point_vector(
    layout: VectorLayout, vector: list[float]
) -> list[float] | dict[str, list[float]]:
    """Shape a vector for upsert according to the collection layout."""
    if layout.named:
        return {layout.vector_name or "default": vector}
    return vector


def compose_query_vector(
    layout: VectorLayout, vector: list[float]
) -> list[float] | dict[str, Any]:
    """Shape a vector for search according to the collection layout."""
    if layout.named:
        return {"name": layout.vector_name or "default", "vector": vector}
    return vector
