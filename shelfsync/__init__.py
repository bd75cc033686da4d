"""ShelfSync: retail inventory on a vector store.

Keeps per-collection schemas converged, derives deterministic point ids,
maintains a per-shop read-model cache and allocates stock FEFO.
"""

from .allocator import DeductionResult, InsufficientStockError, StockAllocator
from .cache import CacheState, ReadModelCache, ShopNotSelectedError
from .config import ShelfSyncSettings, get_settings
from .models import ShopContext, StockItem, StockStatus
from .runtime import ShelfSync
from .vector_store import InMemoryVectorStore, QdrantStore, VectorStoreError

__version__ = "0.1.0"

__all__ = [
    "CacheState",
    "DeductionResult",
    "InMemoryVectorStore",
    "InsufficientStockError",
    "QdrantStore",
    "ReadModelCache",
    "ShelfSync",
    "ShelfSyncSettings",
    "ShopContext",
    "ShopNotSelectedError",
    "StockAllocator",
    "StockItem",
    "StockStatus",
    "VectorStoreError",
    "get_settings",
]
