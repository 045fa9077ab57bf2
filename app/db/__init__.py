"""
Storage Layer for EditDesk

Provides:
- Durable cache abstraction (in-memory for dev, JSON file for persistence)
- The live order store (order writer + order stream source)
- Environment configuration
"""

from .cache import (
    CacheError,
    DurableCache,
    InMemoryCache,
    JsonFileCache,
    NamespacedCache,
)
from .config import CacheDriver, ConfigError, DeskConfig
from .orders import (
    OrderNotFoundError,
    OrderStore,
    OrderStoreError,
    PermissionDeniedError,
    TransitionError,
)

__all__ = [
    "CacheError",
    "DurableCache",
    "InMemoryCache",
    "JsonFileCache",
    "NamespacedCache",
    "CacheDriver",
    "ConfigError",
    "DeskConfig",
    "OrderNotFoundError",
    "OrderStore",
    "OrderStoreError",
    "PermissionDeniedError",
    "TransitionError",
]
