"""Provider adapters: the CRUD boundary to real infrastructure."""

from .base import ProviderAdapter, ProviderRegistry
from .memory import CallRecord, InMemoryProvider

__all__ = [
    "ProviderAdapter",
    "ProviderRegistry",
    "InMemoryProvider",
    "CallRecord",
]
