"""Services package: remote authority clients, local cache stores and engine wiring."""

from .authority import (
    ComplianceAuthority,
    HttpComplianceAuthority,
    InMemoryComplianceAuthority,
    SupabaseComplianceAuthority,
)
from .cache_store import CacheStore, InMemoryCacheStore, JsonFileCacheStore

__all__ = [
    "CacheStore",
    "ComplianceAuthority",
    "HttpComplianceAuthority",
    "InMemoryCacheStore",
    "InMemoryComplianceAuthority",
    "JsonFileCacheStore",
    "SupabaseComplianceAuthority",
]
