"""Build a ready-to-use engine from settings."""

from __future__ import annotations

from datetime import timedelta
import logging

from config.settings import EngineSettings
from privacy.engine import PrivacyComplianceEngine
from privacy.regions import RegionPolicyResolver

from .authority import (
    ComplianceAuthority,
    HttpComplianceAuthority,
    InMemoryComplianceAuthority,
    SupabaseComplianceAuthority,
)
from .cache_store import CacheStore, InMemoryCacheStore, JsonFileCacheStore

logger = logging.getLogger(__name__)


def build_resolver(settings: EngineSettings) -> RegionPolicyResolver:
    if settings.region_config_path:
        return RegionPolicyResolver.from_file(settings.region_config_path)
    return RegionPolicyResolver.default()


def build_authority(settings: EngineSettings) -> ComplianceAuthority:
    if settings.authority_backend == "http":
        return HttpComplianceAuthority(
            settings.authority_url,
            token=settings.authority_token,
            timeout=settings.authority_timeout,
        )
    if settings.authority_backend == "supabase":
        return SupabaseComplianceAuthority.from_credentials(settings.supabase_url, settings.supabase_key)
    logger.warning("Using the in-memory compliance authority; nothing is persisted remotely")
    return InMemoryComplianceAuthority()


def build_cache_store(settings: EngineSettings) -> CacheStore:
    if settings.cache_backend == "file":
        return JsonFileCacheStore(settings.cache_dir)
    return InMemoryCacheStore()


def build_engine(settings: EngineSettings) -> PrivacyComplianceEngine:
    """Resolver problems surface here, at startup, as ConfigurationError."""
    return PrivacyComplianceEngine(
        build_resolver(settings),
        build_authority(settings),
        build_cache_store(settings),
        staleness_window=timedelta(seconds=settings.staleness_seconds),
        compliance_threshold=settings.compliance_threshold,
    )
