"""
Process-wide service instances for the HTTP layer.

Built once at startup by register_services() and handed to endpoints through
FastAPI dependencies, so tests can swap them with app.dependency_overrides.
"""
import logging
from typing import Optional

from config.settings import Settings, settings as default_settings
from podcache.cache import CacheManager, LegacyMigrator
from podcache.exceptions import PodcacheError
from podcache.feeds import ShowRegistry
from podcache.network import RetryCoordinator, FeedFetcher, build_retry_policy
from podcache.stores import DurableStore, create_legacy_store, create_store

logger = logging.getLogger("deps")

app_registry: Optional[ShowRegistry] = None
app_manager: Optional[CacheManager] = None
app_migrator: Optional[LegacyMigrator] = None


def build_cache_manager(
    registry: ShowRegistry,
    cfg: Optional[Settings] = None,
    store: Optional[DurableStore] = None,
) -> CacheManager:
    """Cache manager wired to the configured store, fetcher and retry policy."""
    cfg = cfg or default_settings
    return CacheManager(
        store=store if store is not None else create_store(cfg),
        url_resolver=registry.feed_url,
        coordinator=RetryCoordinator(FeedFetcher()),
        policy=build_retry_policy(cfg),
        min_ttl_seconds=cfg.cache_min_ttl_seconds,
        max_age_seconds=cfg.cache_max_age_seconds,
        strict_persistence=cfg.cache_strict_persistence,
        refresh_workers=cfg.refresh_workers,
        coalesce_timeout=cfg.coalesce_timeout_seconds,
    )


def register_services(cfg: Optional[Settings] = None) -> CacheManager:
    global app_registry, app_manager, app_migrator
    if app_manager is not None:
        return app_manager
    cfg = cfg or default_settings
    store = create_store(cfg)
    # Subscriptions share the cache's store so cached shows survive restarts
    app_registry = ShowRegistry(store=store)
    app_manager = build_cache_manager(app_registry, cfg, store=store)
    app_migrator = LegacyMigrator(
        legacy_store=create_legacy_store(cfg),
        target=app_manager,
        legacy_key=cfg.legacy_cache_key,
    )
    logger.info(f"Episode cache ready (backend={cfg.storage_backend})")
    return app_manager


def shutdown_services() -> None:
    global app_registry, app_manager, app_migrator
    if app_manager is not None:
        app_manager.shutdown()
    app_registry = app_manager = app_migrator = None


def get_registry() -> ShowRegistry:
    if app_registry is None:
        raise PodcacheError("Services are not registered. Call register_services first.")
    return app_registry


def get_manager() -> CacheManager:
    if app_manager is None:
        raise PodcacheError("Services are not registered. Call register_services first.")
    return app_manager


def get_migrator() -> LegacyMigrator:
    if app_migrator is None:
        raise PodcacheError("Services are not registered. Call register_services first.")
    return app_migrator
