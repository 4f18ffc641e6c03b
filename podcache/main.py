"""
PodCache - FastAPI application exposing the episode cache
"""
import logging
from contextlib import asynccontextmanager
from typing import List

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from config.settings import settings
from podcache.cache import CacheManager, CacheResult, LegacyMigrator
from podcache.deps import (
    get_manager,
    get_migrator,
    get_registry,
    register_services,
    shutdown_services,
)
from podcache.exceptions import (
    FeedDecodeError,
    FetchError,
    MigrationError,
    PodcacheError,
    StorageError,
    UnknownShowError,
)
from podcache.feeds import ShowRegistry
from podcache.schemas import (
    CacheStatsOut,
    EpisodeList,
    EpisodeOut,
    EpisodeUpdate,
    MigrationResult,
    ShowCreate,
    ShowOut,
)

load_dotenv()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("api")

APP_NAME = "PodCache"
APP_VERSION = "v0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the cache services, migrate legacy data, tear down on exit."""
    register_services(settings)
    try:
        get_migrator().migrate_if_needed()
    except (MigrationError, StorageError) as e:
        # Legacy data stays in place for the next start
        logger.error(f"Legacy cache migration failed: {e}")
    yield
    shutdown_services()


app = FastAPI(
    title=APP_NAME,
    description="Offline-first episode cache with retrying feed refresh",
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(PodcacheError)
async def podcache_exception_handler(request: Request, exc: PodcacheError):
    status_code = 500
    if isinstance(exc, UnknownShowError):
        status_code = 404
    elif isinstance(exc, (FetchError, FeedDecodeError)):
        status_code = 502
    elif isinstance(exc, MigrationError):
        status_code = 409
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.__class__.__name__, "message": str(exc)},
    )


def result_to_response(show_id: str, result: CacheResult) -> EpisodeList:
    """Convert a CacheResult into the episode list response."""
    return EpisodeList(
        show_id=show_id,
        count=len(result.items),
        source=result.source.value,
        fetched_at=result.fetched_at,
        episodes=[EpisodeOut(**item.to_dict()) for item in result.items],
        changeset=result.changeset.to_dict() if result.changeset else None,
        error=str(result.error) if result.error else None,
        warnings=result.warnings,
    )


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "name": APP_NAME, "version": APP_VERSION}


# ===== SHOWS =====

@app.get("/shows", response_model=List[ShowOut])
def list_shows(registry: ShowRegistry = Depends(get_registry)):
    return [ShowOut(**show.to_dict()) for show in registry.all()]


@app.post("/shows", response_model=ShowOut, status_code=201)
def add_show(show: ShowCreate, registry: ShowRegistry = Depends(get_registry)):
    """Subscribe to a show feed."""
    created = registry.register(show.id, show.feed_url, title=show.title)
    logger.info(f"Registered show {created.id} -> {created.feed_url}")
    return ShowOut(**created.to_dict())


@app.delete("/shows/{show_id}")
def remove_show(
    show_id: str,
    registry: ShowRegistry = Depends(get_registry),
    manager: CacheManager = Depends(get_manager),
):
    """Unsubscribe: forget the feed and evict its cached episodes."""
    if not registry.unregister(show_id):
        raise UnknownShowError(f"No feed registered for show {show_id}")
    manager.invalidate(show_id)
    return {"show_id": show_id, "removed": True}


@app.get("/shows/{show_id}/episodes", response_model=EpisodeList)
def get_episodes(
    show_id: str,
    force_refresh: bool = Query(False, alias="forceRefresh"),
    registry: ShowRegistry = Depends(get_registry),
    manager: CacheManager = Depends(get_manager),
):
    """
    Episodes of a show, from cache when fresh, otherwise refreshed.

    A failed refresh still returns 200 with the stale episodes and an `error`
    when anything is cached; with nothing cached the error becomes the response.
    """
    registry.feed_url(show_id)
    result = manager.get(show_id, force_refresh=force_refresh)
    if not result.ok and not result.items:
        if isinstance(result.error, PodcacheError):
            raise result.error
        raise HTTPException(status_code=504, detail=str(result.error))
    return result_to_response(show_id, result)


@app.patch("/shows/{show_id}/episodes/{episode_id}", response_model=EpisodeOut)
def update_episode(
    show_id: str,
    episode_id: str,
    update: EpisodeUpdate,
    manager: CacheManager = Depends(get_manager),
):
    """Record played state, playback position or a downloaded file."""
    episode = manager.update_episode(
        show_id,
        episode_id,
        played=update.played,
        playback_position=update.playback_position,
        local_file_url=update.local_file_url,
    )
    if episode is None:
        raise HTTPException(status_code=404, detail="Episode not cached")
    return EpisodeOut(**episode.to_dict())


@app.delete("/shows/{show_id}/cache")
def invalidate_show(show_id: str, manager: CacheManager = Depends(get_manager)):
    return {"show_id": show_id, "invalidated": manager.invalidate(show_id)}


# ===== CACHE =====

@app.get("/cache/stats", response_model=CacheStatsOut)
def cache_stats(manager: CacheManager = Depends(get_manager)):
    """Get cache statistics."""
    return manager.stats().to_dict()


@app.delete("/cache")
def clear_cache(manager: CacheManager = Depends(get_manager)):
    return {"cleared": manager.clear_all()}


@app.post("/cache/prune")
def prune_cache(manager: CacheManager = Depends(get_manager)):
    return {"removed": manager.prune_expired()}


@app.post("/cache/migrate", response_model=MigrationResult)
def migrate_cache(migrator: LegacyMigrator = Depends(get_migrator)):
    """Run the legacy cache migration (no-op when nothing is left to migrate)."""
    return MigrationResult(migrated=migrator.migrate_if_needed())
