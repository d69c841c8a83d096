import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import ValidationError

from .schemas import SettingsUpdate
from ..core.context import IndexingContext
from ..database.models import MediaItem, MEDIA_MOVIE, MEDIA_TVSHOW
from ..errors import (
    AlreadyExistsError, CloudAuthError, CloudError, InvariantError, NotFoundError, PlayerLaunchError, ResolverError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Seconds between keep-alive comments on the event stream
SSE_KEEPALIVE = 15.0

# Settings that always hold a value
REQUIRED_SETTINGS = {
    "media_folders", "file_watcher_enabled", "cloud_cache_enabled",
    "cloud_cache_max_mb", "cloud_cache_expiry_hours", "cloud_scan_interval_minutes",
}

router = APIRouter()


def get_context(request: Request) -> IndexingContext:
    context = request.app.state.context
    if context is None:
        raise HTTPException(status_code=503, detail="Library is starting up")
    return context


def media_to_dict(item: MediaItem) -> dict:
    data = asdict(item)
    data["progress_percent"] = item.progress_percent
    return data


def _number(body: dict, key: str) -> float:
    value = body.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise HTTPException(status_code=400, detail=f"'{key}' must be a number")
    return float(value)


@router.get("/health")
async def health(context: IndexingContext = Depends(get_context)):
    return {
        "status": "ok",
        "sync_running": context.sync.running,
        "metadata_enabled": context.resolver.enabled,
        "cloud_authenticated": context.cloud.is_authenticated,
    }


# --- Library ---

@router.get("/api/library/{media_type}")
async def get_library(media_type: str, search: Optional[str] = None, cloud: Optional[bool] = None,
                      context: IndexingContext = Depends(get_context)):
    if media_type not in (MEDIA_MOVIE, MEDIA_TVSHOW):
        raise HTTPException(status_code=400, detail=f"Unknown media type: {media_type}")
    items = await context.db.get_library(media_type, search, cloud)
    return [media_to_dict(item) for item in items]


@router.get("/api/series/{series_id}/episodes")
async def get_episodes(series_id: int, context: IndexingContext = Depends(get_context)):
    series = await context.db.get_media(series_id)
    if series.media_type != MEDIA_TVSHOW:
        raise HTTPException(status_code=400, detail=f"Media {series_id} is not a series")
    return [media_to_dict(ep) for ep in await context.db.get_episodes(series_id)]


@router.get("/api/media/{media_id}")
async def get_media(media_id: int, context: IndexingContext = Depends(get_context)):
    return media_to_dict(await context.db.get_media(media_id))


@router.get("/api/media/{media_id}/resume")
async def get_resume_info(media_id: int, context: IndexingContext = Depends(get_context)):
    return asdict(await context.db.get_resume_info(media_id))


@router.post("/api/media/{media_id}/progress")
async def update_progress(media_id: int, progress_data: dict, context: IndexingContext = Depends(get_context)):
    position = _number(progress_data, "position")
    duration = _number(progress_data, "duration")
    await context.db.update_progress(media_id, position, duration)
    return {"status": "success"}


@router.delete("/api/media/{media_id}/progress")
async def clear_progress(media_id: int, context: IndexingContext = Depends(get_context)):
    await context.db.clear_progress(media_id)
    return {"status": "success"}


@router.post("/api/media/{media_id}/fix-match")
async def fix_match(media_id: int, body: dict, context: IndexingContext = Depends(get_context)):
    id_or_url = str(body.get("id") or "").strip()
    if not id_or_url:
        raise HTTPException(status_code=400, detail="Missing 'id'")
    item = await context.library.fix_match(media_id, id_or_url)
    return {"message": f"Metadata updated for: {item.title}", "media": media_to_dict(item)}


@router.post("/api/media/delete")
async def delete_media(body: dict, context: IndexingContext = Depends(get_context)):
    ids = body.get("ids")
    if not isinstance(ids, list) or not all(isinstance(i, int) for i in ids):
        raise HTTPException(status_code=400, detail="'ids' must be a list of integers")
    paths = await context.library.delete_media(ids, bool(body.get("delete_files", False)))
    return {"deleted": len(ids), "paths": paths}


# --- Playback ---

@router.post("/api/media/{media_id}/play")
async def play(media_id: int, resume: bool = True, context: IndexingContext = Depends(get_context)):
    session = await context.tracker.play(media_id, resume)
    return {"message": f"Playback started: {session.title}", "pid": session.pid}


@router.get("/api/sessions")
async def get_sessions(context: IndexingContext = Depends(get_context)):
    return [
        {"media_id": s.media_id, "pid": s.pid, "title": s.title, "start_time": s.start_time}
        for s in context.sessions.list()
    ]


# --- Watch history ---

@router.get("/api/history")
async def get_history(limit: int = 20, context: IndexingContext = Depends(get_context)):
    return [media_to_dict(item) for item in await context.db.get_watch_history(limit)]


@router.delete("/api/history/{media_id}")
async def remove_from_history(media_id: int, context: IndexingContext = Depends(get_context)):
    await context.db.remove_from_watch_history(media_id)
    return {"status": "success"}


@router.delete("/api/history")
async def clear_history(context: IndexingContext = Depends(get_context)):
    return {"cleared": await context.db.clear_all_watch_history()}


# --- Streaming history ---

@router.get("/api/streaming/history")
async def get_streaming_history(limit: int = 20, context: IndexingContext = Depends(get_context)):
    entries = await context.db.get_streaming_history(limit)
    return [dict(asdict(e), progress_percent=e.progress_percent) for e in entries]


@router.get("/api/streaming/resume")
async def get_streaming_resume(tmdb_id: str, media_type: str, season: Optional[int] = None,
                               episode: Optional[int] = None, context: IndexingContext = Depends(get_context)):
    entry = await context.db.get_streaming_resume_info(tmdb_id, media_type, season, episode)
    return asdict(entry) if entry else None


@router.post("/api/streaming/progress")
async def save_streaming_progress(body: dict, context: IndexingContext = Depends(get_context)):
    tmdb_id = body.get("tmdb_id")
    media_type = body.get("media_type")
    title = body.get("title")
    if not tmdb_id or not media_type or not title:
        raise HTTPException(status_code=400, detail="'tmdb_id', 'media_type' and 'title' are required")
    await context.db.save_streaming_progress(
        str(tmdb_id), media_type, title, body.get("poster_path"), body.get("season"), body.get("episode"),
        _number(body, "position"), _number(body, "duration"),
    )
    return {"status": "success"}


@router.delete("/api/streaming/history/{entry_id}")
async def remove_streaming_entry(entry_id: int, context: IndexingContext = Depends(get_context)):
    await context.db.remove_from_streaming_history(entry_id)
    return {"status": "success"}


@router.delete("/api/streaming/history")
async def clear_streaming_history(context: IndexingContext = Depends(get_context)):
    return {"cleared": await context.db.clear_all_streaming_history()}


# --- Scans and maintenance ---

@router.post("/api/scan")
async def scan(context: IndexingContext = Depends(get_context)):
    report = await context.sync.run_tick()
    return asdict(report)


@router.post("/api/maintenance/merge")
async def merge_duplicates(context: IndexingContext = Depends(get_context)):
    return {"merged": await context.library.merge_duplicates()}


@router.post("/api/maintenance/cleanup")
async def cleanup(context: IndexingContext = Depends(get_context)):
    series_removed = await context.library.cleanup_series()
    images_removed = await context.library.reclaim_orphans()
    return {"series_removed": series_removed, "images_removed": images_removed}


@router.post("/api/reset")
async def reset(context: IndexingContext = Depends(get_context)):
    await context.library.reset()
    return {"status": "success"}


# --- Settings ---

@router.get("/api/settings")
async def get_settings(context: IndexingContext = Depends(get_context)):
    return asdict(context.config)


@router.put("/api/settings")
async def update_settings(body: dict, context: IndexingContext = Depends(get_context)):
    try:
        update = SettingsUpdate.model_validate(body)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise HTTPException(status_code=400, detail=f"Invalid settings: {problems}")

    changes = update.model_dump(exclude_unset=True)
    cleared = sorted(key for key, value in changes.items() if value is None and key in REQUIRED_SETTINGS)
    if cleared:
        raise HTTPException(status_code=400, detail=f"Settings cannot be null: {', '.join(cleared)}")
    return asdict(context.update_config(**changes))


# --- Cloud ---

@router.get("/api/cloud/folders")
async def get_cloud_folders(context: IndexingContext = Depends(get_context)):
    return [asdict(folder) for folder in await context.db.get_cloud_folders()]


@router.post("/api/cloud/folders")
async def add_cloud_folder(body: dict, context: IndexingContext = Depends(get_context)):
    folder_id = body.get("folder_id")
    if not folder_id:
        raise HTTPException(status_code=400, detail="Missing 'folder_id'")
    await context.db.add_cloud_folder(folder_id, body.get("folder_name") or folder_id)
    results = await context.library.scan_cloud_folder(context.cloud, folder_id)
    return {"added": sum(1 for r in results if r.changed)}


@router.delete("/api/cloud/folders/{folder_id}")
async def remove_cloud_folder(folder_id: str, context: IndexingContext = Depends(get_context)):
    removed = await context.db.remove_cloud_folder(folder_id)
    await context.library.cleanup_series()
    return {"removed": removed}


@router.post("/api/cloud/sync")
async def cloud_sync(context: IndexingContext = Depends(get_context)):
    return {"added": await context.poll_cloud()}


@router.post("/api/cloud/cache/cleanup")
async def cloud_cache_cleanup(context: IndexingContext = Depends(get_context)):
    deleted, freed = await context.prune_stream_cache()
    return {"deleted": deleted, "freed_bytes": freed}


# --- Events and images ---

@router.get("/api/events")
async def events(request: Request, context: IndexingContext = Depends(get_context)):
    queue = context.events.subscribe()

    async def event_stream():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    name, payload = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {name}\ndata: {json.dumps(payload)}\n\n"
        finally:
            context.events.unsubscribe(queue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.get("/api/images/{image_path:path}")
async def get_image(image_path: str, context: IndexingContext = Depends(get_context)):
    cache_dir = context.images.cache_dir.resolve()
    path = context.images.local_path(image_path).resolve()
    if cache_dir not in path.parents or not path.is_file():
        raise HTTPException(status_code=404, detail="Image not found")
    return FileResponse(path)


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        logger.debug(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


def create_app(context: Optional[IndexingContext] = None, start_background: bool = True) -> FastAPI:
    """
    Build the API. Without a context one is created on startup and stopped on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.context is None
        if owned:
            app.state.context = await IndexingContext.create()
        if start_background:
            app.state.context.start()
        logger.info("Slasshy API ready")
        try:
            yield
        finally:
            if owned:
                await app.state.context.stop()
            elif start_background:
                await app.state.context.sync.stop()

    app = FastAPI(title="Slasshy Library API", lifespan=lifespan)
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(NotFoundError, _error_handler(404))
    app.add_exception_handler(AlreadyExistsError, _error_handler(409))
    app.add_exception_handler(InvariantError, _error_handler(400))
    app.add_exception_handler(PlayerLaunchError, _error_handler(400))
    app.add_exception_handler(ResolverError, _error_handler(404))
    app.add_exception_handler(CloudAuthError, _error_handler(401))
    app.add_exception_handler(CloudError, _error_handler(502))

    app.include_router(router)
    return app
