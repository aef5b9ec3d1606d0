"""FastAPI front-end for the KROMA relay.

Endpoints:
- GET /get-info          : title, duration and thumbnail for a video id
- GET /download-audio    : fetch and return the audio track as mp3
- GET /download-video    : fetch and return the video as mp4
- GET /download-progress : Server-Sent Events feed of a download's progress
- GET /download-file     : serve a finished artifact from the download root

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

import yt_dlp
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from admission import AdmissionController
from artifacts import ArtifactStore, sanitize_filename
from errors import ArtifactNotFoundError, JobError, ProcessFailureError, UpstreamUnavailableError, error_for
from jobs import CompletedEvent, ErrorEvent, JobManager, Variant, validate_media_ref
from metadata import Extractor, MetadataResolver
from relay import CANCELLED_MESSAGE, ProgressRelay
from runner import SubprocessRunner, build_fetch_command
from settings import Settings, load_settings

logger = logging.getLogger("kroma")

router = APIRouter()


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    file_error: Optional[OSError] = None
    if settings.log_file:
        try:
            handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))
        except OSError as exc:
            file_error = exc
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )
    if file_error is not None:
        logger.warning("Could not open log file %s, logging to stdout only: %s", settings.log_file, file_error)


def _manager(request: Request) -> JobManager:
    return request.app.state.manager


def _store(request: Request) -> ArtifactStore:
    return request.app.state.store


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _file_url(store: ArtifactStore, path: Path) -> str:
    return f"/download-file?path={quote(store.relative(path))}"


async def _schedule_cleanup(store: ArtifactStore, path: Path, delay: float) -> None:
    store.schedule_delete(path, delay)


async def _wait_for_disconnect(request: Request) -> None:
    """Return once the client has closed the connection."""
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def _title_for(request: Request, media_ref: str) -> Optional[str]:
    """Best-effort title lookup; unavailable media fails fast, anything else falls back to the id."""
    try:
        info = await request.app.state.resolver.resolve(media_ref)
    except UpstreamUnavailableError:
        raise
    except JobError as exc:
        logger.warning("Title lookup failed id=%s, using id as filename: %s", media_ref, exc.message)
        return None
    return info.title


@router.get("/")
async def root() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/api/health")
async def healthcheck(request: Request) -> Dict[str, Any]:
    """Return service readiness and tool versions."""
    ffmpeg_version = None
    try:
        proc = subprocess.run(["ffmpeg", "-version"], capture_output=True, text=True, timeout=2)
        if proc.returncode == 0:
            ffmpeg_version = proc.stdout.splitlines()[0]
    except FileNotFoundError:
        ffmpeg_version = None
    except (OSError, subprocess.SubprocessError):
        ffmpeg_version = "ffmpeg check failed"

    admission: AdmissionController = request.app.state.admission
    yt_dlp_version = getattr(yt_dlp, "__version__", None) or getattr(getattr(yt_dlp, "version", None), "__version__", None)
    return {
        "status": "ok",
        "yt_dlp": yt_dlp_version,
        "ffmpeg": ffmpeg_version or "missing",
        "max_concurrent_downloads": admission.max_concurrent,
        "active_downloads": admission.active_count,
    }


@router.get("/get-info")
async def get_info(request: Request, id: Optional[str] = Query(None, description="Video ID")) -> Dict[str, Any]:
    """Return title, duration and thumbnail for a video id."""
    media_ref = validate_media_ref(id)
    info = await request.app.state.resolver.resolve(media_ref)
    return info.as_dict()


async def _download(request: Request, media_ref: Optional[str], kind: str, quality: Optional[str]) -> Response:
    media_ref = validate_media_ref(media_ref)
    variant = Variant.parse(kind, quality)
    manager = _manager(request)
    store = _store(request)
    settings = _settings(request)

    title = await _title_for(request, media_ref)
    job = manager.submit(media_ref, variant, title=title)
    relay = ProgressRelay(manager, job, keepalive_interval=settings.keepalive_interval)
    event = await relay.outcome_unless(lambda: _wait_for_disconnect(request))
    if event is None:
        # nobody left to answer
        return Response(status_code=499)
    if isinstance(event, ErrorEvent):
        raise error_for(event.kind, event.message)
    if not isinstance(event, CompletedEvent):
        raise ProcessFailureError(CANCELLED_MESSAGE)

    filename = f"{sanitize_filename(title, fallback=media_ref)}.{variant.ext}"
    return store.serve(
        event.path,
        filename=filename,
        background=BackgroundTask(_schedule_cleanup, store, event.path, settings.artifact_retention),
    )


@router.get("/download-audio")
async def download_audio(
    request: Request,
    id: Optional[str] = Query(None, description="Video ID"),
    quality: str = Query("best", description="Audio bitrate tier: best, 320, 256, 192, 128"),
) -> Response:
    return await _download(request, id, "audio", quality)


@router.get("/download-video")
async def download_video(
    request: Request,
    id: Optional[str] = Query(None, description="Video ID"),
    quality: str = Query("best", description="Max height tier: best, 2160, 1440, 1080, 720, 480, 360"),
) -> Response:
    return await _download(request, id, "video", quality)


@router.get("/download-progress")
async def download_progress(
    request: Request,
    id: Optional[str] = Query(None, description="Video ID"),
    title: Optional[str] = Query(None, description="Title used to name the file"),
    format: str = Query("audio", description="audio or video"),
    quality: str = Query("best", description="Quality tier for the chosen format"),
) -> StreamingResponse:
    """
    Start (or join) a download and stream its progress as Server-Sent Events.

    - each progress line yt-dlp prints becomes a {"progress": n} event
    - the stream ends with {"url": ...} pointing at /download-file, or {"error": ...}
    - closing the connection cancels the download if nobody else is waiting on it
    """
    media_ref = validate_media_ref(id)
    variant = Variant.parse(format, quality)
    manager = _manager(request)
    store = _store(request)
    job = manager.submit(media_ref, variant, title=title)
    relay = ProgressRelay(
        manager,
        job,
        keepalive_interval=_settings(request).keepalive_interval,
        is_disconnected=request.is_disconnected,
        url_for=lambda path: _file_url(store, path),
    )
    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(relay.sse(), media_type="text/event-stream", headers=headers)


@router.get("/download-file")
async def download_file(request: Request, path: str = Query("", description="Path returned by /download-progress")) -> Response:
    store = _store(request)
    target = store.resolve(path)
    if not _manager(request).servable(target):
        logger.warning("Refused to serve unfinished or foreign file path=%r", path)
        raise ArtifactNotFoundError("File not found")
    return store.serve(
        target,
        background=BackgroundTask(_schedule_cleanup, store, target, _settings(request).artifact_retention),
    )


async def handle_job_error(request: Request, exc: JobError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error."})


def create_app(
    settings: Optional[Settings] = None,
    runner: Optional[SubprocessRunner] = None,
    command_builder=build_fetch_command,
    extractor: Optional[Extractor] = None,
) -> FastAPI:
    settings = settings or load_settings()
    admission = AdmissionController(settings.max_concurrent)
    store = ArtifactStore(settings.download_dir)
    manager = JobManager(
        settings,
        admission,
        store,
        runner=runner,
        command_builder=command_builder,
    )
    resolver = MetadataResolver(settings, extractor=extractor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Startup: download_dir=%s max_concurrent=%d timeout=%ss",
            store.root,
            settings.max_concurrent,
            settings.job_timeout,
        )
        yield
        await manager.shutdown()
        store.cancel_pending()

    app = FastAPI(title="KROMA: ក្រមា Relay", version="2.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.admission = admission
    app.state.store = store
    app.state.manager = manager
    app.state.resolver = resolver

    # Allow the frontend to connect from any origin during development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(JobError, handle_job_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.include_router(router)
    return app


_settings_from_env = load_settings()
configure_logging(_settings_from_env)
app = create_app(_settings_from_env)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
