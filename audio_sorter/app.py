"""
FastAPI web application for Audio Sorter

Endpoints:
  GET  /api/tracks                 - All indexed tracks
  POST /api/scan/start             - Start a background scan
  GET  /api/scan/status            - Scan progress, CPU/memory, last summary
  GET  /api/duplicates             - Duplicate groups (shared fingerprint)
  GET  /api/recommend?path=...     - Similar tracks by feature distance
  GET  /playlist.m3u               - M3U playlist of the library
  GET  /music/{path}               - Audio file under the library root
"""

import uvicorn
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from loguru import logger

from .config import Settings, configure_logging
from .errors import NotAnalyzedError, ScanInProgressError, ScanRootError
from .library import AudioLibrary
from .models import ScanMode
from .recommend import RecommendFilters

# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

library: Optional[AudioLibrary] = None


def get_library() -> AudioLibrary:
    if library is None:
        raise HTTPException(status_code=503, detail="Library not initialised")
    return library


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    global library

    if library is None:
        library = AudioLibrary(Settings.from_env())
        library.load()
    settings = library.settings
    if not settings.online_available:
        logger.warning("No ACOUSTID_CLIENT_ID set. Scans run in offline mode.")
    logger.info(f"Audio Sorter ready. {len(library.get_tracks())} tracks indexed.")

    yield

    if library.manager.is_scanning:
        logger.info("Waiting for the running scan to finish...")
        library.wait_for_scan(timeout=30)


app = FastAPI(title="Audio Sorter", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------

@app.get("/api/tracks")
async def list_tracks():
    """All indexed tracks, sorted by path."""
    return JSONResponse([t.model_dump(mode="json") for t in get_library().get_tracks()])


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

class ScanRequest(BaseModel):
    mode: ScanMode = ScanMode.OFFLINE
    root: Optional[str] = None


@app.post("/api/scan/start")
async def start_scan(body: ScanRequest):
    """Start a scan. 409 while another scan is running."""
    try:
        status = get_library().start_scan(body.root, body.mode)
    except ScanInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ScanRootError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse(status.model_dump(mode="json"))


@app.get("/api/scan/status")
async def scan_status():
    return JSONResponse(get_library().get_scan_status().model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@app.get("/api/duplicates")
async def duplicates():
    """Groups of files sharing one fingerprint."""
    return JSONResponse([g.model_dump(mode="json") for g in get_library().get_duplicates()])


@app.get("/api/recommend")
async def recommend(
    path: str,
    same_artist: bool = False,
    same_album: bool = False,
    exclude_album: bool = False,
    exclude_fingerprint: bool = False,
    genre: Optional[str] = None,
    limit: int = 20,
):
    """Up to 20 tracks closest to *path*. 404 if the track has no analysis."""
    filters = RecommendFilters(
        same_artist=same_artist,
        same_album=same_album,
        exclude_album=exclude_album,
        exclude_fingerprint=exclude_fingerprint,
        genre=genre or None,
    )
    try:
        recs = get_library().get_recommendations(path, filters=filters, limit=limit)
    except NotAnalyzedError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return JSONResponse([r.model_dump() for r in recs])


# ---------------------------------------------------------------------------
# Playback
# ---------------------------------------------------------------------------

@app.get("/playlist.m3u")
async def playlist(request: Request):
    base_url = str(request.base_url).rstrip("/") + "/music"
    return PlainTextResponse(get_library().playlist(base_url), media_type="audio/x-mpegurl")


@app.get("/music/{rel_path:path}")
async def music_file(rel_path: str):
    """Serve an indexed file below the last scanned root."""
    lib = get_library()
    root = lib.playlist_root
    if root is None:
        raise HTTPException(status_code=404, detail="No library root")
    target = (root / rel_path).resolve()
    if not target.is_relative_to(root) or str(target) not in {t.path for t in lib.get_tracks()}:
        raise HTTPException(status_code=404, detail="Track not found")
    return FileResponse(target)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info(f"Starting Audio Sorter on port {settings.port}")
    uvicorn.run(
        "audio_sorter.app:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
