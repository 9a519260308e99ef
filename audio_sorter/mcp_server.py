"""
FastMCP server for Audio Sorter

Exposes scanning, duplicate detection and similarity search as MCP tools.

To connect to Claude Desktop (stdio), add to claude_desktop_config.json:
{
  "mcpServers": {
    "audio-sorter": {
      "command": "audio-sorter-mcp",
      "env": {"AUDIO_SORTER_INPUT_DIR": "/path/to/music"}
    }
  }
}

To run over HTTP (SSE):
  python -m audio_sorter.mcp_server --transport sse [--host 127.0.0.1] [--port 8000]
"""

import signal
import sys
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from loguru import logger

from .config import Settings, configure_logging
from .errors import NotAnalyzedError, ScanInProgressError, ScanRootError
from .library import AudioLibrary
from .models import ScanMode
from .recommend import RecommendFilters

mcp = FastMCP("Audio Sorter")

# ---------------------------------------------------------------------------
# Global state
# ---------------------------------------------------------------------------
library: Optional[AudioLibrary] = None


def _ensure_initialized() -> AudioLibrary:
    """Lazy-load the stores on first tool call."""
    global library
    if library is None:
        logger.info("Initializing Audio Sorter MCP server...")
        library = AudioLibrary(Settings.from_env())
        library.load()
    return library


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def start_scan(root: Optional[str] = None, online: bool = False) -> Dict[str, Any]:
    """
    Start an incremental scan of a music folder in the background.

    Only new and modified files are processed; deleted files are dropped from
    the index.  Poll scan_status for progress.

    Args:
        root: Folder to scan. Defaults to AUDIO_SORTER_INPUT_DIR.
        online: Resolve metadata through AcoustID/MusicBrainz (needs ACOUSTID_CLIENT_ID).
    """
    lib = _ensure_initialized()
    mode = ScanMode.ONLINE if online else ScanMode.OFFLINE
    try:
        status = lib.start_scan(root, mode)
    except (ScanInProgressError, ScanRootError) as e:
        return {"error": str(e)}
    return status.model_dump(mode="json")


@mcp.tool()
async def scan_status() -> Dict[str, Any]:
    """
    Progress of the current scan (files processed/total, CPU, memory) and the
    summary or error of the last finished scan.
    """
    return _ensure_initialized().get_scan_status().model_dump(mode="json")


@mcp.tool()
async def find_duplicates() -> List[Dict[str, Any]]:
    """
    Groups of files with identical acoustic fingerprints.

    Each group lists its paths and each file's tags; ``tags_consistent`` is
    false when the copies disagree on artist or title.
    """
    return [g.model_dump(mode="json") for g in _ensure_initialized().get_duplicates()]


@mcp.tool()
async def recommend_similar(
    path: str,
    limit: int = 10,
    same_artist: bool = False,
    same_album: bool = False,
    exclude_album: bool = False,
    exclude_fingerprint: bool = True,
    genre: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Tracks that sound most like the given file (max 20), closest first.

    Args:
        path: Absolute path of an analysed track.
        limit: Number of results (1-20).
        same_artist: Only the same artist.
        same_album: Only the same album.
        exclude_album: Skip tracks from the same album.
        exclude_fingerprint: Skip exact duplicates of the track.
        genre: Only this genre.
    """
    filters = RecommendFilters(
        same_artist=same_artist,
        same_album=same_album,
        exclude_album=exclude_album,
        exclude_fingerprint=exclude_fingerprint,
        genre=genre,
    )
    try:
        recs = _ensure_initialized().get_recommendations(path, filters=filters, limit=limit)
    except NotAnalyzedError as e:
        return {"error": str(e), "path": e.path}
    return {"path": path, "recommendations": [r.model_dump() for r in recs]}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Run the MCP server."""
    import argparse

    def handle_shutdown(sig, frame):
        logger.info("Shutting down MCP server...")
        if library is not None and library.manager.is_scanning:
            library.wait_for_scan(timeout=30)
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    parser = argparse.ArgumentParser()
    parser.add_argument("--transport", default="stdio", choices=["stdio", "sse"])
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    configure_logging(Settings.from_env().log_level)
    logger.info("Starting Audio Sorter MCP Server...")

    if args.transport == "sse":
        mcp.run(transport="sse", host=args.host, port=args.port)
    else:
        mcp.run()


if __name__ == "__main__":
    main()
