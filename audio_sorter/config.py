"""
Runtime configuration, read from environment variables.

    AUDIO_SORTER_INDEX_DIR      directory holding index.jsonl + analysis.json (default: <repo>/.data)
    AUDIO_SORTER_INPUT_DIR      music library root used by the web/MCP scan endpoints
    ACOUSTID_CLIENT_ID          enables online metadata lookups
    AUDIO_SORTER_WORKERS        worker thread count (default: cores - 1, capped at 4)
    FPCALC_PATH                 explicit path to the Chromaprint fpcalc binary
    AUDIO_SORTER_STAGE_TIMEOUT  seconds allowed per fingerprint call (default 60)
    AUDIO_SORTER_HTTP_TIMEOUT   seconds allowed per HTTP request (default 10)
    AUDIO_SORTER_PORT           web dashboard port (default 3000)
    LOG_LEVEL                   loguru level for the entry points
"""

import os
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field

_REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_INDEX_DIR = _REPO_ROOT / ".data"


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not an integer, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not a number, using {default}")
        return default


class Settings(BaseModel):
    index_dir: Path = Field(DEFAULT_INDEX_DIR, description="Where index.jsonl and analysis.json live")
    input_dir: Optional[Path] = Field(None, description="Library root scanned by the web/MCP endpoints")
    acoustid_client_id: Optional[str] = Field(None, description="AcoustID API key; None forces offline mode")
    workers: Optional[int] = Field(None, ge=1, description="Worker threads; None = auto")
    fpcalc_path: Optional[str] = None
    stage_timeout: float = Field(60.0, gt=0)
    http_timeout: float = Field(10.0, gt=0)
    port: int = 3000
    log_level: str = "INFO"

    @property
    def index_path(self) -> Path:
        return self.index_dir / "index.jsonl"

    @property
    def analysis_path(self) -> Path:
        return self.index_dir / "analysis.json"

    @property
    def online_available(self) -> bool:
        return bool(self.acoustid_client_id)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the AUDIO_SORTER_* / ACOUSTID_* environment variables."""
        index_dir = os.environ.get("AUDIO_SORTER_INDEX_DIR")
        input_dir = os.environ.get("AUDIO_SORTER_INPUT_DIR")
        return cls(
            index_dir=Path(index_dir).expanduser() if index_dir else DEFAULT_INDEX_DIR,
            input_dir=Path(input_dir).expanduser() if input_dir else None,
            acoustid_client_id=os.environ.get("ACOUSTID_CLIENT_ID") or None,
            workers=_env_int("AUDIO_SORTER_WORKERS", None),
            fpcalc_path=os.environ.get("FPCALC_PATH") or None,
            stage_timeout=_env_float("AUDIO_SORTER_STAGE_TIMEOUT", 60.0),
            http_timeout=_env_float("AUDIO_SORTER_HTTP_TIMEOUT", 10.0),
            port=_env_int("AUDIO_SORTER_PORT", 3000),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str) -> None:
    """Route loguru output to stderr at *level* (replaces the default handler)."""
    logger.remove()
    logger.add(sys.stderr, level=level)
