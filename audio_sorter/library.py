"""
AudioLibrary — the service object shared by the web app, the MCP server and
the CLI.

Wires the two stores, the capabilities and the ScanManager together, loads
the persisted state, and answers queries against the committed snapshots.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from .analysis_store import AnalysisStore
from .config import Settings
from .duplicates import find_duplicates
from .errors import ScanRootError
from .features import FeatureExtractor
from .fingerprint import Fingerprinter
from .library_index import IndexStore
from .metadata import MetadataResolver
from .models import (
    MAX_RECOMMENDATIONS,
    DuplicateGroup,
    Recommendation,
    ScanMode,
    ScanStatus,
    TrackRecord,
)
from .playlist import build_m3u
from .recommend import RecommendFilters, find_similar
from .scan_manager import ScanManager
from .worker import Capabilities


def default_capabilities(settings: Settings) -> Capabilities:
    """fpcalc fingerprinting, tag/AcoustID metadata, Essentia features."""
    return Capabilities(
        fingerprinter=Fingerprinter(settings.fpcalc_path, timeout=settings.stage_timeout),
        resolver=MetadataResolver.from_settings(settings),
        extractor=FeatureExtractor(),
    )


class AudioLibrary:
    def __init__(self, settings: Settings, capabilities: Optional[Capabilities] = None) -> None:
        self.settings = settings
        self.index_store = IndexStore(settings.index_path)
        self.analysis_store = AnalysisStore(settings.analysis_path)
        self.manager = ScanManager(
            self.index_store,
            self.analysis_store,
            capabilities or default_capabilities(settings),
            workers=settings.workers,
            disk_path=settings.index_dir,
        )
        self._last_root: Optional[Path] = settings.input_dir

    @classmethod
    def from_env(cls) -> "AudioLibrary":
        return cls(Settings.from_env())

    def load(self) -> int:
        """Load both stores from the index dir. Returns the number of tracks."""
        count = self.index_store.load()
        self.analysis_store.load(known_paths=self.index_store.snapshot())
        logger.info(
            f"Library loaded: {count} tracks, {len(self.analysis_store)} analysed "
            f"({self.settings.index_dir})"
        )
        return count

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def start_scan(self, root: Optional[Path | str] = None, mode: ScanMode = ScanMode.OFFLINE) -> ScanStatus:
        """
        Start a background scan of *root* (default: AUDIO_SORTER_INPUT_DIR).

        Online mode needs an AcoustID client id; without one the scan runs
        offline.

        Raises:
            ScanInProgressError: a scan is still running.
            ScanRootError: no root given and none configured.
        """
        if root is None:
            root = self.settings.input_dir
        if root is None:
            raise ScanRootError("No scan root given and AUDIO_SORTER_INPUT_DIR is not set")
        if mode == ScanMode.ONLINE and not self.settings.online_available:
            logger.warning("ACOUSTID_CLIENT_ID not set — scanning in offline mode")
            mode = ScanMode.OFFLINE
        status = self.manager.start_scan(root, mode)
        self._last_root = Path(status.root) if status.root else None
        return status

    def get_scan_status(self) -> ScanStatus:
        return self.manager.get_status()

    def wait_for_scan(self, timeout: Optional[float] = None) -> bool:
        return self.manager.wait(timeout)

    # ------------------------------------------------------------------
    # Queries (committed snapshot only)
    # ------------------------------------------------------------------

    def get_tracks(self) -> list[TrackRecord]:
        records, _vectors = self.manager.committed()
        return [records[p] for p in sorted(records)]

    def get_duplicates(self) -> list[DuplicateGroup]:
        records, _vectors = self.manager.committed()
        return find_duplicates(records)

    def get_recommendations(
        self,
        path: str,
        filters: Optional[RecommendFilters] = None,
        limit: int = MAX_RECOMMENDATIONS,
    ) -> list[Recommendation]:
        """
        Nearest neighbours of *path*.

        Raises:
            NotAnalyzedError: *path* has no feature vector.
        """
        records, vectors = self.manager.committed()
        if path not in vectors:
            resolved = str(Path(path).expanduser().resolve())
            if resolved in vectors:
                path = resolved
        return find_similar(path, vectors, records=records, filters=filters, limit=limit)

    @property
    def playlist_root(self) -> Optional[Path]:
        """The most recently scanned root (or the configured input dir)."""
        return Path(self._last_root).expanduser().resolve() if self._last_root else None

    def playlist(self, base_url: str = "") -> str:
        """Every committed track as an M3U playlist."""
        records, _vectors = self.manager.committed()
        return build_m3u(records.values(), root=self.playlist_root, base_url=base_url)
