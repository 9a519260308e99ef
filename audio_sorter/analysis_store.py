"""
Analysis Store — persisted mapping of absolute file path → 40-float feature vector.

Written as ``analysis.json``::

    {"dimension": 40, "vectors": {"/music/a.mp3": [0.1, ...], ...}}

with sorted keys.  Same snapshot/publish discipline as IndexStore.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Collection, Mapping, Optional

from loguru import logger

from .library_index import atomic_write_text
from .models import FEATURE_DIMENSION

Vector = tuple[float, ...]


class AnalysisStore:
    """Persisted feature vectors, kept consistent with IndexStore membership."""

    def __init__(self, analysis_path: Path) -> None:
        self._path = analysis_path
        self._vectors: Mapping[str, Vector] = MappingProxyType({})
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, known_paths: Optional[Collection[str]] = None) -> int:
        """
        Load ``analysis.json``; a missing or unreadable file is treated as empty.

        Entries with the wrong dimension are dropped.  When *known_paths* is
        given, vectors for paths outside it are dropped too (orphans left by a
        crash between the analysis and index writes).
        """
        vectors: dict[str, Vector] = {}
        if self._path.exists():
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
                items = (raw.get("vectors") or {}).items()
            except (OSError, ValueError, AttributeError) as exc:
                logger.warning(f"Could not load analysis store {self._path}: {exc}")
                items = []
            for path, values in items:
                try:
                    if not isinstance(values, list) or len(values) != FEATURE_DIMENSION:
                        raise ValueError(f"expected {FEATURE_DIMENSION} components")
                    vectors[path] = tuple(float(v) for v in values)
                except (TypeError, ValueError):
                    logger.warning(f"AnalysisStore: dropped malformed vector for {path}")

        if known_paths is not None:
            orphans = [p for p in vectors if p not in known_paths]
            for p in orphans:
                del vectors[p]
            if orphans:
                logger.info(f"AnalysisStore: pruned {len(orphans)} vectors with no index record")

        self.publish(vectors)
        logger.debug(f"AnalysisStore: loaded {len(vectors)} vectors from {self._path}")
        return len(vectors)

    def snapshot(self) -> Mapping[str, Vector]:
        with self._lock:
            return self._vectors

    def publish(self, vectors: dict[str, Vector]) -> None:
        frozen = MappingProxyType(dict(vectors))
        with self._lock:
            self._vectors = frozen

    def get(self, path: str) -> Optional[Vector]:
        return self.snapshot().get(path)

    def __len__(self) -> int:
        return len(self.snapshot())

    @staticmethod
    def serialize(vectors: Mapping[str, Vector]) -> str:
        payload = {
            "dimension": FEATURE_DIMENSION,
            "vectors": {p: list(vectors[p]) for p in sorted(vectors)},
        }
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)

    def save(self, vectors: Mapping[str, Vector]) -> int:
        atomic_write_text(self._path, self.serialize(vectors))
        logger.debug(f"AnalysisStore: wrote {len(vectors)} vectors → {self._path}")
        return len(vectors)

    def __repr__(self) -> str:
        return f"AnalysisStore({len(self)} vectors, path={self._path})"
