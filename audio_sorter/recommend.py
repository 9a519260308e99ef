"""
Similarity recommendations: nearest neighbours by Euclidean distance over
the 40-component feature vectors.

Brute force over every stored vector; fine for a personal library.  Optional
filters narrow the candidates using the index records' tags and
fingerprints.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import numpy as np

from .errors import NotAnalyzedError
from .models import MAX_RECOMMENDATIONS, Recommendation, TrackRecord


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean distance in float64 over all components."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    return float(np.sqrt(np.sum((va - vb) ** 2)))


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.strip().casefold() == b.strip().casefold()


@dataclass
class RecommendFilters:
    """
    Candidate filters, all optional and case-insensitive.

    same_artist / same_album keep only candidates matching the query track;
    exclude_album drops them; exclude_fingerprint drops candidates that are
    acoustic duplicates of the query; genre keeps one genre.
    """

    same_artist: bool = False
    same_album: bool = False
    exclude_album: bool = False
    exclude_fingerprint: bool = False
    genre: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.same_artist or self.same_album or self.exclude_album
                    or self.exclude_fingerprint or self.genre)

    def accepts(self, query: Optional[TrackRecord], candidate: Optional[TrackRecord]) -> bool:
        if self.is_empty():
            return True
        if candidate is None:
            return False
        qtags = query.tags if query else None
        ctags = candidate.tags
        if self.same_artist and not (qtags and _same(qtags.artist, ctags.artist)):
            return False
        if self.same_album and not (qtags and _same(qtags.album, ctags.album)):
            return False
        if self.exclude_album and qtags and _same(qtags.album, ctags.album):
            return False
        if (self.exclude_fingerprint and query and query.fingerprint
                and query.fingerprint == candidate.fingerprint):
            return False
        if self.genre and not _same(self.genre, ctags.genre):
            return False
        return True


def find_similar(
    query_path: str,
    vectors: Mapping[str, Sequence[float]],
    records: Optional[Mapping[str, TrackRecord]] = None,
    filters: Optional[RecommendFilters] = None,
    limit: int = MAX_RECOMMENDATIONS,
) -> list[Recommendation]:
    """
    Return up to *limit* (never more than 20) tracks closest to *query_path*.

    The query itself is excluded; vectors whose length differs from the
    query's are skipped.  Ties keep the store's path order.

    Raises:
        NotAnalyzedError: *query_path* has no feature vector.
    """
    query_vector = vectors.get(query_path)
    if query_vector is None:
        raise NotAnalyzedError(query_path)

    records = records or {}
    filters = filters or RecommendFilters()
    query_record = records.get(query_path)
    limit = max(0, min(limit, MAX_RECOMMENDATIONS))

    scored: list[tuple[float, str]] = []
    for path in sorted(vectors):
        if path == query_path:
            continue
        vector = vectors[path]
        if len(vector) != len(query_vector):
            continue
        if not filters.accepts(query_record, records.get(path)):
            continue
        scored.append((euclidean_distance(query_vector, vector), path))

    scored.sort(key=lambda item: item[0])

    results = []
    for distance, path in scored[:limit]:
        tags = records[path].tags if path in records else None
        results.append(Recommendation(
            path=path,
            distance=distance,
            title=tags.title if tags else None,
            artist=tags.artist if tags else None,
            album=tags.album if tags else None,
        ))
    return results
