"""
Duplicate detection over the committed index: files sharing one fingerprint.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Mapping, Union

from .models import DuplicateGroup, DuplicateMember, TrackRecord


def _normalise(value: str | None) -> str:
    return (value or "").strip().casefold()


def find_duplicates(records: Union[Mapping[str, TrackRecord], Iterable[TrackRecord]]) -> list[DuplicateGroup]:
    """
    Group *records* by fingerprint and return every group with two or more paths.

    Records without a fingerprint never take part.  Paths inside a group are
    sorted; groups are ordered by their first path and numbered from 1.
    ``tags_consistent`` is False when members disagree on artist or title.
    """
    if isinstance(records, Mapping):
        records = records.values()

    by_fingerprint: dict[str, list[TrackRecord]] = defaultdict(list)
    for record in records:
        if record.fingerprint:
            by_fingerprint[record.fingerprint].append(record)

    candidates = []
    for fingerprint, members in by_fingerprint.items():
        if len(members) < 2:
            continue
        members.sort(key=lambda r: r.path)
        candidates.append((members[0].path, fingerprint, members))
    candidates.sort(key=lambda c: c[0])

    groups: list[DuplicateGroup] = []
    for group_id, (_first, fingerprint, members) in enumerate(candidates, start=1):
        identities = {(_normalise(m.tags.artist), _normalise(m.tags.title)) for m in members}
        groups.append(DuplicateGroup(
            group_id=group_id,
            fingerprint=fingerprint,
            paths=[m.path for m in members],
            members=[DuplicateMember(path=m.path, tags=m.tags) for m in members],
            tags_consistent=len(identities) == 1,
        ))
    return groups
