"""
Library Index — the persisted mapping of absolute file path → TrackRecord.

Stored as ``index.jsonl``: one TrackRecord JSON object per line, sorted by
path so that rewriting an unchanged index yields byte-identical output.

The in-memory mapping is an immutable snapshot.  Readers call ``snapshot()``
and get the last committed dict; the scan coordinator builds a new dict,
persists it with ``save()``, then ``publish()``es it in one pointer swap.  A
failed save therefore leaves both the file and the visible snapshot untouched.

Usage:
    store = IndexStore(path)
    store.load()
    records = store.snapshot()              # dict[str, TrackRecord]
    store.save(new_records); store.publish(new_records)
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

from loguru import logger
from pydantic import ValidationError

from .errors import PersistenceError
from .models import TrackRecord


def atomic_write_text(path: Path, text: str) -> None:
    """
    Write *text* to *path* through a ``.tmp`` sibling and ``Path.replace()``.

    The rename is atomic, so a crash mid-write leaves the previous file intact.
    Raises PersistenceError on any OS error.
    """
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tmp.open("w", encoding="utf-8") as fh:
            fh.write(text)
        tmp.replace(path)
    except OSError as exc:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            logger.debug(f"Could not remove temp file {tmp}")
        raise PersistenceError(f"Failed to write {path}: {exc}") from exc


class IndexStore:
    """
    Persisted TrackRecord mapping (one record per absolute path).

    Single writer (the scan coordinator), many readers.  ``snapshot()`` never
    exposes a partially applied commit.
    """

    def __init__(self, index_path: Path) -> None:
        self._record_path: Path = index_path
        self._records: Mapping[str, TrackRecord] = MappingProxyType({})
        self._lock = threading.Lock()  # guards the snapshot reference only

    @property
    def path(self) -> Path:
        return self._record_path

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self) -> int:
        """
        Load ``index.jsonl`` into memory, treating a missing file as empty.

        Lines that fail to decode are skipped with a warning. Returns the
        number of records loaded.
        """
        records: dict[str, TrackRecord] = {}
        if self._record_path.exists():
            with self._record_path.open("r", encoding="utf-8", errors="replace") as fh:
                for lineno, line in enumerate(fh, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = TrackRecord.model_validate_json(line)
                    except ValidationError as exc:
                        logger.warning(
                            f"IndexStore: skipped bad line {lineno} in {self._record_path}: "
                            f"{exc.error_count()} validation error(s)"
                        )
                        continue
                    records[record.path] = record
        self.publish(records)
        logger.debug(f"IndexStore: loaded {len(records)} records from {self._record_path}")
        return len(records)

    # ------------------------------------------------------------------
    # Snapshot access
    # ------------------------------------------------------------------

    def snapshot(self) -> Mapping[str, TrackRecord]:
        """Return the last committed mapping (read-only view)."""
        with self._lock:
            return self._records

    def publish(self, records: dict[str, TrackRecord]) -> None:
        """Make *records* the committed snapshot. The dict must not be mutated afterwards."""
        frozen = MappingProxyType(dict(records))
        with self._lock:
            self._records = frozen

    def get(self, path: str) -> Optional[TrackRecord]:
        return self.snapshot().get(path)

    def __len__(self) -> int:
        return len(self.snapshot())

    def __contains__(self, path: object) -> bool:
        return path in self.snapshot()

    # ------------------------------------------------------------------
    # Persist
    # ------------------------------------------------------------------

    @staticmethod
    def serialize(records: Mapping[str, TrackRecord]) -> str:
        lines = [
            json.dumps(records[path].model_dump(mode="json"), ensure_ascii=False, sort_keys=True)
            for path in sorted(records)
        ]
        return "".join(line + "\n" for line in lines)

    def save(self, records: Mapping[str, TrackRecord]) -> int:
        """Atomically write *records* to ``index.jsonl``. Returns the record count."""
        atomic_write_text(self._record_path, self.serialize(records))
        logger.debug(f"IndexStore: wrote {len(records)} records → {self._record_path}")
        return len(records)

    def __repr__(self) -> str:
        return f"IndexStore({len(self)} records, path={self._record_path})"
