"""
Filesystem listing and the diff against the committed index.

Only the modification time decides whether a known file is re-processed:
content changes that keep the mtime, and tag-only staleness, go unnoticed.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from loguru import logger

from .errors import ScanRootError
from .models import AUDIO_EXTENSIONS, TrackRecord


@dataclass(frozen=True)
class FileStat:
    path: str
    modified_time: float
    file_size: int


@dataclass
class FileListing:
    """Audio files found under a root, plus the count of entries that could not be read."""

    files: dict[str, FileStat] = field(default_factory=dict)
    warnings: int = 0


@dataclass
class ScanDiff:
    added: set[str] = field(default_factory=set)
    modified: set[str] = field(default_factory=set)
    removed: set[str] = field(default_factory=set)
    unchanged: int = 0

    @property
    def to_process(self) -> list[str]:
        return sorted(self.added | self.modified)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.removed)


def _is_audio(name: str) -> bool:
    _head, dot, ext = name.rpartition(".")
    return bool(dot) and ext.lower() in AUDIO_EXTENSIONS


def list_audio_files(root: Path | str) -> FileListing:
    """
    Recursively list audio files under *root* with their mtime and size.

    Symlinked directories are not descended into, so link cycles cannot loop.
    Unreadable directories and files that fail ``stat()`` are counted in
    ``warnings`` and skipped.

    Raises:
        ScanRootError: if *root* is not an accessible directory.
    """
    root_path = Path(root).expanduser().resolve()
    if not root_path.is_dir():
        raise ScanRootError(f"Scan root is not a directory: {root_path}")
    if not os.access(root_path, os.R_OK | os.X_OK):
        raise ScanRootError(f"Scan root is not readable: {root_path}")

    listing = FileListing()

    def _on_error(err: OSError) -> None:
        listing.warnings += 1
        logger.warning(f"Skipping unreadable directory {err.filename}: {err.strerror}")

    for dirpath, _dirnames, filenames in os.walk(root_path, onerror=_on_error, followlinks=False):
        for name in filenames:
            if not _is_audio(name):
                continue
            full = os.path.join(dirpath, name)
            try:
                st = os.stat(full)
            except OSError as exc:
                listing.warnings += 1
                logger.warning(f"Skipping {full}: {exc.strerror or exc}")
                continue
            listing.files[full] = FileStat(full, st.st_mtime, st.st_size)

    logger.debug(
        f"Listed {len(listing.files)} audio files under {root_path} "
        f"({listing.warnings} warnings)"
    )
    return listing


def compute_diff(listing: FileListing, snapshot: Mapping[str, TrackRecord], root: Path | str | None = None) -> ScanDiff:
    """
    Compare a filesystem listing with the committed index.

    When *root* is given, only index entries under that root are candidates
    for removal, so scanning one folder does not drop another folder's tracks.
    """
    diff = ScanDiff()
    for path, stat in listing.files.items():
        record = snapshot.get(path)
        if record is None:
            diff.added.add(path)
        elif stat.modified_time > record.modified_time:
            diff.modified.add(path)
        else:
            diff.unchanged += 1

    prefix = None
    if root is not None:
        prefix = str(Path(root).expanduser().resolve())
        prefix = prefix if prefix.endswith(os.sep) else prefix + os.sep
    for path in snapshot:
        if path in listing.files:
            continue
        if prefix is None or path.startswith(prefix):
            diff.removed.add(path)
    return diff


def diff_library(root: Path | str, snapshot: Mapping[str, TrackRecord]) -> tuple[FileListing, ScanDiff]:
    """List *root* and diff it against *snapshot* in one call."""
    listing = list_audio_files(root)
    return listing, compute_diff(listing, snapshot, root=root)
