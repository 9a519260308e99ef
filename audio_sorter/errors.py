"""
Exception types shared by the scanner, the worker pool and the query layer.

Stage errors are per-file warnings: the worker records them on the file's
outcome and moves on.  Scan-level errors put the scan into the Failed state.
Query errors are returned to the caller.
"""


class AudioSorterError(Exception):
    """Base class for every error raised by audio_sorter."""


# ---------------------------------------------------------------------------
# Per-file pipeline stages
# ---------------------------------------------------------------------------

class StageError(AudioSorterError):
    """A single pipeline stage failed for one file."""

    stage = "unknown"


class FingerprintError(StageError):
    stage = "fingerprint"


class MetadataError(StageError):
    stage = "metadata"


class FeatureExtractionError(StageError):
    stage = "features"


# ---------------------------------------------------------------------------
# Scan level
# ---------------------------------------------------------------------------

class ScanInProgressError(AudioSorterError):
    """Raised by start_scan() while another scan has not reached a terminal state."""

    def __init__(self, message: str = "Scan already in progress") -> None:
        super().__init__(message)


class ScanRootError(AudioSorterError):
    """The directory to scan does not exist or cannot be listed."""


class PersistenceError(AudioSorterError):
    """Writing a store to disk failed."""


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class NotAnalyzedError(AudioSorterError):
    """The query track has no feature vector in the analysis store."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Target song has no analysis data: {path}")
