"""
Data Models for Audio Sorter

Persisted records (TrackRecord, feature vectors), the scan state snapshot
exposed to the presentation layer, and the derived query results.
"""

from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FEATURE_DIMENSION = 40
MAX_RECOMMENDATIONS = 20
AUDIO_EXTENSIONS: frozenset[str] = frozenset({"mp3", "flac", "wav", "m4a", "ogg"})


class ScanMode(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ScanPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Track models
# ---------------------------------------------------------------------------

class TrackTags(BaseModel):
    """Descriptive fields for a track, from embedded tags or an online lookup."""

    title: Optional[str] = Field(None, description="Track title")
    artist: Optional[str] = Field(None, description="Track artist")
    album: Optional[str] = Field(None, description="Album name")
    genre: Optional[str] = Field(None, description="Genre tag")
    original_artist: Optional[str] = Field(None, description="Original performer when this recording is a cover")
    original_title: Optional[str] = Field(None, description="Original title when this recording is a cover")
    duration: float = Field(0.0, ge=0.0, description="Duration in seconds, 0 if unknown")
    source: str = Field("tags", description="Where the fields came from: tags, filename, acoustid")

    def display_name(self) -> str:
        artist = self.artist or "Unknown Artist"
        title = self.title or "Unknown Title"
        return f"{artist} - {title}"


class TrackRecord(BaseModel):
    """One indexed audio file. Keyed by absolute path in the IndexStore."""

    path: str = Field(..., description="Absolute path to the audio file")
    modified_time: float = Field(..., description="File mtime (POSIX seconds) when it was indexed")
    file_size: int = Field(0, ge=0, description="File size in bytes")
    scanned_at: str = Field("", description="ISO-8601 UTC timestamp of the scan that built this record")
    fingerprint: Optional[str] = Field(None, description="Chromaprint fingerprint, absent if extraction failed")
    tags: TrackTags = Field(default_factory=TrackTags)
    recording_id: Optional[str] = Field(None, description="MusicBrainz recording id (online mode only)")
    failed_stages: List[str] = Field(default_factory=list, description="Pipeline stages that failed for this file")


def validate_vector(values: List[float]) -> List[float]:
    """Return *values* as floats, raising ValueError unless it has FEATURE_DIMENSION components."""
    if len(values) != FEATURE_DIMENSION:
        raise ValueError(
            f"feature vector must have {FEATURE_DIMENSION} components, got {len(values)}"
        )
    return [float(v) for v in values]


# ---------------------------------------------------------------------------
# Worker output
# ---------------------------------------------------------------------------

class FileOutcome(BaseModel):
    """Result of running the per-file pipeline on one path."""

    path: str
    succeeded: bool = False
    record: Optional[TrackRecord] = None
    vector: Optional[List[float]] = None
    failed_stages: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    duration_secs: float = 0.0

    @field_validator("vector")
    @classmethod
    def _check_vector(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        return validate_vector(v) if v is not None else None


# ---------------------------------------------------------------------------
# Scan state
# ---------------------------------------------------------------------------

class ResourceStats(BaseModel):
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    disk_used: int = 0
    disk_total: int = 0


class ScanSummary(BaseModel):
    """Counts reported when a scan reaches a terminal state."""

    added: int = 0
    modified: int = 0
    removed: int = 0
    unchanged: int = 0
    succeeded: int = 0
    failed: int = 0
    warnings: int = 0
    duration_secs: float = 0.0
    finished_at: str = ""


class ScanStatus(BaseModel):
    """Point-in-time snapshot of the process-wide scan state."""

    phase: ScanPhase = ScanPhase.IDLE
    root: Optional[str] = None
    mode: Optional[ScanMode] = None
    files_total: int = 0
    files_processed: int = 0
    succeeded: int = 0
    failed: int = 0
    warnings: int = 0
    current_file: str = ""
    started_at: Optional[str] = None
    elapsed_secs: float = 0.0
    resources: ResourceStats = Field(default_factory=ResourceStats)
    last_summary: Optional[ScanSummary] = None
    last_error: Optional[str] = None

    @property
    def is_scanning(self) -> bool:
        return self.phase == ScanPhase.RUNNING


# ---------------------------------------------------------------------------
# Query results
# ---------------------------------------------------------------------------

class DuplicateMember(BaseModel):
    path: str
    tags: TrackTags


class DuplicateGroup(BaseModel):
    """Two or more files sharing one fingerprint."""

    group_id: int = Field(..., ge=1, description="1-based position for display")
    fingerprint: str
    paths: List[str]
    members: List[DuplicateMember]
    tags_consistent: bool = Field(True, description="False when artist/title differ inside the group")


class Recommendation(BaseModel):
    """A neighbour of the query track, lower distance = more similar."""

    path: str
    distance: float
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
