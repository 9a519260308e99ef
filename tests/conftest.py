"""Shared fixtures: in-memory capabilities and a helper to lay out a fake music folder."""

import os
import threading
from pathlib import Path

import pytest

from audio_sorter.analysis_store import AnalysisStore
from audio_sorter.errors import FeatureExtractionError, FingerprintError
from audio_sorter.library_index import IndexStore
from audio_sorter.models import FEATURE_DIMENSION, TrackTags
from audio_sorter.scan_manager import ScanManager
from audio_sorter.worker import Capabilities


def write_audio(root: Path, rel: str, content: bytes = b"audio", mtime: float = None) -> str:
    """Create a file under *root* and return its absolute resolved path."""
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return str(path.resolve())


class FakeFingerprinter:
    """Fingerprint = file content, so equal bytes mean duplicates."""

    def __init__(self, fail=()):
        self.fail = set(fail)

    def compute(self, path):
        if Path(path).name in self.fail:
            raise FingerprintError("fpcalc exited with 1")
        return "fp:" + Path(path).read_bytes().decode("utf-8", "replace")


class FakeResolver:
    def __init__(self, fail=(), source="tags"):
        self.fail = set(fail)
        self.source = source
        self.calls = []

    def resolve(self, path, fingerprint, mode):
        self.calls.append((path, fingerprint, mode))
        stem = Path(path).stem
        return TrackTags(title=stem, artist="Artist", album="Album", source=self.source), None


class FakeExtractor:
    """Vector[0] = content length, the rest zeros; ``gate`` blocks until set."""

    def __init__(self, fail=(), gate=None):
        self.fail = set(fail)
        self.gate = gate
        self.entered = threading.Event()

    def extract(self, path):
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(10)
        if Path(path).name in self.fail:
            raise FeatureExtractionError("Audio shorter than one second")
        size = float(len(Path(path).read_bytes()))
        return [size] + [0.0] * (FEATURE_DIMENSION - 1)


def make_capabilities(fingerprint_fail=(), feature_fail=(), gate=None, source="tags"):
    return Capabilities(
        fingerprinter=FakeFingerprinter(fingerprint_fail),
        resolver=FakeResolver(source=source),
        extractor=FakeExtractor(feature_fail, gate=gate),
    )


@pytest.fixture
def music_dir(tmp_path):
    root = tmp_path / "music"
    root.mkdir()
    return root


@pytest.fixture
def index_dir(tmp_path):
    return tmp_path / "index"


@pytest.fixture
def stores(index_dir):
    return IndexStore(index_dir / "index.jsonl"), AnalysisStore(index_dir / "analysis.json")


@pytest.fixture
def capabilities():
    return make_capabilities()


@pytest.fixture
def manager(stores, capabilities):
    index_store, analysis_store = stores
    return ScanManager(index_store, analysis_store, capabilities, workers=2, sample_interval=0.0)


def run_scan(manager, root, mode=None):
    """Start a scan, wait for it to return to Idle and return the final status."""
    from audio_sorter.models import ScanMode

    manager.start_scan(root, mode or ScanMode.OFFLINE)
    assert manager.wait(timeout=15), "scan did not finish"
    return manager.get_status()
