"""
Per-file pipeline and the bounded worker pool that runs it.

Workers pull paths from a shared task queue and push one FileOutcome per
path onto a result queue; a ``None`` poison pill per worker shuts them down.
Workers never touch the stores: the scan coordinator consumes the outcomes.
"""

from __future__ import annotations

import os
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional, Protocol

from loguru import logger

from .errors import StageError
from .models import FileOutcome, ScanMode, TrackRecord, TrackTags, validate_vector


# ---------------------------------------------------------------------------
# Capability interfaces
# ---------------------------------------------------------------------------

class FingerprinterLike(Protocol):
    def compute(self, path: str) -> str: ...


class MetadataResolverLike(Protocol):
    def resolve(self, path: str, fingerprint: Optional[str], mode: ScanMode) -> tuple[TrackTags, Optional[str]]: ...


class FeatureExtractorLike(Protocol):
    def extract(self, path: str) -> list[float]: ...


@dataclass
class Capabilities:
    """The three external collaborators the pipeline calls, in order."""

    fingerprinter: FingerprinterLike
    resolver: MetadataResolverLike
    extractor: FeatureExtractorLike


def default_workers() -> int:
    """Logical cores minus one, capped at 4."""
    cpus = os.cpu_count() or 2
    return max(1, min(4, cpus - 1))


def _stage_name(exc: Exception, default: str) -> str:
    return exc.stage if isinstance(exc, StageError) else default


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def process_file(
    path: str,
    mode: ScanMode,
    capabilities: Capabilities,
    scanned_at: str = "",
) -> FileOutcome:
    """
    Run fingerprint → metadata → features on one file.

    A failing stage is recorded in ``failed_stages`` and the later stages
    still run with whatever inputs exist.  Only a file that cannot be opened
    produces a failed outcome (no record).
    """
    t0 = time.monotonic()
    name = os.path.basename(path)
    try:
        st = os.stat(path)
        with open(path, "rb") as fh:
            fh.read(1)
    except OSError as exc:
        logger.warning(f"Unreadable file {path}: {exc.strerror or exc}")
        return FileOutcome(
            path=path,
            succeeded=False,
            failed_stages=["read"],
            error=f"Unreadable: {exc.strerror or exc}",
            duration_secs=round(time.monotonic() - t0, 3),
        )

    failed: list[str] = []

    fingerprint: Optional[str] = None
    try:
        fingerprint = capabilities.fingerprinter.compute(path)
    except Exception as exc:  # noqa: BLE001
        failed.append(_stage_name(exc, "fingerprint"))
        logger.debug(f"Fingerprint failed for {name}: {exc}")

    recording_id: Optional[str] = None
    try:
        tags, recording_id = capabilities.resolver.resolve(path, fingerprint, mode)
        if mode == ScanMode.ONLINE and tags.source != "acoustid":
            failed.append("online_lookup")
    except Exception as exc:  # noqa: BLE001
        failed.append(_stage_name(exc, "metadata"))
        logger.debug(f"Metadata failed for {name}: {exc}")
        tags = TrackTags(title=os.path.splitext(name)[0], source="filename")

    vector: Optional[list[float]] = None
    try:
        vector = validate_vector(capabilities.extractor.extract(path))
    except Exception as exc:  # noqa: BLE001
        failed.append(_stage_name(exc, "features"))
        logger.debug(f"Feature extraction failed for {name}: {exc}")

    record = TrackRecord(
        path=path,
        modified_time=st.st_mtime,
        file_size=st.st_size,
        scanned_at=scanned_at or datetime.now(timezone.utc).isoformat(),
        fingerprint=fingerprint,
        tags=tags,
        recording_id=recording_id,
        failed_stages=failed,
    )
    return FileOutcome(
        path=path,
        succeeded=True,
        record=record,
        vector=vector,
        failed_stages=failed,
        duration_secs=round(time.monotonic() - t0, 3),
    )


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

class WorkerPool:
    """
    Bounded thread pool for the per-file pipeline.

    Usage:
        pool = WorkerPool(capabilities, workers=4)
        for outcome in pool.run(paths, ScanMode.OFFLINE):
            ...

    ``run()`` yields exactly one outcome per distinct submitted path, in
    completion order, and returns once every path is accounted for.
    """

    def __init__(
        self,
        capabilities: Capabilities,
        workers: Optional[int] = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.capabilities = capabilities
        self.workers = max(1, workers or default_workers())
        self.poll_interval = poll_interval

    def _worker(
        self,
        task_queue: "queue.Queue[Optional[str]]",
        result_queue: "queue.Queue[FileOutcome]",
        mode: ScanMode,
        scanned_at: str,
    ) -> None:
        """Pull paths from task_queue until the poison pill, send outcomes to result_queue."""
        while True:
            path = task_queue.get()
            if path is None:  # poison pill
                break
            try:
                outcome = process_file(path, mode, self.capabilities, scanned_at=scanned_at)
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Worker crashed on {path}: {exc}")
                outcome = FileOutcome(path=path, succeeded=False, error=str(exc))
            result_queue.put(outcome)

    def run(self, paths: Iterable[str], mode: ScanMode, scanned_at: str = "") -> Iterator[FileOutcome]:
        pending = set(paths)
        if not pending:
            return
        total = len(pending)
        workers = min(self.workers, total)

        task_q: "queue.Queue[Optional[str]]" = queue.Queue()
        result_q: "queue.Queue[FileOutcome]" = queue.Queue()
        for path in sorted(pending):
            task_q.put(path)
        for _ in range(workers):
            task_q.put(None)

        threads = [
            threading.Thread(
                target=self._worker,
                args=(task_q, result_q, mode, scanned_at),
                name=f"audio-sorter-worker-{i}",
                daemon=True,
            )
            for i in range(workers)
        ]
        for t in threads:
            t.start()
        logger.debug(f"WorkerPool: {total} files on {workers} workers")

        while pending:
            try:
                outcome = result_q.get(timeout=self.poll_interval)
            except queue.Empty:
                if all(not t.is_alive() for t in threads) and result_q.empty():
                    break
                continue
            if outcome.path not in pending:
                logger.warning(f"WorkerPool: ignoring duplicate outcome for {outcome.path}")
                continue
            pending.discard(outcome.path)
            yield outcome

        # Only reachable with items left if every worker died unexpectedly.
        for path in sorted(pending):
            yield FileOutcome(path=path, succeeded=False, error="Worker exited before processing")

        for t in threads:
            t.join(timeout=5)
