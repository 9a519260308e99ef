"""
Scan coordination: the single-flight state machine that drives a scan.

    Idle --start_scan--> Running --commit ok--> Completed --> Idle
                                 --error-----> Failed    --> Idle

One coordinator thread per scan lists the root, diffs it against the
committed index, feeds the changed paths to the WorkerPool and, once every
outcome is in, commits both stores.  The coordinator is the only writer;
queries read the committed snapshots through ``committed()``.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional

import psutil
from loguru import logger

from .analysis_store import AnalysisStore, Vector
from .errors import AudioSorterError, PersistenceError, ScanInProgressError
from .library_index import IndexStore, atomic_write_text
from .models import (
    FileOutcome,
    ResourceStats,
    ScanMode,
    ScanPhase,
    ScanStatus,
    ScanSummary,
    TrackRecord,
)
from .scanner import ScanDiff, diff_library
from .worker import Capabilities, WorkerPool


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _existing_parent(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path.cwd()


class ResourceSampler:
    """
    Samples process CPU % and RSS with psutil, at most once per ``interval``.

    ``cpu_percent(interval=None)`` is non-blocking: it reports usage since the
    previous call.  Disk usage of the drive holding *disk_path* is slower to
    read and is refreshed only every ``disk_every`` samples.
    """

    def __init__(self, disk_path: Path, interval: float = 0.5, disk_every: int = 10) -> None:
        self.disk_path = disk_path
        self.interval = interval
        self.disk_every = max(1, disk_every)
        self._process = psutil.Process()
        self._process.cpu_percent(interval=None)
        self._last_sample = 0.0
        self._samples = 0
        self._stats = ResourceStats()

    def sample(self, force: bool = False) -> ResourceStats:
        now = time.monotonic()
        if not force and now - self._last_sample < self.interval:
            return self._stats
        self._last_sample = now

        try:
            cpu = self._process.cpu_percent(interval=None)
            rss = self._process.memory_info().rss
        except psutil.Error as exc:
            logger.debug(f"Resource sample failed: {exc}")
            return self._stats

        disk_used, disk_total = self._stats.disk_used, self._stats.disk_total
        if self._samples % self.disk_every == 0:
            try:
                usage = psutil.disk_usage(str(_existing_parent(self.disk_path)))
                disk_used, disk_total = usage.used, usage.total
            except OSError as exc:
                logger.debug(f"Disk usage unavailable for {self.disk_path}: {exc}")
        self._samples += 1

        self._stats = ResourceStats(
            cpu_percent=round(cpu, 1),
            memory_bytes=rss,
            disk_used=disk_used,
            disk_total=disk_total,
        )
        return self._stats


class ScanManager:
    """
    Owns the process-wide scan state and the commit of scan results.

    Usage:
        manager = ScanManager(index_store, analysis_store, capabilities)
        manager.start_scan("/music", ScanMode.OFFLINE)
        manager.wait()
        manager.get_status().last_summary
    """

    def __init__(
        self,
        index_store: IndexStore,
        analysis_store: AnalysisStore,
        capabilities: Capabilities,
        workers: Optional[int] = None,
        sample_interval: float = 0.5,
        disk_path: Optional[Path] = None,
    ) -> None:
        self.index_store = index_store
        self.analysis_store = analysis_store
        self.pool = WorkerPool(capabilities, workers=workers)
        self.sample_interval = sample_interval
        self.disk_path = disk_path or index_store.path.parent

        self._lock = threading.Lock()         # guards _status
        self._commit_lock = threading.Lock()  # makes the two-store publish appear atomic to readers
        self._status = ScanStatus()
        self._idle = threading.Event()
        self._idle.set()
        self._thread: Optional[threading.Thread] = None
        self._t0 = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_scan(self, root: Path | str, mode: ScanMode = ScanMode.OFFLINE) -> ScanStatus:
        """
        Begin scanning *root* on a background thread.

        Raises:
            ScanInProgressError: if the previous scan has not returned to Idle.
        """
        root_path = Path(root).expanduser().resolve()
        with self._lock:
            if self._status.phase != ScanPhase.IDLE:
                raise ScanInProgressError()
            self._t0 = time.monotonic()
            self._status = ScanStatus(
                phase=ScanPhase.RUNNING,
                root=str(root_path),
                mode=mode,
                started_at=_utc_now(),
                last_summary=self._status.last_summary,
                last_error=self._status.last_error,
            )
            self._idle.clear()
            started_at = self._status.started_at

        logger.info(f"Scan started: {root_path} ({mode.value})")
        self._thread = threading.Thread(
            target=self._run,
            args=(root_path, mode, started_at),
            name="audio-sorter-scan",
            daemon=True,
        )
        try:
            self._thread.start()
        except RuntimeError as exc:
            self._finish(error=f"Could not start scan thread: {exc}")
        return self.get_status()

    def get_status(self) -> ScanStatus:
        with self._lock:
            status = self._status.model_copy(deep=True)
            if status.phase == ScanPhase.RUNNING:
                status.elapsed_secs = round(time.monotonic() - self._t0, 2)
        return status

    @property
    def is_scanning(self) -> bool:
        return not self._idle.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current scan is back to Idle. Returns False on timeout."""
        return self._idle.wait(timeout)

    def committed(self) -> tuple[Mapping[str, TrackRecord], Mapping[str, Vector]]:
        """Return the committed (records, vectors) pair from the same commit."""
        with self._commit_lock:
            return self.index_store.snapshot(), self.analysis_store.snapshot()

    # ------------------------------------------------------------------
    # Coordinator thread
    # ------------------------------------------------------------------

    def _run(self, root: Path, mode: ScanMode, started_at: str) -> None:
        sampler = ResourceSampler(self.disk_path, interval=self.sample_interval)
        self._update(resources=sampler.sample(force=True))
        try:
            listing, diff = diff_library(root, self.index_store.snapshot())
            to_process = diff.to_process
            self._update(files_total=len(to_process), warnings=listing.warnings)
            logger.info(
                f"Diff: {len(diff.added)} added, {len(diff.modified)} modified, "
                f"{len(diff.removed)} removed, {diff.unchanged} unchanged"
            )

            outcomes: list[FileOutcome] = []
            for outcome in self.pool.run(to_process, mode, scanned_at=started_at):
                outcomes.append(outcome)
                self._record_outcome(outcome, sampler.sample())

            self._commit(diff, outcomes)
        except AudioSorterError as exc:
            self._finish(error=str(exc))
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("Scan coordinator crashed")
            self._finish(error=f"Unexpected error: {exc}")
            return

        succeeded = sum(1 for o in outcomes if o.succeeded)
        status = self.get_status()
        self._finish(summary=ScanSummary(
            added=len(diff.added),
            modified=len(diff.modified),
            removed=len(diff.removed),
            unchanged=diff.unchanged,
            succeeded=succeeded,
            failed=len(outcomes) - succeeded,
            warnings=status.warnings,
            duration_secs=status.elapsed_secs,
            finished_at=_utc_now(),
        ))

    def _update(self, **fields) -> None:
        with self._lock:
            for key, value in fields.items():
                setattr(self._status, key, value)

    def _record_outcome(self, outcome: FileOutcome, resources: ResourceStats) -> None:
        with self._lock:
            s = self._status
            s.files_processed += 1
            if outcome.succeeded:
                s.succeeded += 1
                if outcome.failed_stages:
                    s.warnings += 1
            else:
                s.failed += 1
            s.current_file = outcome.path
            s.resources = resources
        if not outcome.succeeded:
            logger.warning(f"Failed: {outcome.path}: {outcome.error}")
        elif outcome.failed_stages:
            logger.debug(f"{outcome.path}: failed stages {', '.join(outcome.failed_stages)}")

    def _finish(self, summary: Optional[ScanSummary] = None, error: Optional[str] = None) -> None:
        with self._lock:
            self._status.phase = ScanPhase.FAILED if error else ScanPhase.COMPLETED
            self._status.elapsed_secs = round(time.monotonic() - self._t0, 2)
            self._status.current_file = ""
            self._status.last_summary = summary
            self._status.last_error = error
        if error:
            logger.error(f"Scan failed: {error}")
        else:
            logger.info(
                f"Scan completed: {summary.succeeded} ok, {summary.failed} failed, "
                f"{summary.removed} removed in {summary.duration_secs:.1f}s"
            )
        with self._lock:
            self._status.phase = ScanPhase.IDLE
        self._idle.set()

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _commit(self, diff: ScanDiff, outcomes: list[FileOutcome]) -> None:
        """
        Fold the outcomes into new store contents, persist, then publish.

        Analysis is written first: a crash before the index write leaves only
        orphan vectors, which AnalysisStore.load() prunes.  Nothing is
        published unless both writes succeed.
        """
        if diff.is_empty:
            logger.debug("Nothing changed, skipping commit")
            return

        base_records, base_vectors = self.committed()
        records = dict(base_records)
        vectors = dict(base_vectors)

        for path in diff.removed:
            records.pop(path, None)
            vectors.pop(path, None)

        for outcome in outcomes:
            if not outcome.succeeded or outcome.record is None:
                continue
            records[outcome.path] = outcome.record
            if outcome.vector is not None:
                vectors[outcome.path] = tuple(outcome.vector)
            else:
                vectors.pop(outcome.path, None)

        vectors = {p: v for p, v in vectors.items() if p in records}

        if records == dict(base_records) and vectors == dict(base_vectors):
            logger.debug("Commit produced no changes, skipping write")
            return

        analysis_path = self.analysis_store.path
        previous_analysis = analysis_path.read_text(encoding="utf-8") if analysis_path.exists() else None
        analysis_written = False
        try:
            self.analysis_store.save(vectors)
            analysis_written = True
            self.index_store.save(records)
        except PersistenceError:
            if analysis_written:
                self._restore_analysis(previous_analysis)
            raise

        with self._commit_lock:
            self.index_store.publish(records)
            self.analysis_store.publish(vectors)
        logger.info(f"Committed {len(records)} records, {len(vectors)} vectors")

    def _restore_analysis(self, previous: Optional[str]) -> None:
        path = self.analysis_store.path
        try:
            if previous is None:
                path.unlink(missing_ok=True)
            else:
                atomic_write_text(path, previous)
        except (OSError, PersistenceError) as exc:
            # Leftover vectors without records are pruned on the next load.
            logger.error(f"Could not restore {path}: {exc}")
