"""Tests for the scan state machine and the two-store commit."""

import os
import threading

import pytest

from audio_sorter import scan_manager as scan_manager_module
from audio_sorter.errors import PersistenceError, ScanInProgressError
from audio_sorter.models import ScanMode, ScanPhase
from audio_sorter.scan_manager import ResourceSampler, ScanManager

from conftest import make_capabilities, run_scan, write_audio


def assert_no_orphans(index_store, analysis_store):
    assert set(analysis_store.snapshot()) <= set(index_store.snapshot())


class TestFirstScan:
    def test_indexes_every_file(self, manager, stores, music_dir):
        index_store, analysis_store = stores
        a = write_audio(music_dir, "a.mp3", b"one")
        b = write_audio(music_dir, "sub/b.flac", b"two")

        status = run_scan(manager, music_dir)

        assert status.phase == ScanPhase.IDLE
        assert status.last_error is None
        assert status.last_summary.added == 2
        assert status.last_summary.succeeded == 2
        assert set(index_store.snapshot()) == {a, b}
        assert set(analysis_store.snapshot()) == {a, b}
        assert index_store.path.exists()
        assert analysis_store.path.exists()

    def test_progress_counters(self, manager, music_dir):
        for i in range(5):
            write_audio(music_dir, f"{i}.mp3", str(i).encode())
        status = run_scan(manager, music_dir)
        assert status.files_total == 5
        assert status.files_processed == 5
        assert status.succeeded == 5
        assert status.failed == 0
        assert status.resources.memory_bytes > 0

    def test_processed_count_never_decreases(self, stores, music_dir):
        index_store, analysis_store = stores
        for i in range(12):
            write_audio(music_dir, f"{i:02d}.mp3", str(i).encode())
        gate = threading.Event()
        caps = make_capabilities(gate=gate)
        mgr = ScanManager(index_store, analysis_store, caps, workers=3, sample_interval=0.0)

        mgr.start_scan(music_dir, ScanMode.OFFLINE)
        assert caps.extractor.entered.wait(5)
        seen = [mgr.get_status().files_processed]
        gate.set()
        while not mgr.wait(0.001):
            seen.append(mgr.get_status().files_processed)
        seen.append(mgr.get_status().files_processed)

        assert seen == sorted(seen)
        assert seen[0] == 0
        assert seen[-1] == 12

    def test_empty_library(self, manager, stores, music_dir):
        status = run_scan(manager, music_dir)
        assert status.last_summary.added == 0
        assert not stores[0].path.exists()


class TestIncremental:
    def test_rescan_without_changes_writes_nothing(self, manager, stores, music_dir):
        index_store, analysis_store = stores
        write_audio(music_dir, "a.mp3", mtime=1_600_000_000)
        write_audio(music_dir, "b.mp3", b"other", mtime=1_600_000_000)
        run_scan(manager, music_dir)
        index_bytes = index_store.path.read_bytes()
        analysis_bytes = analysis_store.path.read_bytes()
        index_mtime = index_store.path.stat().st_mtime_ns

        status = run_scan(manager, music_dir)

        assert status.files_total == 0
        assert status.last_summary.unchanged == 2
        assert index_store.path.read_bytes() == index_bytes
        assert analysis_store.path.read_bytes() == analysis_bytes
        assert index_store.path.stat().st_mtime_ns == index_mtime

    def test_modified_file_is_reprocessed(self, manager, stores, music_dir):
        index_store, analysis_store = stores
        a = write_audio(music_dir, "a.mp3", b"v1", mtime=1_600_000_000)
        run_scan(manager, music_dir)

        write_audio(music_dir, "a.mp3", b"version2", mtime=1_700_000_000)
        status = run_scan(manager, music_dir)

        assert status.last_summary.modified == 1
        assert index_store.get(a).fingerprint == "fp:version2"
        assert analysis_store.get(a)[0] == 8.0

    def test_modified_file_losing_features_drops_stale_vector(self, stores, music_dir):
        index_store, analysis_store = stores
        a = write_audio(music_dir, "a.mp3", b"v1", mtime=1_600_000_000)
        run_scan(ScanManager(index_store, analysis_store, make_capabilities(), workers=1), music_dir)
        assert analysis_store.get(a) is not None

        write_audio(music_dir, "a.mp3", b"v2", mtime=1_700_000_000)
        failing = ScanManager(index_store, analysis_store, make_capabilities(feature_fail={"a.mp3"}), workers=1)
        run_scan(failing, music_dir)

        assert index_store.get(a).failed_stages == ["features"]
        assert analysis_store.get(a) is None

    def test_removed_file_leaves_no_orphans(self, manager, stores, music_dir):
        index_store, analysis_store = stores
        a = write_audio(music_dir, "a.mp3", b"one")
        b = write_audio(music_dir, "b.mp3", b"two")
        run_scan(manager, music_dir)

        os.remove(b)
        status = run_scan(manager, music_dir)

        assert status.last_summary.removed == 1
        assert set(index_store.snapshot()) == {a}
        assert_no_orphans(index_store, analysis_store)

        index_store.load()
        analysis_store.load()
        assert set(analysis_store.snapshot()) == {a}
        assert_no_orphans(index_store, analysis_store)

    def test_fingerprint_failure_still_analysed(self, stores, music_dir):
        index_store, analysis_store = stores
        a = write_audio(music_dir, "a.mp3")
        mgr = ScanManager(index_store, analysis_store, make_capabilities(fingerprint_fail={"a.mp3"}), workers=1)
        status = run_scan(mgr, music_dir)

        assert status.last_summary.succeeded == 1
        assert status.last_summary.warnings == 1
        assert index_store.get(a).fingerprint is None
        assert analysis_store.get(a) is not None

    def test_unreadable_file_counts_as_failed(self, manager, stores, music_dir, monkeypatch):
        ok = write_audio(music_dir, "ok.mp3")
        ghost = str(music_dir / "ghost.mp3")
        real_diff = scan_manager_module.diff_library

        def diff_with_vanished_file(root, snapshot):
            listing, diff = real_diff(root, snapshot)
            diff.added.add(ghost)
            return listing, diff

        monkeypatch.setattr(scan_manager_module, "diff_library", diff_with_vanished_file)
        status = run_scan(manager, music_dir)

        assert status.last_summary.succeeded == 1
        assert status.last_summary.failed == 1
        assert set(stores[0].snapshot()) == {ok}


class TestSingleFlight:
    def test_second_start_rejected_until_idle(self, stores, music_dir):
        index_store, analysis_store = stores
        gate = threading.Event()
        caps = make_capabilities(gate=gate)
        mgr = ScanManager(index_store, analysis_store, caps, workers=1)
        write_audio(music_dir, "a.mp3")

        mgr.start_scan(music_dir, ScanMode.OFFLINE)
        assert caps.extractor.entered.wait(5)
        status = mgr.get_status()
        assert status.phase == ScanPhase.RUNNING
        assert status.is_scanning
        assert status.files_total == 1

        with pytest.raises(ScanInProgressError):
            mgr.start_scan(music_dir, ScanMode.OFFLINE)

        gate.set()
        assert mgr.wait(10)
        assert mgr.get_status().phase == ScanPhase.IDLE
        mgr.start_scan(music_dir, ScanMode.OFFLINE)
        assert mgr.wait(10)

    def test_queries_see_committed_snapshot_during_scan(self, stores, music_dir):
        index_store, analysis_store = stores
        write_audio(music_dir, "a.mp3")
        run_scan(ScanManager(index_store, analysis_store, make_capabilities(), workers=1), music_dir)

        gate = threading.Event()
        caps = make_capabilities(gate=gate)
        mgr = ScanManager(index_store, analysis_store, caps, workers=1)
        write_audio(music_dir, "b.mp3", b"new")
        mgr.start_scan(music_dir, ScanMode.OFFLINE)
        assert caps.extractor.entered.wait(5)

        records, vectors = mgr.committed()
        assert len(records) == 1 and len(vectors) == 1

        gate.set()
        assert mgr.wait(10)
        records, vectors = mgr.committed()
        assert len(records) == 2 and len(vectors) == 2


class TestFailures:
    def test_missing_root_fails_then_idles(self, manager, tmp_path):
        status = run_scan(manager, tmp_path / "does-not-exist")
        assert status.phase == ScanPhase.IDLE
        assert "not a directory" in status.last_error
        assert status.last_summary is None

    def test_index_write_failure_rolls_back(self, manager, stores, music_dir, monkeypatch):
        index_store, analysis_store = stores
        a = write_audio(music_dir, "a.mp3", b"one")
        run_scan(manager, music_dir)
        index_bytes = index_store.path.read_bytes()
        analysis_bytes = analysis_store.path.read_bytes()

        write_audio(music_dir, "b.mp3", b"two")

        def broken_save(records):
            raise PersistenceError("disk full")

        monkeypatch.setattr(index_store, "save", broken_save)
        status = run_scan(manager, music_dir)

        assert status.phase == ScanPhase.IDLE
        assert "disk full" in status.last_error
        assert set(index_store.snapshot()) == {a}
        assert set(analysis_store.snapshot()) == {a}
        assert index_store.path.read_bytes() == index_bytes
        assert analysis_store.path.read_bytes() == analysis_bytes

    def test_first_write_failure_leaves_no_files(self, manager, stores, music_dir, monkeypatch):
        index_store, analysis_store = stores
        write_audio(music_dir, "a.mp3")

        def broken_save(records):
            raise PersistenceError("read-only filesystem")

        monkeypatch.setattr(index_store, "save", broken_save)
        status = run_scan(manager, music_dir)

        assert "read-only" in status.last_error
        assert len(index_store) == 0 and len(analysis_store) == 0
        assert not analysis_store.path.exists()

    def test_recovers_after_failure(self, manager, stores, music_dir, monkeypatch):
        index_store, _analysis_store = stores
        write_audio(music_dir, "a.mp3")
        def broken_save(records):
            raise PersistenceError("boom")

        monkeypatch.setattr(index_store, "save", broken_save)
        run_scan(manager, music_dir)
        monkeypatch.undo()

        status = run_scan(manager, music_dir)
        assert status.last_error is None
        assert status.last_summary.added == 1
        assert len(index_store) == 1

    def test_thread_start_failure_returns_to_idle(self, manager, stores, music_dir, monkeypatch):
        write_audio(music_dir, "a.mp3")

        def refuse(thread):
            raise RuntimeError("can't start new thread")

        with monkeypatch.context() as m:
            m.setattr(scan_manager_module.threading.Thread, "start", refuse)
            status = manager.start_scan(music_dir, ScanMode.OFFLINE)

        assert status.phase == ScanPhase.IDLE
        assert "can't start new thread" in status.last_error
        assert manager.wait(0)
        assert not stores[0].path.exists()

        status = run_scan(manager, music_dir)
        assert status.last_error is None
        assert status.last_summary.added == 1


class TestResourceSampler:
    def test_sample_reports_memory(self, tmp_path):
        stats = ResourceSampler(tmp_path, interval=0.0).sample(force=True)
        assert stats.memory_bytes > 0
        assert stats.disk_total > 0

    def test_rate_limited(self, tmp_path):
        sampler = ResourceSampler(tmp_path, interval=3600)
        first = sampler.sample(force=True)
        assert sampler.sample() is first

    def test_missing_disk_path_uses_parent(self, tmp_path):
        stats = ResourceSampler(tmp_path / "not" / "yet", interval=0.0).sample(force=True)
        assert stats.disk_total > 0
