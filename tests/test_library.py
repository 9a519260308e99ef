"""Tests for the AudioLibrary facade, settings and playlist export."""

import pytest

from audio_sorter.analysis_store import AnalysisStore
from audio_sorter.config import DEFAULT_INDEX_DIR, Settings
from audio_sorter.errors import NotAnalyzedError, ScanRootError
from audio_sorter.library import AudioLibrary
from audio_sorter.models import FEATURE_DIMENSION, ScanMode, TrackRecord, TrackTags
from audio_sorter.playlist import build_m3u

from conftest import make_capabilities, write_audio


@pytest.fixture
def library(index_dir):
    settings = Settings(index_dir=index_dir, workers=2)
    lib = AudioLibrary(settings, capabilities=make_capabilities())
    lib.load()
    return lib


def scan(lib, root, mode=ScanMode.OFFLINE):
    lib.start_scan(root, mode)
    assert lib.wait_for_scan(15)
    return lib.get_scan_status()


class TestAudioLibrary:
    def test_empty_library_queries(self, library):
        assert library.get_tracks() == []
        assert library.get_duplicates() == []
        with pytest.raises(NotAnalyzedError):
            library.get_recommendations("/m/a.mp3")

    def test_scan_then_query(self, library, music_dir):
        a = write_audio(music_dir, "a.mp3", b"same")
        b = write_audio(music_dir, "b.mp3", b"same")
        c = write_audio(music_dir, "c.mp3", b"different")
        scan(library, music_dir)

        assert [t.path for t in library.get_tracks()] == [a, b, c]
        groups = library.get_duplicates()
        assert len(groups) == 1 and groups[0].paths == [a, b]

        recs = library.get_recommendations(a)
        assert [r.path for r in recs] == [b, c]
        assert recs[0].distance == 0.0

    def test_online_forced_offline_without_client_id(self, library, music_dir):
        write_audio(music_dir, "a.mp3")
        status = library.start_scan(music_dir, ScanMode.ONLINE)
        assert status.mode == ScanMode.OFFLINE
        library.wait_for_scan(15)

    def test_online_allowed_with_client_id(self, index_dir, music_dir):
        lib = AudioLibrary(Settings(index_dir=index_dir, acoustid_client_id="key"), make_capabilities())
        write_audio(music_dir, "a.mp3")
        assert lib.start_scan(music_dir, ScanMode.ONLINE).mode == ScanMode.ONLINE
        lib.wait_for_scan(15)

    def test_no_root_configured(self, library):
        with pytest.raises(ScanRootError):
            library.start_scan()

    def test_reload_prunes_orphan_vectors(self, index_dir, music_dir):
        lib = AudioLibrary(Settings(index_dir=index_dir), make_capabilities())
        a = write_audio(music_dir, "a.mp3")
        scan(lib, music_dir)

        store = AnalysisStore(index_dir / "analysis.json")
        store.load()
        vectors = dict(store.snapshot())
        vectors["/gone/ghost.mp3"] = tuple([0.0] * FEATURE_DIMENSION)
        store.save(vectors)

        fresh = AudioLibrary(Settings(index_dir=index_dir), make_capabilities())
        fresh.load()
        assert set(fresh.analysis_store.snapshot()) == {a}

    def test_playlist(self, library, music_dir):
        write_audio(music_dir, "My Song.mp3")
        scan(library, music_dir)
        m3u = library.playlist("http://localhost:3000/music")
        assert m3u.startswith("#EXTM3U\n")
        assert "http://localhost:3000/music/My%20Song.mp3" in m3u


class TestBuildM3u:
    def test_absolute_paths_without_base_url(self):
        record = TrackRecord(path="/m/a.mp3", modified_time=1.0, tags=TrackTags(title="A", artist="B", duration=61.6))
        assert build_m3u([record]) == "#EXTM3U\n#EXTINF:62,B - A\n/m/a.mp3\n"

    def test_unknown_duration(self):
        record = TrackRecord(path="/m/a.mp3", modified_time=1.0)
        assert "#EXTINF:-1,Unknown Artist - Unknown Title" in build_m3u([record])


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("AUDIO_SORTER_INDEX_DIR", "AUDIO_SORTER_INPUT_DIR", "ACOUSTID_CLIENT_ID",
                     "AUDIO_SORTER_WORKERS", "AUDIO_SORTER_PORT", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.index_dir == DEFAULT_INDEX_DIR
        assert settings.input_dir is None
        assert not settings.online_available
        assert settings.port == 3000
        assert settings.index_path.name == "index.jsonl"
        assert settings.analysis_path.name == "analysis.json"

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AUDIO_SORTER_INDEX_DIR", str(tmp_path))
        monkeypatch.setenv("ACOUSTID_CLIENT_ID", "abc")
        monkeypatch.setenv("AUDIO_SORTER_WORKERS", "3")
        monkeypatch.setenv("AUDIO_SORTER_STAGE_TIMEOUT", "15.5")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        settings = Settings.from_env()
        assert settings.index_dir == tmp_path
        assert settings.online_available
        assert settings.workers == 3
        assert settings.stage_timeout == 15.5
        assert settings.log_level == "DEBUG"

    def test_bad_number_uses_default(self, monkeypatch):
        monkeypatch.setenv("AUDIO_SORTER_PORT", "not-a-port")
        assert Settings.from_env().port == 3000
