"""
Metadata resolution: embedded tags (offline) or AcoustID + MusicBrainz (online).

Online lookups fall back to the embedded tags whenever the network path
fails, so a track always gets some descriptive fields.  When a recording is
a cover, the MusicBrainz work relations are followed to find the original
performer.

AcoustID:    https://api.acoustid.org/v2/lookup   (needs ACOUSTID_CLIENT_ID)
MusicBrainz: https://musicbrainz.org/ws/2/        (1 request / second)
"""

from __future__ import annotations

import functools
import threading
import time
from pathlib import Path
from typing import Any, Optional

import mutagen
import requests
from loguru import logger

from .errors import MetadataError
from .models import ScanMode, TrackTags

ACOUSTID_URL = "https://api.acoustid.org/v2/lookup"
MUSICBRAINZ_URL = "https://musicbrainz.org/ws/2"
USER_AGENT = "AudioSorter/0.1.0 ( https://github.com/audio-sorter/audio-sorter )"
_CACHE_CAPACITY = 1000


# ---------------------------------------------------------------------------
# Offline: embedded tags
# ---------------------------------------------------------------------------

def parse_metadata_from_filename(filename: str) -> tuple[Optional[str], Optional[str]]:
    """
    Guess ``(title, artist)`` from a file name.

    "Title - Artist.mp3" splits on " - "; "Title-Artist.mp3" splits on the
    last dash; anything else is all title.
    """
    stem = Path(filename).stem
    parts = stem.split(" - ")
    if len(parts) == 2:
        return parts[0].strip() or None, parts[1].strip() or None

    dash_parts = stem.split("-")
    if len(dash_parts) >= 2:
        title = "-".join(dash_parts[:-1]).strip()
        artist = dash_parts[-1].strip()
        return title or None, artist or None

    return stem or None, None


def _first(tags: Any, key: str) -> Optional[str]:
    try:
        values = tags.get(key)
    except (KeyError, ValueError):
        return None
    if not values:
        return None
    value = values[0] if isinstance(values, list) else values
    value = str(value).strip()
    return value or None


def read_tags(path: str) -> TrackTags:
    """
    Read title/artist/album/genre and duration from the file's embedded tags.

    Missing title/artist are filled from the file name.  Files mutagen cannot
    parse fall back to the file name entirely.

    Raises:
        MetadataError: if the file does not exist.
    """
    p = Path(path)
    if not p.exists():
        raise MetadataError(f"Audio file not found: {path}")

    title = artist = album = genre = None
    duration = 0.0
    source = "tags"
    try:
        audio = mutagen.File(str(p), easy=True)
    except (mutagen.MutagenError, OSError) as exc:
        logger.debug(f"mutagen could not read {p.name}: {exc}")
        audio = None

    if audio is not None:
        if audio.tags is not None:
            title = _first(audio.tags, "title")
            artist = _first(audio.tags, "artist")
            album = _first(audio.tags, "album")
            genre = _first(audio.tags, "genre")
        info = getattr(audio, "info", None)
        duration = float(getattr(info, "length", 0.0) or 0.0)

    if not title or not artist:
        fn_title, fn_artist = parse_metadata_from_filename(p.name)
        if not title and not artist:
            source = "filename"
        title = title or fn_title
        artist = artist or fn_artist

    return TrackTags(
        title=title,
        artist=artist,
        album=album,
        genre=genre,
        duration=max(0.0, duration),
        source=source,
    )


# ---------------------------------------------------------------------------
# Online: AcoustID + MusicBrainz
# ---------------------------------------------------------------------------

class AcoustIdClient:
    """Looks up a Chromaprint fingerprint on AcoustID."""

    def __init__(self, client_id: str, session: Optional[requests.Session] = None, timeout: float = 10.0) -> None:
        self.client_id = client_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def lookup(self, fingerprint: str, duration: float) -> dict:
        params = {
            "client": self.client_id,
            "meta": "recordings releasegroups",
            "duration": str(int(round(duration))),
            "fingerprint": fingerprint,
        }
        try:
            resp = self.session.post(ACOUSTID_URL, data=params, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise MetadataError(f"AcoustID lookup failed: {exc}") from exc
        except ValueError as exc:
            raise MetadataError("AcoustID returned invalid JSON") from exc

        if data.get("status") != "ok":
            error = (data.get("error") or {}).get("message", "unknown error")
            raise MetadataError(f"AcoustID API error: {error}")
        return data


class MusicBrainzClient:
    """
    MusicBrainz web-service client with a 1 req/s throttle and LRU caches.

    The throttle is shared by every worker thread using this instance.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        min_interval: float = 1.0,
        user_agent: str = USER_AGENT,
    ) -> None:
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", user_agent)
        self.timeout = timeout
        self.min_interval = min_interval
        self._throttle_lock = threading.Lock()
        self._last_request = 0.0
        self.fetch_recording = functools.lru_cache(maxsize=_CACHE_CAPACITY)(self._fetch_recording)
        self.fetch_work = functools.lru_cache(maxsize=_CACHE_CAPACITY)(self._fetch_work)

    def _wait_turn(self) -> None:
        with self._throttle_lock:
            wait = self._last_request + self.min_interval - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self._last_request = time.monotonic()

    def _get(self, url: str) -> dict:
        self._wait_turn()
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as exc:
            raise MetadataError(f"MusicBrainz request failed: {exc}") from exc
        except ValueError as exc:
            raise MetadataError("MusicBrainz returned invalid JSON") from exc

    def _fetch_recording(self, recording_id: str) -> dict:
        return self._get(f"{MUSICBRAINZ_URL}/recording/{recording_id}?inc=work-rels+artist-credits&fmt=json")

    def _fetch_work(self, work_id: str) -> dict:
        return self._get(f"{MUSICBRAINZ_URL}/work/{work_id}?inc=recording-rels+artist-credits&fmt=json")

    def find_original(self, recording_id: str, artist: str) -> tuple[Optional[str], Optional[str]]:
        """
        Return ``(original_artist, original_title)`` if *recording_id* performs
        a work first credited to a different artist, else ``(None, None)``.
        """
        recording = self.fetch_recording(recording_id)
        for rel in recording.get("relations") or []:
            work = rel.get("work")
            if not work or not work.get("id"):
                continue
            try:
                work_data = self.fetch_work(work["id"])
            except MetadataError as exc:
                logger.debug(f"Skipping work {work['id']}: {exc}")
                continue
            for work_rel in work_data.get("relations") or []:
                rec = work_rel.get("recording")
                if not rec:
                    continue
                credits = rec.get("artist-credit") or []
                if credits and credits[0].get("name") and credits[0]["name"] != artist:
                    return credits[0]["name"], rec.get("title")
        return None, None


def _best_recording(lookup: dict) -> Optional[dict]:
    for result in lookup.get("results") or []:
        recordings = result.get("recordings") or []
        if recordings:
            return recordings[0]
    return None


class MetadataResolver:
    """
    Resolves descriptive fields for one file.

    Online mode needs both an AcoustIdClient and a fingerprint; without
    either, or when the lookup fails, it reads the embedded tags.
    """

    def __init__(
        self,
        acoustid: Optional[AcoustIdClient] = None,
        musicbrainz: Optional[MusicBrainzClient] = None,
    ) -> None:
        self.acoustid = acoustid
        self.musicbrainz = musicbrainz

    @classmethod
    def from_settings(cls, settings: Any) -> "MetadataResolver":
        if not settings.acoustid_client_id:
            return cls()
        session = requests.Session()
        return cls(
            acoustid=AcoustIdClient(settings.acoustid_client_id, session=session, timeout=settings.http_timeout),
            musicbrainz=MusicBrainzClient(session=session, timeout=settings.http_timeout),
        )

    def resolve(self, path: str, fingerprint: Optional[str], mode: ScanMode) -> tuple[TrackTags, Optional[str]]:
        """
        Return ``(tags, musicbrainz_recording_id)`` for *path*.

        Raises:
            MetadataError: only when the local tag read fails too.
        """
        local = read_tags(path)
        if mode != ScanMode.ONLINE or self.acoustid is None or not fingerprint:
            return local, None

        try:
            return self._lookup_online(fingerprint, local)
        except MetadataError as exc:
            logger.debug(f"Online lookup failed for {Path(path).name}, using local tags: {exc}")
            return local, None

    def _lookup_online(self, fingerprint: str, local: TrackTags) -> tuple[TrackTags, Optional[str]]:
        lookup = self.acoustid.lookup(fingerprint, local.duration)
        recording = _best_recording(lookup)
        if recording is None:
            raise MetadataError("No valid match found online")

        title = recording.get("title") or "Unknown Title"
        artists = recording.get("artists") or []
        artist = artists[0].get("name") if artists else "Unknown Artist"
        groups = recording.get("releasegroups") or []
        album = groups[0].get("title") if groups else local.album

        original_artist = original_title = None
        if self.musicbrainz is not None and recording.get("id"):
            try:
                original_artist, original_title = self.musicbrainz.find_original(recording["id"], artist)
            except MetadataError as exc:
                logger.debug(f"MusicBrainz cover lookup failed: {exc}")

        tags = TrackTags(
            title=title,
            artist=artist,
            album=album,
            genre=local.genre,
            original_artist=original_artist,
            original_title=original_title,
            duration=local.duration,
            source="acoustid",
        )
        return tags, recording.get("id")
