# src/library/playlists.py
from __future__ import annotations

import logging
import os
import re
from typing import Optional
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

from mutagen import File as MutagenFile
from mutagen._util import MutagenError

from core.models import PlaylistEntry, PlaylistFormat, PlaylistPreview, Track
from core.utils import playlist_name

logger = logging.getLogger(__name__)

CURRENT_PLAYLIST_FILE = "current_playlist"

_AUDPL_URI_PREFIX = "uri=file://"
_PLS_FILE_RE = re.compile(r"^file(\d+)\s*=\s*(.*)$", re.IGNORECASE)


# ----------------------------
# Directory scan
# ----------------------------

def scan_playlist_dir(directory: str) -> list[PlaylistEntry]:
    """
    List playlist files (.audpl/.m3u/.m3u8/.pls) in `directory`, sorted
    case-insensitively by file name. Other files are not part of the catalog.
    """
    if not directory or not os.path.isdir(directory):
        return []

    entries: list[PlaylistEntry] = []
    with os.scandir(directory) as it:
        for de in it:
            try:
                if not de.is_file():
                    continue
            except OSError:
                continue
            fmt = PlaylistFormat.from_suffix(os.path.splitext(de.name)[1])
            if fmt is None:
                continue
            entries.append(PlaylistEntry(
                path=os.path.abspath(de.path),
                display_name=playlist_name(de.name),
                format=fmt,
            ))

    entries.sort(key=lambda e: (os.path.basename(e.path).lower(), os.path.basename(e.path)))
    return entries


# ----------------------------
# Parsing
# ----------------------------

def _probe(path: str) -> Track:
    try:
        exists = os.path.exists(path)
        size = os.path.getsize(path) if exists else 0
    except OSError:
        exists, size = False, 0
    return Track(
        path=path,
        file_name=os.path.basename(path),
        exists=exists,
        size_bytes=size,
    )


def _read_lines(path: str) -> list[str]:
    try:
        with open(path, "r", encoding="utf-8-sig", errors="replace") as f:
            return [line.strip() for line in f]
    except OSError as e:
        logger.warning("Cannot read playlist %s: %s", path, e)
        return []


def _audpl_paths(lines: list[str]) -> list[str]:
    out = []
    for line in lines:
        if not line.startswith(_AUDPL_URI_PREFIX):
            continue
        decoded = unquote(line[len(_AUDPL_URI_PREFIX):])
        if decoded:
            out.append(decoded)
    return out


def _m3u_paths(lines: list[str], playlist_dir: str) -> list[str]:
    out = []
    for line in lines:
        if not line or line.startswith("#"):
            continue
        if os.path.isabs(line):
            out.append(line)
        else:
            out.append(os.path.normpath(os.path.join(playlist_dir, line)))
    return out


def _local_path_from_url(value: str) -> str:
    return url2pathname(urlparse(value).path)


def _pls_paths(lines: list[str]) -> list[str]:
    out = []
    for line in lines:
        m = _PLS_FILE_RE.match(line)
        if not m:
            continue
        value = m.group(2).strip()
        if value.lower().startswith("file://"):
            value = _local_path_from_url(value)
        if not value:
            logger.debug("Skipping empty pls entry: %r", line)
            continue
        out.append(value)
    return out


def parse_playlist(path: str) -> list[Track]:
    """
    Parse a playlist into tracks in file order, probing each file on disk.
    Missing audio files are kept (exists=False); bad lines are skipped.
    """
    fmt = PlaylistFormat.from_suffix(os.path.splitext(path)[1])
    if fmt is None:
        return []

    lines = _read_lines(path)
    if fmt is PlaylistFormat.AUDPL:
        paths = _audpl_paths(lines)
    elif fmt in (PlaylistFormat.M3U, PlaylistFormat.M3U8):
        paths = _m3u_paths(lines, os.path.dirname(os.path.abspath(path)))
    else:
        paths = _pls_paths(lines)

    return [_probe(p) for p in paths]


def _duration_s(path: str) -> float:
    try:
        audio = MutagenFile(path)
        if audio is not None and getattr(audio, "info", None) and getattr(audio.info, "length", None):
            return float(audio.info.length)
    except (MutagenError, Exception) as e:
        logger.debug("Cannot read duration of %s: %s", path, e)
    return 0.0


def preview_playlist(path: str, *, read_durations: bool = True) -> PlaylistPreview:
    tracks = parse_playlist(path)
    total_bytes = sum(t.size_bytes for t in tracks if t.exists)
    missing = sum(1 for t in tracks if not t.exists)
    duration = 0.0
    if read_durations:
        duration = sum(_duration_s(t.path) for t in tracks if t.exists)
    return PlaylistPreview(
        tracks=tuple(tracks),
        total_bytes=total_bytes,
        missing_count=missing,
        total_duration_s=duration,
    )


# ----------------------------
# Catalog
# ----------------------------

def read_current_playlist(mobile_dir: str) -> str | None:
    """Name of the playlist currently on the device, as recorded by the backend."""
    if not mobile_dir:
        return None
    try:
        with open(os.path.join(mobile_dir, CURRENT_PLAYLIST_FILE), "r", encoding="utf-8") as f:
            name = f.read().strip()
    except OSError:
        return None
    return name or None


class PlaylistCatalog:
    def __init__(self, directory: str):
        self.directory = directory
        self.entries: list[PlaylistEntry] = []

    def refresh(self) -> list[PlaylistEntry]:
        self.entries = scan_playlist_dir(self.directory)
        logger.debug("Catalog %s: %d playlists", self.directory, len(self.entries))
        return self.entries

    def find(self, path: str) -> Optional[PlaylistEntry]:
        target = os.path.abspath(path)
        for e in self.entries:
            if e.path == target:
                return e
        return None

    def find_by_name(self, name: str) -> Optional[PlaylistEntry]:
        for e in self.entries:
            if e.display_name == name:
                return e
        return None

    def default_entry(self, previous_path: str | None = None, mobile_dir: str | None = None) -> Optional[PlaylistEntry]:
        """
        Previous selection if still listed, else the playlist currently on the
        device, else the first entry.
        """
        if previous_path:
            prev = self.find(previous_path)
            if prev is not None:
                return prev
        current = read_current_playlist(mobile_dir) if mobile_dir else None
        if current:
            match = self.find_by_name(current)
            if match is not None:
                return match
        return self.entries[0] if self.entries else None
