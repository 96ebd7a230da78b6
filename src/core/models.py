# core/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Optional


class PlaylistFormat(Enum):
    AUDPL = "audpl"
    M3U = "m3u"
    M3U8 = "m3u8"
    PLS = "pls"

    @classmethod
    def from_suffix(cls, suffix: str) -> Optional["PlaylistFormat"]:
        s = suffix.lower().lstrip(".")
        for fmt in cls:
            if fmt.value == s:
                return fmt
        return None

    @property
    def upload_supported(self) -> bool:
        # the backend transfer only understands Audacious playlists for now
        return self is PlaylistFormat.AUDPL

    @property
    def label(self) -> str:
        if self is PlaylistFormat.AUDPL:
            return "Audacious (.audpl)"
        if self is PlaylistFormat.PLS:
            return "PLS (.pls)"
        return f"M3U (.{self.value})"


class PipelineState(Enum):
    IDLE = auto()
    CHECKING_UPDATE = auto()
    HALTED = auto()
    UPLOADING = auto()
    COMPLETED = auto()
    FAILED = auto()

    @property
    def busy(self) -> bool:
        return self in (PipelineState.CHECKING_UPDATE, PipelineState.UPLOADING)

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.HALTED, PipelineState.COMPLETED, PipelineState.FAILED)


class MarkerKind(Enum):
    PENDING = "pending_tracks"
    FAILED = "failed"


class GateResult(Enum):
    CLEAR = "clear"
    NEWER = "newer"
    NEW = "new"

    @property
    def stale(self) -> bool:
        return self is not GateResult.CLEAR


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    reachable: bool

    @property
    def label(self) -> str:
        suffix = "" if self.reachable else " [offline]"
        return f"{self.name} ({self.id}){suffix}"


@dataclass(frozen=True)
class PlaylistEntry:
    path: str           # absolute path to the playlist file
    display_name: str   # file name without the last extension ("workout")
    format: PlaylistFormat


@dataclass(frozen=True)
class Track:
    path: str
    file_name: str
    exists: bool
    size_bytes: int


@dataclass(frozen=True)
class PlaylistPreview:
    tracks: tuple[Track, ...]
    total_bytes: int
    missing_count: int
    total_duration_s: float

    @property
    def track_count(self) -> int:
        return len(self.tracks)


@dataclass(frozen=True)
class RecoveryMarker:
    playlist_name: str
    kind: MarkerKind

    @property
    def file_name(self) -> str:
        return f"{self.playlist_name}.{self.kind.value}"


@dataclass
class UploadSession:
    playlist_path: str
    device_id: str
    halt_if_newer: bool
    end_time: datetime | None = None
    state: PipelineState = PipelineState.IDLE
    progress_current: int = 0
    progress_total: int = 0     # 0 = indeterminate
    phase_label: str = ""
    log: list[str] = field(default_factory=list)

    def set_progress(self, current: int, total: int, label: str) -> None:
        if total < 0 or current < 0 or (total > 0 and current > total):
            raise ValueError(f"invalid progress {current}/{total}")
        self.progress_current = current
        self.progress_total = total
        self.phase_label = label
