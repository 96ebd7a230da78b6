# src/mobile/recovery.py
"""
Recovery markers left in the mobile state directory by interrupted backend
runs:

    <playlist>.pending_tracks   accounting did not finish
    <playlist>.failed           accounting failed

The backend owns these files; we only look at which ones exist.
"""
from __future__ import annotations

import logging
import os
from typing import Callable, Optional

from PySide6.QtCore import QObject, Signal

from core.models import MarkerKind, RecoveryMarker
from mobile.backend import MOBILE_SCRIPT, OPERATION_SLOT, cleanup_args, retry_args
from mobile.progress import parse_progress_line
from runner.supervisor import OperationHandle, OperationResult, OutcomeKind, ProcessSupervisor

logger = logging.getLogger(__name__)

_SUFFIXES = {f".{kind.value}": kind for kind in MarkerKind}


def scan_markers(mobile_dir: str) -> set[RecoveryMarker]:
    markers: set[RecoveryMarker] = set()
    if not mobile_dir or not os.path.isdir(mobile_dir):
        return markers
    with os.scandir(mobile_dir) as it:
        for de in it:
            for suffix, kind in _SUFFIXES.items():
                if de.name.endswith(suffix) and len(de.name) > len(suffix):
                    markers.add(RecoveryMarker(playlist_name=de.name[: -len(suffix)], kind=kind))
                    break
    return markers


class RecoveryTracker(QObject):
    markers_changed = Signal(object)        # set[RecoveryMarker]
    output_line = Signal(str)
    progress_changed = Signal(int, int, str)
    error = Signal(str)
    retry_finished = Signal(object)         # OperationResult
    cleanup_finished = Signal(object)       # OperationResult

    def __init__(self, supervisor: ProcessSupervisor, mobile_dir: str, parent: QObject | None = None):
        super().__init__(parent)
        self.supervisor = supervisor
        self.mobile_dir = mobile_dir
        self.markers: set[RecoveryMarker] = set()

    # ----------------------------
    # Markers
    # ----------------------------

    def rescan(self) -> set[RecoveryMarker]:
        found = scan_markers(self.mobile_dir)
        if found != self.markers:
            self.markers = found
            self.markers_changed.emit(set(found))
        return set(found)

    def has_recovery(self) -> bool:
        return bool(self.markers)

    def markers_for(self, playlist_name: str) -> set[RecoveryMarker]:
        return {m for m in self.markers if m.playlist_name == playlist_name}

    def preserved_names(self, selected: str | None) -> set[str]:
        """Playlists whose mobile state a cleanup must leave alone."""
        names = {m.playlist_name for m in self.markers}
        if selected:
            names.add(selected)
        return names

    # ----------------------------
    # Operations
    # ----------------------------

    def _on_line(self, line: str) -> None:
        text = line.strip()
        if not text:
            return
        self.output_line.emit(text)
        update = parse_progress_line(text)
        if update is not None:
            self.progress_changed.emit(update.current, update.total, update.phase)

    def retry(
        self,
        playlist_name: str,
        on_finished: Optional[Callable[[OperationResult], None]] = None,
    ) -> OperationHandle | None:
        """Re-run accounting for one playlist."""
        def _done(result: OperationResult) -> None:
            self.rescan()
            if result.kind is OutcomeKind.DEFERRED:
                logger.info("Retry of %s deferred", playlist_name)
            elif not result.ok:
                self.error.emit(f"Retry of '{playlist_name}' failed: {result.diagnostic}")
            self.retry_finished.emit(result)
            if on_finished is not None:
                on_finished(result)

        self.rescan()
        return self.supervisor.start_script(
            OPERATION_SLOT,
            MOBILE_SCRIPT,
            retry_args(playlist_name),
            on_line=self._on_line,
            on_finished=_done,
        )

    def cleanup(
        self,
        selected: str | None,
        on_finished: Optional[Callable[[OperationResult], None]] = None,
    ) -> OperationHandle | None:
        """
        Sweep orphaned files from the mobile directory, keeping the selected
        playlist and every playlist that still has a recovery marker.
        """
        before = self.rescan()
        keep = self.preserved_names(selected)

        def _done(result: OperationResult) -> None:
            after = self.rescan()
            lost = {m for m in before if m.playlist_name in keep} - after
            if lost:
                names = ", ".join(sorted(m.file_name for m in lost))
                logger.error("Cleanup removed preserved recovery markers: %s", names)
                self.error.emit(f"Cleanup removed recovery markers it had to keep: {names}")
            if not result.ok:
                self.error.emit(f"Cleanup failed: {result.diagnostic}")
            self.cleanup_finished.emit(result)
            if on_finished is not None:
                on_finished(result)

        return self.supervisor.start_script(
            OPERATION_SLOT,
            MOBILE_SCRIPT,
            cleanup_args(keep),
            on_line=self._on_line,
            on_finished=_done,
        )
