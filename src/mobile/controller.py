# src/mobile/controller.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from PySide6.QtCore import QObject, Signal

from core.models import PipelineState, PlaylistEntry, PlaylistPreview, UploadSession
from core.state import AppState
from db.models import MobileConfig
from library.playlists import PlaylistCatalog, preview_playlist
from mobile.backend import (
    MOBILE_SCRIPT,
    OPERATION_SLOT,
    STATUS_SLOT,
    STATUS_TIMEOUT_MS,
    refresh_args,
    status_args,
    update_last_played_args,
)
from mobile.devices import DeviceRegistry
from mobile.pipeline import UploadPipeline
from mobile.progress import parse_progress_line
from mobile.recovery import RecoveryTracker
from runner.supervisor import OperationHandle, OperationResult, OutcomeKind, ProcessSupervisor

logger = logging.getLogger(__name__)

STATUS_PLACEHOLDER = "(no status output)"

Continuation = Optional[Callable[[OperationResult], None]]


def status_text(result: OperationResult) -> str:
    out = result.stdout.strip()
    if out:
        return out
    err = result.stderr.strip()
    if result.exit_code not in (None, 0) or err:
        code = "not started" if result.exit_code is None else f"exit code {result.exit_code}"
        return f"{code}: {err}" if err else code
    return STATUS_PLACEHOLDER


class MobileController(QObject):
    """
    Selection state plus the wiring between catalog, devices, pipeline and
    recovery. Everything user-visible goes through AppState.notify.
    """

    playlists_changed = Signal(object)      # list[PlaylistEntry]
    playlist_selected = Signal(object)      # PlaylistEntry | None
    status_updated = Signal(str)
    output_line = Signal(str)
    progress_changed = Signal(int, int, str)

    def __init__(
        self,
        app_state: AppState,
        config: MobileConfig,
        supervisor: ProcessSupervisor | None = None,
        parent: QObject | None = None,
    ):
        super().__init__(parent)
        self.app_state = app_state
        self.config = config
        if supervisor is None:
            supervisor = ProcessSupervisor(config.script_dirs, parent=self)
        self.supervisor = supervisor
        app_state.supervisor = self.supervisor

        self.catalog = PlaylistCatalog(config.playlists_dir)
        self.devices = DeviceRegistry(self.supervisor, configured_id=config.device_id, parent=self)
        self.pipeline = UploadPipeline(self.supervisor, parent=self)
        self.recovery = RecoveryTracker(self.supervisor, config.mobile_dir, parent=self)

        self.selected_playlist: PlaylistEntry | None = None
        self.last_status: str | None = None

        self.devices.scan_failed.connect(lambda msg: self._notify(msg, "error"))
        self.pipeline.state_changed.connect(self._on_session_state)
        self.pipeline.output_line.connect(self.output_line)
        self.pipeline.error_line.connect(self.output_line)
        self.pipeline.progress_changed.connect(self.progress_changed)
        self.pipeline.rejected.connect(lambda msg: self._notify(msg, "warning"))
        self.pipeline.halted.connect(self._on_halted)
        self.pipeline.upload_completed.connect(
            lambda name, count: self._notify(f"Uploaded '{name}' ({count} tracks)", "success")
        )
        self.pipeline.upload_failed.connect(
            lambda name, diag: self._notify(f"Upload of '{name}' failed: {diag}", "error")
        )
        self.pipeline.upload_deferred.connect(
            lambda name: self._notify(f"Upload of '{name}' deferred, the backend will finish it later", "info")
        )
        self.recovery.output_line.connect(self.output_line)
        self.recovery.progress_changed.connect(self.progress_changed)
        self.recovery.error.connect(lambda msg: self._notify(msg, "error"))

    def _notify(self, message: str, notify_type: str = "info") -> None:
        self.app_state.notify(message, notify_type)

    @property
    def selected_device(self) -> str | None:
        return self.devices.selected_id

    @property
    def busy(self) -> bool:
        return self.pipeline.busy or self.supervisor.is_running(OPERATION_SLOT)

    # ----------------------------
    # Selection
    # ----------------------------

    def refresh_playlists(self) -> list[PlaylistEntry]:
        previous = self.selected_playlist.path if self.selected_playlist else None
        entries = self.catalog.refresh()
        self.playlists_changed.emit(list(entries))
        self._set_selection(self.catalog.default_entry(previous, self.config.mobile_dir))
        self.recovery.rescan()
        return entries

    def _set_selection(self, entry: PlaylistEntry | None) -> None:
        if entry != self.selected_playlist:
            self.selected_playlist = entry
            self.playlist_selected.emit(entry)

    def select_playlist(self, path: str) -> bool:
        entry = self.catalog.find(path) or self.catalog.find_by_name(path)
        if entry is None:
            self._notify(f"Playlist not found: {path}", "warning")
            return False
        self._set_selection(entry)
        return True

    def scan_devices(self) -> OperationHandle | None:
        return self.devices.scan()

    def select_device(self, device_id: str) -> bool:
        if not self.devices.select(device_id):
            self._notify(f"Device not found: {device_id}", "warning")
            return False
        return True

    def preview(self) -> PlaylistPreview | None:
        if self.selected_playlist is None:
            self._notify("No playlist selected", "warning")
            return None
        return preview_playlist(self.selected_playlist.path)

    # ----------------------------
    # Upload
    # ----------------------------

    def upload(self, halt_if_newer: bool | None = None, end_time: datetime | None = None) -> bool:
        if self.selected_playlist is None:
            self._notify("No playlist selected", "warning")
            return False
        if self.supervisor.is_running(OPERATION_SLOT):
            self._notify("Another mobile operation is running", "warning")
            return False
        if halt_if_newer is None:
            halt_if_newer = self.config.halt_if_newer
        return self.pipeline.request_upload(
            self.selected_playlist.path,
            self.selected_device,
            halt_if_newer,
            end_time,
        )

    def cancel(self) -> bool:
        if self.pipeline.cancel():
            return True
        return self.supervisor.cancel(OPERATION_SLOT)

    def _on_halted(self, name: str, verdict) -> None:
        self._notify(
            f"'{name}' has a {verdict.value} version in Audacious. "
            "Refresh it first or upload without the update check.",
            "warning",
        )

    def _on_session_state(self, session: UploadSession) -> None:
        if not session.state.terminal:
            return
        self.recovery.rescan()
        if session.state is PipelineState.COMPLETED:
            self.refresh_playlists()
            self.refresh_status()
        elif session.state is PipelineState.FAILED and session.log:
            logger.debug("Upload failed, last output: %s", session.log[-1])

    # ----------------------------
    # Shared-slot operations
    # ----------------------------

    def _can_start_operation(self, what: str) -> bool:
        if self.busy:
            self._notify(f"Cannot {what}: another mobile operation is running", "warning")
            return False
        return True

    def _selected_name(self, what: str) -> str | None:
        if self.selected_playlist is None:
            self._notify(f"Cannot {what}: no playlist selected", "warning")
            return None
        return self.selected_playlist.display_name

    def retry(self, on_finished: Continuation = None) -> OperationHandle | None:
        name = self._selected_name("retry")
        if name is None or not self._can_start_operation("retry"):
            return None
        self.recovery.rescan()
        if not self.recovery.markers_for(name):
            self._notify(f"Nothing to retry for '{name}': no recovery markers", "warning")
            return None

        def _done(result: OperationResult) -> None:
            if result.ok:
                self._notify(f"Accounting for '{name}' completed", "success")
            if on_finished is not None:
                on_finished(result)

        return self.recovery.retry(name, on_finished=_done)

    def cleanup(self, on_finished: Continuation = None) -> OperationHandle | None:
        if not self._can_start_operation("clean up"):
            return None
        selected = self.selected_playlist.display_name if self.selected_playlist else None

        def _done(result: OperationResult) -> None:
            if result.ok:
                self._notify("Mobile cleanup finished", "success")
            if on_finished is not None:
                on_finished(result)

        return self.recovery.cleanup(selected, on_finished=_done)

    def _on_operation_line(self, line: str) -> None:
        text = line.strip()
        if not text:
            return
        self.output_line.emit(text)
        update = parse_progress_line(text)
        if update is not None:
            self.progress_changed.emit(update.current, update.total, update.phase)

    def _run_operation(
        self,
        what: str,
        args: list[str],
        on_success: Optional[Callable[[], None]],
        on_finished: Continuation,
    ) -> OperationHandle | None:
        if not self._can_start_operation(what):
            return None

        def _done(result: OperationResult) -> None:
            self.recovery.rescan()
            if result.ok:
                self._notify(f"{what.capitalize()} finished", "success")
                if on_success is not None:
                    on_success()
            elif result.kind is OutcomeKind.DEFERRED:
                self._notify(f"{what.capitalize()} deferred, the backend will finish it later", "info")
            else:
                self._notify(f"{what.capitalize()} failed: {result.diagnostic}", "error")
            if on_finished is not None:
                on_finished(result)

        return self.supervisor.start_script(
            OPERATION_SLOT,
            MOBILE_SCRIPT,
            args,
            on_line=self._on_operation_line,
            on_finished=_done,
        )

    def update_last_played(self, end_time: datetime | None = None, on_finished: Continuation = None) -> OperationHandle | None:
        name = self._selected_name("update last-played")
        if name is None:
            return None
        return self._run_operation("update last-played", update_last_played_args(name, end_time), None, on_finished)

    def refresh_from_source(self, on_finished: Continuation = None) -> OperationHandle | None:
        return self._run_operation("refresh from Audacious", refresh_args(), self.refresh_playlists, on_finished)

    # ----------------------------
    # Status
    # ----------------------------

    def refresh_status(self, on_finished: Continuation = None) -> OperationHandle | None:
        def _done(result: OperationResult) -> None:
            text = status_text(result)
            self.last_status = text
            self.status_updated.emit(text)
            if on_finished is not None:
                on_finished(result)

        return self.supervisor.start_script(
            STATUS_SLOT,
            MOBILE_SCRIPT,
            status_args(),
            on_finished=_done,
            timeout_ms=STATUS_TIMEOUT_MS,
        )
