# src/mobile/pipeline.py
from __future__ import annotations

import logging
import os
from datetime import datetime

from PySide6.QtCore import QObject, Signal

from core.models import GateResult, PipelineState, PlaylistFormat, UploadSession
from core.utils import playlist_name
from mobile.backend import CHECK_UPDATE_SLOT, MOBILE_SCRIPT, UPLOAD_SLOT, upload_args
from mobile.gate import StalenessGate
from mobile.progress import parse_progress_line
from runner.supervisor import OperationHandle, OperationResult, OutcomeKind, ProcessSupervisor

logger = logging.getLogger(__name__)

PHASE_CHECKING = "Checking for updates"
PHASE_STARTING = "Starting upload"
PHASE_COMPLETE = "Complete"


class UploadPipeline(QObject):
    """
    IDLE -> [CHECKING_UPDATE] -> UPLOADING -> COMPLETED | FAILED
                      \\-> HALTED

    One session at a time. A request while a session is checking or
    uploading is refused.
    """

    state_changed = Signal(object)              # UploadSession
    progress_changed = Signal(int, int, str)    # current, total, phase
    output_line = Signal(str)
    error_line = Signal(str)
    halted = Signal(str, object)                # playlist name, GateResult
    upload_completed = Signal(str, int)         # playlist name, uploaded count
    upload_deferred = Signal(str)               # playlist name
    upload_failed = Signal(str, str)            # playlist name, diagnostic
    rejected = Signal(str)

    def __init__(self, supervisor: ProcessSupervisor, parent: QObject | None = None):
        super().__init__(parent)
        self.supervisor = supervisor
        self.gate = StalenessGate(supervisor)
        self.session: UploadSession | None = None
        self._handle: OperationHandle | None = None

    @property
    def busy(self) -> bool:
        return self.session is not None and self.session.state.busy

    # ----------------------------
    # Requests
    # ----------------------------

    def request_upload(
        self,
        playlist_path: str,
        device_id: str | None,
        halt_if_newer: bool,
        end_time: datetime | None = None,
    ) -> bool:
        if self.busy:
            self._reject("An upload is already in progress")
            return False
        if not device_id:
            self._reject("No device selected")
            return False
        fmt = PlaylistFormat.from_suffix(os.path.splitext(playlist_path)[1])
        if fmt is None or not fmt.upload_supported:
            self._reject(f"Only Audacious playlists (.audpl) can be uploaded: {playlist_path}")
            return False
        if self.supervisor.is_running(UPLOAD_SLOT) or self.supervisor.is_running(CHECK_UPDATE_SLOT):
            self._reject("An upload is already in progress")
            return False

        self.session = UploadSession(
            playlist_path=playlist_path,
            device_id=device_id,
            halt_if_newer=halt_if_newer,
            end_time=end_time,
        )
        if halt_if_newer:
            self._check_update()
        else:
            self._start_upload()
        return True

    def cancel(self) -> bool:
        if not self.busy or self._handle is None:
            return False
        self._handle.cancel()
        return True

    def _reject(self, message: str) -> None:
        logger.warning("Upload rejected: %s", message)
        self.rejected.emit(message)

    # ----------------------------
    # Transitions
    # ----------------------------

    def _set_state(self, state: PipelineState) -> None:
        session = self.session
        session.state = state
        logger.debug("Pipeline %s -> %s", playlist_name(session.playlist_path), state.name)
        self.state_changed.emit(session)

    def _set_progress(self, current: int, total: int, label: str) -> None:
        self.session.set_progress(current, total, label)
        self.progress_changed.emit(current, total, label)

    def _check_update(self) -> None:
        name = playlist_name(self.session.playlist_path)
        self._set_progress(0, 0, PHASE_CHECKING)
        self._set_state(PipelineState.CHECKING_UPDATE)
        handle = self.gate.check(name, self._on_gate_result)
        if handle is None:
            self._fail("update check is already running")
        elif handle.running:
            self._handle = handle

    def _on_gate_result(self, verdict: GateResult, result: OperationResult) -> None:
        self._handle = None
        session = self.session
        name = playlist_name(session.playlist_path)

        # a cancelled or timed-out check says nothing about staleness
        if result.kind is OutcomeKind.NOT_FOUND or result.cancelled or result.timed_out:
            self._fail(result.diagnostic)
            return
        if verdict.stale:
            session.log.append(f"{name}: source playlist is {verdict.value}, upload halted")
            self._set_state(PipelineState.HALTED)
            self.halted.emit(name, verdict)
            return
        self._start_upload()

    def _start_upload(self) -> None:
        session = self.session
        self._set_progress(0, 0, PHASE_STARTING)
        self._set_state(PipelineState.UPLOADING)
        handle = self.supervisor.start_script(
            UPLOAD_SLOT,
            MOBILE_SCRIPT,
            upload_args(session.playlist_path, session.device_id, session.end_time),
            on_line=self._on_line,
            on_finished=self._on_upload_finished,
        )
        if handle is None:
            # slot taken by something outside this pipeline
            self._fail("upload slot is busy")
        elif handle.running:
            self._handle = handle

    def _on_line(self, line: str) -> None:
        text = line.rstrip()
        if not text:
            return
        self.session.log.append(text)
        self.output_line.emit(text)
        update = parse_progress_line(text)
        if update is not None:
            self._set_progress(update.current, update.total, update.phase)

    def _on_upload_finished(self, result: OperationResult) -> None:
        self._handle = None
        session = self.session
        name = playlist_name(session.playlist_path)

        if result.ok:
            total = session.progress_total
            self._set_progress(total, total, PHASE_COMPLETE)
            self._set_state(PipelineState.COMPLETED)
            self.upload_completed.emit(name, total)
            return

        if result.kind is OutcomeKind.DEFERRED:
            session.log.append(f"{name}: upload deferred by the backend")
            logger.info("Upload of %s deferred", name)
            self._set_state(PipelineState.FAILED)
            self.upload_deferred.emit(name)
            return

        self._fail(result.diagnostic)

    def _fail(self, diagnostic: str) -> None:
        session = self.session
        for line in diagnostic.splitlines():
            if line.strip():
                session.log.append(line)
                self.error_line.emit(line)
        self._set_state(PipelineState.FAILED)
        self.upload_failed.emit(playlist_name(session.playlist_path), diagnostic)
