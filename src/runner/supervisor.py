# src/runner/supervisor.py
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional, Sequence

from PySide6.QtCore import QDeadlineTimer, QObject, QProcess, QTimer, Signal

logger = logging.getLogger(__name__)

# Development checkout first so script edits take effect without installing.
DEV_SCRIPT_DIR = os.path.join(os.path.expanduser("~"), "musiclib", "bin")
INSTALLED_SCRIPT_DIR = "/usr/lib/musiclib/bin"

EXIT_SUCCESS = 0
EXIT_DEFERRED = 3

DEFAULT_GRACE_MS = 3000


class OutcomeKind(Enum):
    SUCCESS = auto()
    DEFERRED = auto()           # exit 3: backend retries on its own
    EXTERNAL_FAILURE = auto()
    NOT_FOUND = auto()          # never started


class ScriptNotFoundError(FileNotFoundError):
    pass


@dataclass(frozen=True)
class OperationResult:
    slot: str
    kind: OutcomeKind
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    cancelled: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def diagnostic(self) -> str:
        err = self.stderr.strip()
        if self.kind is OutcomeKind.NOT_FOUND:
            return err or "operation not found"
        if self.timed_out:
            return f"timed out{': ' + err if err else ''}"
        if self.cancelled:
            return "cancelled"
        if err:
            return err
        return f"exited with code {self.exit_code}"


def outcome_for_exit(exit_code: int) -> OutcomeKind:
    if exit_code == EXIT_SUCCESS:
        return OutcomeKind.SUCCESS
    if exit_code == EXIT_DEFERRED:
        return OutcomeKind.DEFERRED
    return OutcomeKind.EXTERNAL_FAILURE


def resolve_script(name: str, search_dirs: Sequence[str]) -> str:
    """
    Return the first existing `<dir>/<name>` in search order.
    Raises ScriptNotFoundError naming every location that was tried.
    """
    for d in search_dirs:
        if not d:
            continue
        candidate = os.path.join(os.path.expanduser(d), name)
        if os.path.isfile(candidate):
            return candidate
    tried = " or ".join(d for d in search_dirs if d)
    raise ScriptNotFoundError(f"{name} not found in {tried}")


def _decode(data) -> str:
    return bytes(data).decode("utf-8", errors="replace")


class OperationHandle(QObject):
    """
    One started (or refused) external operation.

    `finished` fires exactly once with an OperationResult; the optional
    `on_finished` continuation is called right after it. Stdout lines are
    delivered through `line_received` / `on_line` in emission order.
    """

    line_received = Signal(str)
    finished = Signal(object)   # OperationResult

    def __init__(
        self,
        slot: str,
        on_line: Optional[Callable[[str], None]] = None,
        on_finished: Optional[Callable[[OperationResult], None]] = None,
        on_release: Optional[Callable[["OperationHandle"], None]] = None,
        grace_ms: int = DEFAULT_GRACE_MS,
    ):
        super().__init__()
        self.slot = slot
        self.process: QProcess | None = None
        self.result: OperationResult | None = None
        self.command: list[str] = []
        self.grace_ms = grace_ms

        self._on_line = on_line
        self._on_finished = on_finished
        self._on_release = on_release
        self._lines: list[str] = []
        self._cancelled = False
        self._timed_out = False
        self._timeout_timer: QTimer | None = None
        self._kill_timer: QTimer | None = None

    @property
    def running(self) -> bool:
        return self.result is None and self.process is not None

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    # ----------------------------
    # Control
    # ----------------------------

    def cancel(self) -> None:
        if not self.running:
            return
        logger.info("Cancelling %s", self.slot)
        self._cancelled = True
        self._terminate()

    def _terminate(self) -> None:
        proc = self.process
        if proc is None or proc.state() == QProcess.NotRunning:
            return
        proc.terminate()
        if self._kill_timer is None:
            self._kill_timer = QTimer(proc)
            self._kill_timer.setSingleShot(True)
            self._kill_timer.timeout.connect(self._kill_if_running)
        self._kill_timer.start(self.grace_ms)

    def _kill_if_running(self) -> None:
        proc = self.process
        if proc is not None and proc.state() != QProcess.NotRunning:
            logger.warning("%s did not exit after %d ms, killing", self.slot, self.grace_ms)
            proc.kill()

    def _arm_timeout(self, timeout_ms: int) -> None:
        self._timeout_timer = QTimer(self.process)
        self._timeout_timer.setSingleShot(True)
        self._timeout_timer.timeout.connect(self._on_timeout)
        self._timeout_timer.start(timeout_ms)

    def _on_timeout(self) -> None:
        if not self.running:
            return
        logger.warning("%s timed out", self.slot)
        self._timed_out = True
        self._terminate()

    # ----------------------------
    # QProcess handlers
    # ----------------------------

    def _deliver(self, line: str) -> None:
        self._lines.append(line)
        self.line_received.emit(line)
        if self._on_line is not None:
            self._on_line(line)

    def _on_ready_read(self) -> None:
        proc = self.process
        if proc is None:
            return
        while proc.canReadLine():
            self._deliver(_decode(proc.readLine()).rstrip("\r\n"))

    def _on_process_finished(self, exit_code: int, exit_status: QProcess.ExitStatus) -> None:
        proc = self.process
        if proc is None or self.result is not None:
            return

        # drain complete lines, then a trailing line without newline
        self._on_ready_read()
        rest = _decode(proc.readAllStandardOutput())
        for line in rest.splitlines():
            self._deliver(line)
        stderr = _decode(proc.readAllStandardError())

        crashed = exit_status == QProcess.CrashExit
        if crashed or self._cancelled or self._timed_out:
            kind = OutcomeKind.EXTERNAL_FAILURE
        else:
            kind = outcome_for_exit(exit_code)

        self._resolve(OperationResult(
            slot=self.slot,
            kind=kind,
            exit_code=exit_code,
            stdout="\n".join(self._lines),
            stderr=stderr,
            cancelled=self._cancelled,
            timed_out=self._timed_out,
        ))

    def _on_process_error(self, error: QProcess.ProcessError) -> None:
        # finished is never emitted when the program cannot be started
        if error != QProcess.FailedToStart or self.result is not None:
            return
        message = self.process.errorString() if self.process is not None else "failed to start"
        self._resolve(OperationResult(
            slot=self.slot,
            kind=OutcomeKind.NOT_FOUND,
            exit_code=None,
            stderr=message,
        ))

    # ----------------------------
    # Completion
    # ----------------------------

    def _resolve(self, result: OperationResult) -> None:
        if self.result is not None:
            return
        self.result = result

        for timer in (self._timeout_timer, self._kill_timer):
            if timer is not None:
                timer.stop()

        proc = self.process
        self.process = None
        if proc is not None:
            proc.deleteLater()

        if self._on_release is not None:
            self._on_release(self)

        self.finished.emit(result)
        if self._on_finished is not None:
            self._on_finished(result)


class ProcessSupervisor(QObject):
    """
    Starts named external operations as QProcess children.

    Each slot name runs at most one operation at a time; a start request for
    a busy slot is dropped (returns None) without touching the running one.
    """

    operation_started = Signal(str, str)    # slot, command line
    operation_finished = Signal(object)     # OperationResult

    def __init__(
        self,
        search_dirs: Sequence[str] | None = None,
        grace_ms: int = DEFAULT_GRACE_MS,
        parent: QObject | None = None,
    ):
        super().__init__(parent)
        self.search_dirs: list[str] = list(search_dirs or (DEV_SCRIPT_DIR, INSTALLED_SCRIPT_DIR))
        self.grace_ms = grace_ms
        self._running: dict[str, OperationHandle] = {}

    # ----------------------------
    # Queries
    # ----------------------------

    def is_running(self, slot: str) -> bool:
        return slot in self._running

    def handle(self, slot: str) -> OperationHandle | None:
        return self._running.get(slot)

    def running_slots(self) -> list[str]:
        return list(self._running)

    def resolve(self, script_name: str) -> str:
        return resolve_script(script_name, self.search_dirs)

    # ----------------------------
    # Start
    # ----------------------------

    def start_script(
        self,
        slot: str,
        script_name: str,
        args: Sequence[str] = (),
        *,
        on_line: Optional[Callable[[str], None]] = None,
        on_finished: Optional[Callable[[OperationResult], None]] = None,
        timeout_ms: int | None = None,
    ) -> OperationHandle | None:
        """
        Run `bash <resolved script> <args>` in `slot`.

        Returns None if the slot is busy. If the script cannot be found the
        returned handle is already resolved with OutcomeKind.NOT_FOUND and
        `on_finished` has been called.
        """
        if self.is_running(slot):
            logger.debug("Slot %s busy, ignoring %s", slot, script_name)
            return None

        handle = self._new_handle(slot, on_line, on_finished)
        try:
            script_path = self.resolve(script_name)
        except ScriptNotFoundError as e:
            handle._resolve(OperationResult(
                slot=slot,
                kind=OutcomeKind.NOT_FOUND,
                exit_code=None,
                stderr=str(e),
            ))
            return handle

        self._launch(handle, "bash", [script_path, *args], timeout_ms)
        return handle

    def start_program(
        self,
        slot: str,
        program: str,
        args: Sequence[str] = (),
        *,
        on_line: Optional[Callable[[str], None]] = None,
        on_finished: Optional[Callable[[OperationResult], None]] = None,
        timeout_ms: int | None = None,
    ) -> OperationHandle | None:
        """Run a program found on PATH (e.g. kdeconnect-cli) in `slot`."""
        if self.is_running(slot):
            logger.debug("Slot %s busy, ignoring %s", slot, program)
            return None
        handle = self._new_handle(slot, on_line, on_finished)
        self._launch(handle, program, list(args), timeout_ms)
        return handle

    def _new_handle(self, slot, on_line, on_finished) -> OperationHandle:
        return OperationHandle(
            slot,
            on_line=on_line,
            on_finished=on_finished,
            on_release=self._release,
            grace_ms=self.grace_ms,
        )

    def _launch(self, handle: OperationHandle, program: str, args: list[str], timeout_ms: int | None) -> None:
        proc = QProcess(self)
        proc.setProcessChannelMode(QProcess.SeparateChannels)
        proc.readyReadStandardOutput.connect(handle._on_ready_read)
        proc.finished.connect(handle._on_process_finished)
        proc.errorOccurred.connect(handle._on_process_error)

        handle.process = proc
        handle.command = [program, *args]
        self._running[handle.slot] = handle

        cmdline = shlex.join(handle.command)
        logger.info("Starting %s: %s", handle.slot, cmdline)
        self.operation_started.emit(handle.slot, cmdline)

        if timeout_ms:
            handle._arm_timeout(timeout_ms)
        proc.start(program, args)

    def _release(self, handle: OperationHandle) -> None:
        if self._running.get(handle.slot) is handle:
            del self._running[handle.slot]
        result = handle.result
        if result is None:
            return
        if result.kind is OutcomeKind.NOT_FOUND:
            logger.error("%s not started: %s", handle.slot, result.diagnostic)
        else:
            logger.info("%s finished: %s (exit %s)", handle.slot, result.kind.name, result.exit_code)
        self.operation_finished.emit(result)

    # ----------------------------
    # Cancellation / teardown
    # ----------------------------

    def cancel(self, slot: str) -> bool:
        handle = self._running.get(slot)
        if handle is None:
            return False
        handle.cancel()
        return True

    def shutdown(self, grace_ms: int | None = None) -> None:
        """
        Ask every running operation to terminate, wait up to `grace_ms`
        in total, then kill whatever is still alive.
        """
        grace = self.grace_ms if grace_ms is None else grace_ms
        deadline = QDeadlineTimer(grace)
        handles = list(self._running.values())
        for h in handles:
            h._cancelled = True
            if h.process is not None:
                h.process.terminate()
        for h in handles:
            proc = h.process
            if proc is None:
                continue
            if not proc.waitForFinished(max(0, deadline.remainingTime())):
                logger.warning("%s still running after %d ms, killing", h.slot, grace)
                proc.kill()
                proc.waitForFinished(1000)
