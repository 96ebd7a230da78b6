# src/mobile/devices.py
from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from PySide6.QtCore import QObject, Signal

from core.models import Device
from runner.supervisor import OperationHandle, OperationResult, ProcessSupervisor

logger = logging.getLogger(__name__)

DEVICE_SCAN_SLOT = "device-scan"
KDECONNECT_CLI = "kdeconnect-cli"
DEVICE_SCAN_TIMEOUT_MS = 10_000

# kdeconnect-cli -l:
#   - Pixel 7: abc123def456 (paired and reachable)
#   - Tablet: 0123abcd_ef (paired)
_DEVICE_LINE_RE = re.compile(r"^-\s+(.+?):\s+([\w-]+)\s+\((.+)\)\s*$")


def parse_device_list(text: str) -> list[Device]:
    devices: list[Device] = []
    for raw in (text or "").splitlines():
        line = raw.strip()
        m = _DEVICE_LINE_RE.match(line)
        if not m:
            if line:
                logger.debug("Ignoring device line: %r", line)
            continue
        devices.append(Device(
            id=m.group(2).strip(),
            name=m.group(1).strip(),
            reachable="reachable" in m.group(3),
        ))
    return devices


def choose_default(
    devices: Sequence[Device],
    previous_id: str | None = None,
    configured_id: str | None = None,
) -> Optional[str]:
    """
    Selection policy: the id picked earlier this session, then the
    configured DEVICE_ID, then the first reachable device.
    """
    ids = {d.id for d in devices}
    if previous_id and previous_id in ids:
        return previous_id
    if configured_id and configured_id in ids:
        return configured_id
    for d in devices:
        if d.reachable:
            return d.id
    return None


class DeviceRegistry(QObject):
    devices_changed = Signal(object)        # list[Device]
    selection_changed = Signal(object)      # str | None
    scan_failed = Signal(str)

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        configured_id: str | None = None,
        program: str = KDECONNECT_CLI,
        parent: QObject | None = None,
    ):
        super().__init__(parent)
        self.supervisor = supervisor
        self.configured_id = configured_id or None
        self.program = program
        self.devices: list[Device] = []
        self._selected_id: str | None = None

    # ----------------------------
    # Selection
    # ----------------------------

    @property
    def selected_id(self) -> str | None:
        if self._selected_id and any(d.id == self._selected_id for d in self.devices):
            return self._selected_id
        return None

    def selected_device(self) -> Optional[Device]:
        sid = self.selected_id
        return next((d for d in self.devices if d.id == sid), None)

    def select(self, device_id: str | None) -> bool:
        if device_id is not None and not any(d.id == device_id for d in self.devices):
            return False
        if device_id != self._selected_id:
            self._selected_id = device_id
            self.selection_changed.emit(device_id)
        return True

    def any_reachable(self) -> bool:
        return any(d.reachable for d in self.devices)

    # ----------------------------
    # Scan
    # ----------------------------

    def scan(self) -> OperationHandle | None:
        return self.supervisor.start_program(
            DEVICE_SCAN_SLOT,
            self.program,
            ["-l"],
            on_finished=self._on_scan_finished,
            timeout_ms=DEVICE_SCAN_TIMEOUT_MS,
        )

    def apply_listing(self, text: str) -> list[Device]:
        self.devices = parse_device_list(text)
        self.devices_changed.emit(list(self.devices))

        chosen = choose_default(self.devices, self._selected_id, self.configured_id)
        if chosen is not None and chosen != self._selected_id:
            self._selected_id = chosen
            self.selection_changed.emit(chosen)
        elif chosen is None:
            self.selection_changed.emit(None)
        return self.devices

    def _on_scan_finished(self, result: OperationResult) -> None:
        if not result.ok:
            logger.warning("Device scan failed: %s", result.diagnostic)
            self.devices = []
            self.devices_changed.emit([])
            self.selection_changed.emit(None)
            self.scan_failed.emit(f"{self.program} failed: {result.diagnostic}")
            return
        self.apply_listing(result.stdout)
