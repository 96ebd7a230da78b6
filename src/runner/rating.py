# src/runner/rating.py
from __future__ import annotations

import logging

from PySide6.QtCore import QObject, Signal

from runner.supervisor import OperationHandle, OperationResult, OutcomeKind, ProcessSupervisor

logger = logging.getLogger(__name__)

RATE_SCRIPT = "musiclib_rate.sh"
RATE_SLOT = "rate"


class RatingRunner(QObject):
    """Runs musiclib_rate.sh for one file at a time."""

    rate_success = Signal(str, int)         # file_path, stars
    rate_deferred = Signal(str, int)        # exit code 3, database busy
    rate_error = Signal(str, int, str)      # file_path, stars, message

    def __init__(self, supervisor: ProcessSupervisor, parent: QObject | None = None):
        super().__init__(parent)
        self.supervisor = supervisor

    def rate(self, file_path: str, stars: int) -> OperationHandle | None:
        if not 0 <= int(stars) <= 5:
            raise ValueError(f"stars must be between 0 and 5, got {stars}")

        return self.supervisor.start_script(
            RATE_SLOT,
            RATE_SCRIPT,
            [file_path, str(int(stars))],
            on_finished=lambda result: self._on_finished(file_path, int(stars), result),
        )

    def _on_finished(self, file_path: str, stars: int, result: OperationResult) -> None:
        if result.kind is OutcomeKind.SUCCESS:
            self.rate_success.emit(file_path, stars)
        elif result.kind is OutcomeKind.DEFERRED:
            logger.info("Rating for %s deferred, backend will retry", file_path)
            self.rate_deferred.emit(file_path, stars)
        else:
            self.rate_error.emit(file_path, stars, result.diagnostic)
