from __future__ import annotations

import logging
from dataclasses import dataclass

from PySide6.QtCore import QObject, Signal, Slot

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class Notify:
    message: str
    notify_type: str = "info"   # info/success/warning/error


class AppState(QObject):
    notification = Signal(object)   # emits Notify
    status_changed = Signal(str)    # generic status text

    def __init__(self):
        super().__init__()
        self.db = None
        self.config = None
        self.supervisor = None
        self.app_data_dir: str | None = None
        self.queued_notifications: list[Notify] = []

    @Slot(str, str)
    def notify(self, message: str, notify_type: str = "info"):
        logger.log(_LOG_LEVELS.get(notify_type, logging.INFO), message)
        self.notification.emit(Notify(message=message, notify_type=notify_type))
        self.status_changed.emit(message)
