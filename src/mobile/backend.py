# src/mobile/backend.py
"""
Command lines for musiclib_mobile.sh.

Exit codes: 0 success, 3 deferred (the backend retries by itself),
anything else is a failure with the diagnostic on stderr.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from core.utils import format_end_time

MOBILE_SCRIPT = "musiclib_mobile.sh"

# One process per slot. retry / cleanup / update-lastplayed / refresh share
# the "operation" slot.
UPLOAD_SLOT = "upload"
STATUS_SLOT = "status"
CHECK_UPDATE_SLOT = "check-update"
OPERATION_SLOT = "operation"

STATUS_TIMEOUT_MS = 15_000

NON_INTERACTIVE = "--non-interactive"


def _end_time_flags(end_time: datetime | None) -> list[str]:
    if end_time is None:
        return []
    return ["--end-time", format_end_time(end_time)]


def upload_args(playlist_path: str, device_id: str, end_time: datetime | None = None) -> list[str]:
    return ["upload", playlist_path, device_id, NON_INTERACTIVE, *_end_time_flags(end_time)]


def check_update_args(playlist_name: str) -> list[str]:
    return ["check-update", playlist_name]


def retry_args(playlist_name: str) -> list[str]:
    return ["retry", playlist_name]


def update_last_played_args(playlist_name: str, end_time: datetime | None = None) -> list[str]:
    return ["update-lastplayed", playlist_name, NON_INTERACTIVE, *_end_time_flags(end_time)]


def cleanup_args(keep: Iterable[str] = ()) -> list[str]:
    args = ["cleanup"]
    for name in sorted(set(keep)):
        args += ["--keep", name]
    return args


def refresh_args() -> list[str]:
    return ["refresh-audacious-only", NON_INTERACTIVE]


def status_args() -> list[str]:
    return ["status"]
