# src/mobile/progress.py
"""
Progress grammar of musiclib_mobile.sh stdout.

    ACCOUNTING: Track <n>/<m>: <details>
    UPLOAD: [<n>/<m>] <file name>

These are plain-text contracts with the backend script. Any other line is
log text. A structured key=value format would be less fragile if the backend
output is ever revised.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

PHASE_ACCOUNTING = "Accounting"
PHASE_UPLOADING = "Uploading"

_ACCOUNTING_RE = re.compile(r"ACCOUNTING:\s*Track\s+(\d+)/(\d+):")
_UPLOAD_RE = re.compile(r"UPLOAD:\s*\[(\d+)/(\d+)\]")


@dataclass(frozen=True)
class ProgressUpdate:
    current: int
    total: int
    phase: str

    @property
    def text(self) -> str:
        return f"{self.phase}: {self.current}/{self.total}"


def parse_progress_line(line: str) -> Optional[ProgressUpdate]:
    for regex, phase in ((_ACCOUNTING_RE, PHASE_ACCOUNTING), (_UPLOAD_RE, PHASE_UPLOADING)):
        m = regex.search(line)
        if not m:
            continue
        current, total = int(m.group(1)), int(m.group(2))
        if total <= 0 or current > total:
            return None
        return ProgressUpdate(current=current, total=total, phase=phase)
    return None
