# src/mobile/gate.py
from __future__ import annotations

import logging
import re
from typing import Callable

from core.models import GateResult
from mobile.backend import CHECK_UPDATE_SLOT, MOBILE_SCRIPT, check_update_args
from runner.supervisor import OperationHandle, OperationResult, ProcessSupervisor

logger = logging.getLogger(__name__)

_STATUS_RE = re.compile(r"STATUS:(\w+)")


def interpret_check_update(exit_code: int | None, stdout: str) -> GateResult:
    """
    check-update exits 0 and prints STATUS:newer / STATUS:new when the
    source copy is ahead of ours. Everything else is clear-to-proceed,
    including malformed or partial output.
    """
    if exit_code != 0:
        return GateResult.CLEAR
    tokens = set(_STATUS_RE.findall(stdout or ""))
    if "newer" in tokens:
        return GateResult.NEWER
    if "new" in tokens:
        return GateResult.NEW
    return GateResult.CLEAR


class StalenessGate:
    """Single-shot check-update call, never retried."""

    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor

    def check(
        self,
        playlist_name: str,
        on_result: Callable[[GateResult, OperationResult], None],
    ) -> OperationHandle | None:
        def _done(result: OperationResult) -> None:
            verdict = interpret_check_update(result.exit_code, result.stdout)
            logger.info("check-update %s: %s (exit %s)", playlist_name, verdict.value, result.exit_code)
            on_result(verdict, result)

        return self.supervisor.start_script(
            CHECK_UPDATE_SLOT,
            MOBILE_SCRIPT,
            check_update_args(playlist_name),
            on_finished=_done,
        )
