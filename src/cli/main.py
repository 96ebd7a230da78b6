# src/cli/main.py
"""
musiclib-mobile: headless front end for the mobile sync orchestrator.

Each sub-command runs a QCoreApplication event loop until its operation
reaches a terminal outcome. Exit codes: 0 success, 1 failure, 3 deferred.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Callable, Optional, Sequence

from PySide6.QtCore import QCoreApplication, QStandardPaths

from core.models import PipelineState, UploadSession
from core.state import AppState, Notify
from core.utils import format_duration, format_size_mb, parse_end_time
from db.database import (
    default_conf_path,
    get_config,
    import_musiclib_conf,
    initialize_database,
    is_config_seeded,
    set_config,
)
from mobile.backend import STATUS_SLOT
from mobile.controller import MobileController
from runner.rating import RatingRunner
from runner.supervisor import OperationHandle, OperationResult, OutcomeKind

logger = logging.getLogger(__name__)

APP_NAME = "musiclib-mobile"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFERRED = 3

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(stream=sys.stderr, level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def exit_code_for(result: OperationResult | None) -> int:
    if result is None:
        return EXIT_FAILED
    if result.kind is OutcomeKind.SUCCESS:
        return EXIT_OK
    if result.kind is OutcomeKind.DEFERRED:
        return EXIT_DEFERRED
    return EXIT_FAILED


# ----------------------------
# Bootstrap
# ----------------------------

def get_app_data_dir() -> str:
    base = QStandardPaths.writableLocation(QStandardPaths.AppDataLocation)
    os.makedirs(base, exist_ok=True)
    return base


def init_app_state(data_dir: str | None = None, conf_path: str | None = None) -> AppState:
    app_state = AppState()

    app_data_dir = data_dir or get_app_data_dir()
    app_state.app_data_dir = app_data_dir
    app_state.db = initialize_database(app_data_dir)

    conf = conf_path or (None if is_config_seeded(app_state.db) else default_conf_path())
    if conf:
        try:
            import_musiclib_conf(app_state.db, conf)
        except OSError as e:
            app_state.queued_notifications.append(
                Notify(message=f"Failed to read {conf}: {e}", notify_type="error")
            )

    app_state.config = get_config(app_state.db)
    return app_state


def _print_notification(n: Notify) -> None:
    # the AppState logger already records it; echo errors for scripts without -v
    if n.notify_type == "error":
        print(n.message, file=sys.stderr)


def run_operation(app: QCoreApplication, start: Callable[[Callable[[OperationResult], None]], Optional[OperationHandle]]) -> OperationResult | None:
    """
    Start one operation and spin the event loop until its continuation runs.
    Returns None if the operation was refused (slot busy, nothing selected).
    """
    def _done(result: OperationResult) -> None:
        app.quit()

    handle = start(_done)
    if handle is None:
        return None
    if handle.result is None:
        app.exec()
    return handle.result


# ----------------------------
# Commands
# ----------------------------

def cmd_playlists(app, controller: MobileController, args) -> int:
    entries = controller.refresh_playlists()
    selected = controller.selected_playlist
    for e in entries:
        flag = "*" if selected is not None and e.path == selected.path else " "
        markers = ", ".join(sorted(m.kind.value for m in controller.recovery.markers_for(e.display_name)))
        extra = f"  [{markers}]" if markers else ""
        print(f"{flag} {e.display_name:<30} {e.format.label:<20} {e.path}{extra}")
    if not entries:
        print(f"No playlists in {controller.config.playlists_dir}")
    return EXIT_OK


def _select(controller: MobileController, playlist: str | None) -> bool:
    controller.refresh_playlists()
    if playlist:
        return controller.select_playlist(playlist)
    if controller.selected_playlist is None:
        controller.app_state.notify("No playlists found", "error")
        return False
    return True


def cmd_preview(app, controller: MobileController, args) -> int:
    if not _select(controller, args.playlist):
        return EXIT_FAILED
    preview = controller.preview()
    if preview is None:
        return EXIT_FAILED
    for t in preview.tracks:
        mark = " " if t.exists else "!"
        print(f"{mark} {t.file_name}")
    print(
        f"{preview.track_count} tracks, {format_size_mb(preview.total_bytes)}, "
        f"{format_duration(preview.total_duration_s)}, {preview.missing_count} missing"
    )
    return EXIT_OK


def _scan_devices(app, controller: MobileController) -> OperationResult | None:
    return run_operation(app, lambda done: _with_continuation(controller.scan_devices(), done))


def _with_continuation(handle: OperationHandle | None, done) -> OperationHandle | None:
    if handle is None:
        return None
    if handle.result is not None:
        done(handle.result)
    else:
        handle.finished.connect(done)
    return handle


def cmd_devices(app, controller: MobileController, args) -> int:
    result = _scan_devices(app, controller)
    if result is None or not result.ok:
        return EXIT_FAILED
    selected = controller.selected_device
    for d in controller.devices.devices:
        flag = "*" if d.id == selected else " "
        print(f"{flag} {d.label}")
    if not controller.devices.devices:
        print("No devices found")
    return EXIT_OK


def cmd_upload(app, controller: MobileController, args) -> int:
    if not _select(controller, args.playlist):
        return EXIT_FAILED

    scan = _scan_devices(app, controller)
    if scan is None or not scan.ok:
        return EXIT_FAILED
    if args.device and not controller.select_device(args.device):
        return EXIT_FAILED

    end_time = parse_end_time(args.end_time) if args.end_time else None
    outcome: list[int] = []

    def _finish(code: int) -> None:
        if not outcome:
            outcome.append(code)
            app.quit()

    def _on_state(session: UploadSession) -> None:
        if session.state is PipelineState.COMPLETED:
            # wait for the follow-up status query
            if not controller.supervisor.is_running(STATUS_SLOT):
                _finish(EXIT_OK)
        elif session.state is PipelineState.HALTED:
            _finish(EXIT_FAILED)

    controller.pipeline.state_changed.connect(_on_state)
    controller.pipeline.upload_failed.connect(lambda *_: _finish(EXIT_FAILED))
    controller.pipeline.upload_deferred.connect(lambda *_: _finish(EXIT_DEFERRED))

    def _on_status(text: str) -> None:
        print(text)
        _finish(EXIT_OK)

    controller.status_updated.connect(_on_status)
    controller.progress_changed.connect(
        lambda cur, total, phase: logger.info("%s: %d/%d", phase, cur, total)
    )

    halt = controller.config.halt_if_newer if args.halt_if_newer is None else args.halt_if_newer
    if not controller.upload(halt, end_time):
        return EXIT_FAILED
    if not outcome:
        app.exec()
    return outcome[0] if outcome else EXIT_FAILED


def cmd_retry(app, controller: MobileController, args) -> int:
    if not _select(controller, args.playlist):
        return EXIT_FAILED
    return exit_code_for(run_operation(app, lambda done: controller.retry(on_finished=done)))


def cmd_cleanup(app, controller: MobileController, args) -> int:
    if not _select(controller, args.playlist) and args.playlist:
        return EXIT_FAILED
    return exit_code_for(run_operation(app, lambda done: controller.cleanup(on_finished=done)))


def cmd_update_lastplayed(app, controller: MobileController, args) -> int:
    if not _select(controller, args.playlist):
        return EXIT_FAILED
    end_time = parse_end_time(args.end_time) if args.end_time else None
    return exit_code_for(run_operation(
        app, lambda done: controller.update_last_played(end_time, on_finished=done)
    ))


def cmd_refresh(app, controller: MobileController, args) -> int:
    return exit_code_for(run_operation(app, lambda done: controller.refresh_from_source(on_finished=done)))


def cmd_status(app, controller: MobileController, args) -> int:
    result = run_operation(app, lambda done: controller.refresh_status(on_finished=done))
    if controller.last_status is not None:
        print(controller.last_status)
    return exit_code_for(result)


def cmd_rate(app, controller: MobileController, args) -> int:
    runner = RatingRunner(controller.supervisor)
    runner.rate_error.connect(
        lambda path, stars, msg: controller.app_state.notify(f"Rating {path} failed: {msg}", "error")
    )
    runner.rate_deferred.connect(
        lambda path, stars: controller.app_state.notify(f"Rating {path} deferred, the backend will apply it later")
    )
    runner.rate_success.connect(
        lambda path, stars: controller.app_state.notify(f"Rated {path}: {stars} stars", "success")
    )
    try:
        return exit_code_for(run_operation(
            app, lambda done: _with_continuation(runner.rate(args.file, args.stars), done)
        ))
    except ValueError as e:
        controller.app_state.notify(str(e), "error")
        return EXIT_FAILED


def cmd_set_device(app, controller: MobileController, args) -> int:
    config = controller.config
    config.device_id = args.device_id
    set_config(controller.app_state.db, config)
    controller.app_state.notify(f"Default device set to {args.device_id or '(none)'}", "success")
    return EXIT_OK


# ----------------------------
# Parser
# ----------------------------

def _bool_flag(parser: argparse.ArgumentParser, name: str, help_text: str) -> None:
    dest = name.replace("-", "_")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(f"--{name}", dest=dest, action="store_true", default=None, help=help_text)
    group.add_argument(f"--no-{name}", dest=dest, action="store_false")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Sync musiclib playlists to a mobile device.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    parser.add_argument("--data-dir", help="Settings database directory.")
    parser.add_argument("--conf", help="Import settings from this musiclib.conf first.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("playlists", help="List playlists.")
    p.set_defaults(func=cmd_playlists)

    p = sub.add_parser("preview", help="Show the tracks of a playlist.")
    p.add_argument("playlist", nargs="?", help="Playlist path or name.")
    p.set_defaults(func=cmd_preview)

    p = sub.add_parser("devices", help="List KDE Connect devices.")
    p.set_defaults(func=cmd_devices)

    p = sub.add_parser("upload", help="Upload a playlist to the device.")
    p.add_argument("playlist", nargs="?", help="Playlist path or name.")
    p.add_argument("--device", help="Device id.")
    _bool_flag(p, "halt-if-newer", "Stop if Audacious has a newer copy of the playlist.")
    p.add_argument("--end-time", help='Listening end time, "MM/dd/yyyy HH:mm:ss".')
    p.set_defaults(func=cmd_upload)

    p = sub.add_parser("retry", help="Retry accounting for a playlist.")
    p.add_argument("playlist", nargs="?")
    p.set_defaults(func=cmd_retry)

    p = sub.add_parser("cleanup", help="Remove orphaned files from the mobile directory.")
    p.add_argument("playlist", nargs="?", help="Playlist to keep besides those with recovery markers.")
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("update-lastplayed", help="Update last-played times for a playlist.")
    p.add_argument("playlist", nargs="?")
    p.add_argument("--end-time", help='"MM/dd/yyyy HH:mm:ss".')
    p.set_defaults(func=cmd_update_lastplayed)

    p = sub.add_parser("refresh", help="Refresh playlists from Audacious.")
    p.set_defaults(func=cmd_refresh)

    p = sub.add_parser("status", help="Show mobile tracking status.")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("rate", help="Rate a track.")
    p.add_argument("file")
    p.add_argument("stars", type=int, choices=range(0, 6))
    p.set_defaults(func=cmd_rate)

    p = sub.add_parser("set-device", help="Remember a default device id.")
    p.add_argument("device_id")
    p.set_defaults(func=cmd_set_device)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    app = QCoreApplication.instance() or QCoreApplication([APP_NAME])
    QCoreApplication.setApplicationName(APP_NAME)

    app_state = init_app_state(args.data_dir, args.conf)
    app_state.notification.connect(_print_notification)
    for n in app_state.queued_notifications:
        app_state.notify(n.message, n.notify_type)
    app_state.queued_notifications.clear()

    controller = MobileController(app_state, app_state.config)
    controller.output_line.connect(print)

    try:
        return args.func(app, controller, args)
    except ValueError as e:
        # bad --end-time
        logger.error("%s", e)
        return EXIT_FAILED
    finally:
        controller.supervisor.shutdown()
        app_state.db.close()


if __name__ == "__main__":
    raise SystemExit(main())
