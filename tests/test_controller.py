from datetime import datetime

import pytest

from core.models import PipelineState
from core.state import AppState
from db.models import MobileConfig
from mobile.controller import STATUS_PLACEHOLDER, MobileController, status_text
from runner.supervisor import OperationResult, OutcomeKind

BACKEND = """\
echo "$*" >> "$(dirname "$0")/calls.log"
case "$1" in
  upload) echo "UPLOAD: [1/1] a.mp3" ;;
  status) echo "Current playlist: road" ;;
  retry) exec sleep 30 ;;
  refresh-audacious-only) touch "{playlists}/fresh.audpl" ;;
esac
"""


@pytest.fixture
def dirs(tmp_path):
    playlists = tmp_path / "playlists"
    mobile = playlists / "mobile"
    mobile.mkdir(parents=True)
    (playlists / "road.audpl").write_text("")
    (playlists / "mix.m3u").write_text("")
    return playlists, mobile


@pytest.fixture
def app_state(qapp):
    state = AppState()
    state.messages = []
    state.notification.connect(lambda n: state.messages.append((n.notify_type, n.message)))
    return state


@pytest.fixture
def controller(app_state, supervisor, dirs, make_script):
    playlists, mobile = dirs
    make_script("musiclib_mobile.sh", BACKEND.replace("{playlists}", str(playlists)))
    config = MobileConfig.defaults()
    config.playlists_dir = str(playlists)
    config.mobile_dir = str(mobile)
    c = MobileController(app_state, config, supervisor=supervisor)
    c.refresh_playlists()
    c.devices.apply_listing("- Phone: dev1 (paired and reachable)\n")
    return c


def test_status_text():
    def result(code, out="", err=""):
        kind = OutcomeKind.SUCCESS if code == 0 else OutcomeKind.EXTERNAL_FAILURE
        return OperationResult("status", kind, code, stdout=out, stderr=err)

    assert status_text(result(0, out="  all good \n")) == "all good"
    assert status_text(result(2, err="no config")) == "exit code 2: no config"
    assert status_text(result(2)) == "exit code 2"
    assert status_text(result(0)) == STATUS_PLACEHOLDER


def test_initial_selection(controller, dirs):
    playlists, _ = dirs
    assert [e.display_name for e in controller.catalog.entries] == ["mix", "road"]
    assert controller.selected_playlist.display_name == "mix"
    assert controller.select_playlist("road")
    assert controller.selected_playlist.path == str(playlists / "road.audpl")
    assert controller.selected_device == "dev1"


def test_unknown_selection_warns(controller, app_state):
    assert not controller.select_playlist("nope")
    assert not controller.select_device("nope")
    assert [kind for kind, _ in app_state.messages] == ["warning", "warning"]


def test_upload_of_m3u_is_rejected(controller, app_state):
    assert not controller.upload(halt_if_newer=False)
    assert app_state.messages[-1][0] == "warning"
    assert ".audpl" in app_state.messages[-1][1]


def test_completed_upload_refreshes_status(qtbot, controller, recorded_args):
    controller.select_playlist("road")

    with qtbot.waitSignal(controller.status_updated, timeout=5000) as blocker:
        assert controller.upload(halt_if_newer=False)

    assert controller.pipeline.session.state is PipelineState.COMPLETED
    assert blocker.args[0] == "Current playlist: road"
    assert controller.last_status == "Current playlist: road"
    assert [line.split()[0] for line in recorded_args()] == ["upload", "status"]


def test_retry_needs_a_recovery_marker(controller, app_state, recorded_args):
    controller.select_playlist("road")
    assert controller.retry() is None
    assert app_state.messages[-1][0] == "warning"
    assert "no recovery markers" in app_state.messages[-1][1]
    assert recorded_args() == []


def test_shared_slot_operations_exclude_each_other(qtbot, controller, app_state, dirs, recorded_args):
    _, mobile = dirs
    (mobile / "road.pending_tracks").write_text("")
    controller.select_playlist("road")
    handle = controller.retry()
    assert handle is not None and handle.running
    assert controller.busy

    assert controller.cleanup() is None
    assert controller.update_last_played() is None
    assert controller.refresh_from_source() is None
    assert not controller.upload(halt_if_newer=False)
    assert all(kind == "warning" for kind, _ in app_state.messages)

    qtbot.waitUntil(lambda: recorded_args(), timeout=5000)
    with qtbot.waitSignal(handle.finished, timeout=5000):
        assert controller.cancel()
    assert recorded_args() == ["retry road"]


def test_update_last_played_arguments(qtbot, controller, recorded_args):
    controller.select_playlist("road")
    results = []
    with qtbot.waitSignal(controller.supervisor.operation_finished, timeout=5000):
        controller.update_last_played(datetime(2026, 3, 4, 21, 0, 0), on_finished=results.append)

    assert results[0].ok
    assert recorded_args() == ["update-lastplayed road --non-interactive --end-time 03/04/2026 21:00:00"]


def test_refresh_from_source_rescans_catalog(qtbot, controller):
    with qtbot.waitSignal(controller.playlists_changed, timeout=5000) as blocker:
        controller.refresh_from_source()
    assert "fresh" in [e.display_name for e in blocker.args[0]]
