from datetime import datetime

import pytest

from core.models import GateResult, PipelineState
from mobile.pipeline import PHASE_COMPLETE, PHASE_STARTING, UploadPipeline

UPLOAD_OUTPUT = """\
echo "Preparing upload"
echo "ACCOUNTING: Track 1/2: a.mp3"
echo "ACCOUNTING: Track 2/2: b.mp3"
echo "some chatter"
echo "UPLOAD: [1/3] a.mp3"
echo "UPLOAD: [3/3] c.mp3"
echo "UPLOAD: Complete"
"""


@pytest.fixture
def backend(make_script):
    def _backend(check: str = "STATUS:current", upload: str = UPLOAD_OUTPUT):
        make_script(
            "musiclib_mobile.sh",
            'echo "$*" >> "$(dirname "$0")/calls.log"\n'
            'case "$1" in\n'
            f'  check-update) echo "{check}" ;;\n'
            f'  upload)\n{upload}\n  ;;\n'
            'esac',
        )
    return _backend


@pytest.fixture
def pipeline(qapp, supervisor):
    p = UploadPipeline(supervisor)
    p.states = []
    p.state_changed.connect(lambda session: p.states.append(session.state))
    p.progress = []
    p.progress_changed.connect(lambda cur, total, label: p.progress.append((cur, total, label)))
    return p


@pytest.fixture
def playlist(tmp_path):
    return str(tmp_path / "road.audpl")


def _wait_terminal(qtbot, pipeline):
    qtbot.waitUntil(lambda: pipeline.session.state.terminal, timeout=5000)


def test_upload_without_update_check(qtbot, backend, pipeline, playlist, recorded_args):
    backend(check="STATUS:newer")
    completed = []
    pipeline.upload_completed.connect(lambda name, count: completed.append((name, count)))

    assert pipeline.request_upload(playlist, "dev1", halt_if_newer=False)
    _wait_terminal(qtbot, pipeline)

    session = pipeline.session
    assert session.state is PipelineState.COMPLETED
    assert pipeline.states == [PipelineState.UPLOADING, PipelineState.COMPLETED]
    assert recorded_args() == [f"upload {playlist} dev1 --non-interactive"]
    assert pipeline.progress == [
        (0, 0, PHASE_STARTING),
        (1, 2, "Accounting"),
        (2, 2, "Accounting"),
        (1, 3, "Uploading"),
        (3, 3, "Uploading"),
        (3, 3, PHASE_COMPLETE),
    ]
    assert (session.progress_current, session.progress_total) == (3, 3)
    assert "some chatter" in session.log
    assert "UPLOAD: Complete" in session.log
    assert completed == [("road", 3)]


def test_end_time_is_forwarded(qtbot, backend, pipeline, playlist, recorded_args):
    backend()
    pipeline.request_upload(playlist, "dev1", False, datetime(2026, 1, 2, 3, 4, 5))
    _wait_terminal(qtbot, pipeline)
    assert recorded_args() == [f"upload {playlist} dev1 --non-interactive --end-time 01/02/2026 03:04:05"]


@pytest.mark.parametrize("status, verdict", [
    ("STATUS:newer", GateResult.NEWER),
    ("STATUS:new", GateResult.NEW),
])
def test_stale_playlist_halts(qtbot, backend, pipeline, playlist, recorded_args, status, verdict):
    backend(check=status)
    halted = []
    pipeline.halted.connect(lambda name, result: halted.append((name, result)))

    assert pipeline.request_upload(playlist, "dev1", halt_if_newer=True)
    _wait_terminal(qtbot, pipeline)

    assert pipeline.session.state is PipelineState.HALTED
    assert pipeline.states == [PipelineState.CHECKING_UPDATE, PipelineState.HALTED]
    assert halted == [("road", verdict)]
    assert recorded_args() == ["check-update road"]

    # no automatic retry
    qtbot.wait(200)
    assert recorded_args() == ["check-update road"]


def test_clear_gate_continues_to_upload(qtbot, backend, pipeline, playlist, recorded_args):
    backend(check="STATUS:current")
    pipeline.request_upload(playlist, "dev1", halt_if_newer=True)
    _wait_terminal(qtbot, pipeline)

    assert pipeline.session.state is PipelineState.COMPLETED
    assert pipeline.states == [
        PipelineState.CHECKING_UPDATE,
        PipelineState.UPLOADING,
        PipelineState.COMPLETED,
    ]
    assert recorded_args() == ["check-update road", f"upload {playlist} dev1 --non-interactive"]


def test_cancel_during_update_check_stops_session(qtbot, make_script, pipeline, playlist, recorded_args):
    make_script(
        "musiclib_mobile.sh",
        'echo "$*" >> "$(dirname "$0")/calls.log"\n'
        'case "$1" in\n'
        '  check-update) exec sleep 30 ;;\n'
        'esac',
    )
    failures = []
    pipeline.upload_failed.connect(lambda name, diag: failures.append((name, diag)))

    assert pipeline.request_upload(playlist, "dev1", halt_if_newer=True)
    qtbot.waitUntil(lambda: recorded_args(), timeout=5000)
    assert pipeline.cancel()
    _wait_terminal(qtbot, pipeline)

    assert pipeline.session.state is PipelineState.FAILED
    assert pipeline.states == [PipelineState.CHECKING_UPDATE, PipelineState.FAILED]
    assert failures == [("road", "cancelled")]
    qtbot.wait(200)
    assert recorded_args() == ["check-update road"]


def test_failed_upload(qtbot, backend, pipeline, playlist):
    backend(upload='echo "UPLOAD: [1/4] a.mp3"\necho "device unreachable" >&2\nexit 1')
    errors, failures = [], []
    pipeline.error_line.connect(errors.append)
    pipeline.upload_failed.connect(lambda name, diag: failures.append(name))

    pipeline.request_upload(playlist, "dev1", False)
    _wait_terminal(qtbot, pipeline)

    assert pipeline.session.state is PipelineState.FAILED
    assert errors == ["device unreachable"]
    assert failures == ["road"]
    assert (pipeline.session.progress_current, pipeline.session.progress_total) == (1, 4)


def test_deferred_upload_is_not_an_error(qtbot, backend, pipeline, playlist):
    backend(upload="exit 3")
    deferred, failures = [], []
    pipeline.upload_deferred.connect(deferred.append)
    pipeline.upload_failed.connect(lambda name, diag: failures.append(name))

    pipeline.request_upload(playlist, "dev1", False)
    _wait_terminal(qtbot, pipeline)

    assert pipeline.session.state is PipelineState.FAILED
    assert deferred == ["road"]
    assert failures == []


def test_second_request_rejected_while_uploading(qtbot, backend, pipeline, playlist, recorded_args):
    backend(upload="exec sleep 30")
    rejected = []
    pipeline.rejected.connect(rejected.append)

    assert pipeline.request_upload(playlist, "dev1", False)
    first = pipeline.session
    assert pipeline.busy

    assert not pipeline.request_upload(playlist, "dev2", False)
    assert pipeline.session is first
    assert len(rejected) == 1

    qtbot.waitUntil(lambda: recorded_args(), timeout=5000)
    assert pipeline.cancel()
    _wait_terminal(qtbot, pipeline)
    assert first.state is PipelineState.FAILED
    assert len(recorded_args()) == 1


def test_rejects_unsupported_format_and_missing_device(qapp, pipeline, tmp_path):
    assert not pipeline.request_upload(str(tmp_path / "mix.m3u"), "dev1", False)
    assert not pipeline.request_upload(str(tmp_path / "road.audpl"), None, False)
    assert not pipeline.request_upload(str(tmp_path / "road.audpl"), "", False)
    assert pipeline.session is None


def test_missing_backend_fails(qapp, pipeline, playlist):
    assert pipeline.request_upload(playlist, "dev1", halt_if_newer=True)
    assert pipeline.session.state is PipelineState.FAILED
    assert any("musiclib_mobile.sh" in line for line in pipeline.session.log)
