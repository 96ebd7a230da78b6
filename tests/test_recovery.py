import pytest

from core.models import MarkerKind, RecoveryMarker
from mobile.recovery import RecoveryTracker, scan_markers
from runner.supervisor import OutcomeKind


@pytest.fixture
def mobile_dir(tmp_path):
    d = tmp_path / "mobile"
    d.mkdir()
    return d


@pytest.fixture
def tracker(qapp, supervisor, mobile_dir):
    return RecoveryTracker(supervisor, str(mobile_dir))


def test_scan_markers(mobile_dir):
    for name in ["workout.pending_tracks", "road.trip.failed", "workout.meta", "current_playlist", ".failed"]:
        (mobile_dir / name).write_text("")

    assert scan_markers(str(mobile_dir)) == {
        RecoveryMarker("workout", MarkerKind.PENDING),
        RecoveryMarker("road.trip", MarkerKind.FAILED),
    }


def test_scan_missing_directory(tmp_path):
    assert scan_markers(str(tmp_path / "nope")) == set()


def test_rescan_reports_changes(qtbot, tracker, mobile_dir):
    assert not tracker.has_recovery()

    (mobile_dir / "workout.failed").write_text("")
    with qtbot.waitSignal(tracker.markers_changed, timeout=1000) as blocker:
        tracker.rescan()
    assert blocker.args[0] == {RecoveryMarker("workout", MarkerKind.FAILED)}
    assert tracker.has_recovery()
    assert tracker.markers_for("workout") == {RecoveryMarker("workout", MarkerKind.FAILED)}
    assert tracker.markers_for("other") == set()

    with qtbot.assertNotEmitted(tracker.markers_changed):
        tracker.rescan()


def test_preserved_names(tracker, mobile_dir):
    (mobile_dir / "a.pending_tracks").write_text("")
    (mobile_dir / "b.failed").write_text("")
    tracker.rescan()

    assert tracker.preserved_names("selected") == {"a", "b", "selected"}
    assert tracker.preserved_names(None) == {"a", "b"}


def test_retry_runs_accounting(qtbot, tracker, make_script, mobile_dir, recorded_args):
    (mobile_dir / "workout.pending_tracks").write_text("")
    make_script(
        "musiclib_mobile.sh",
        'echo "$*" >> "$(dirname "$0")/calls.log"\n'
        'echo "ACCOUNTING: Track 1/1: a.mp3"\n'
        f'rm -f "{mobile_dir}/workout.pending_tracks"',
    )
    progress = []
    tracker.progress_changed.connect(lambda cur, total, phase: progress.append((cur, total)))

    with qtbot.waitSignal(tracker.retry_finished, timeout=5000) as blocker:
        tracker.retry("workout")

    assert blocker.args[0].kind is OutcomeKind.SUCCESS
    assert recorded_args() == ["retry workout"]
    assert progress == [(1, 1)]
    assert not tracker.has_recovery()


def test_cleanup_keeps_selected_and_marked(qtbot, tracker, make_script, mobile_dir, recorded_args):
    (mobile_dir / "b.failed").write_text("")
    (mobile_dir / "a.pending_tracks").write_text("")
    make_script("musiclib_mobile.sh", 'echo "$*" >> "$(dirname "$0")/calls.log"')
    errors = []
    tracker.error.connect(errors.append)

    with qtbot.waitSignal(tracker.cleanup_finished, timeout=5000):
        tracker.cleanup("current")

    assert recorded_args() == ["cleanup --keep a --keep b --keep current"]
    assert errors == []


def test_cleanup_losing_a_marker_is_an_error(qtbot, tracker, make_script, mobile_dir):
    (mobile_dir / "a.pending_tracks").write_text("")
    make_script("musiclib_mobile.sh", f'rm -f "{mobile_dir}"/*.pending_tracks')
    errors = []
    tracker.error.connect(errors.append)

    with qtbot.waitSignal(tracker.cleanup_finished, timeout=5000):
        tracker.cleanup(None)

    assert len(errors) == 1
    assert "a.pending_tracks" in errors[0]
