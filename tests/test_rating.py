import pytest

from runner.rating import RatingRunner


@pytest.fixture
def runner(qapp, supervisor):
    return RatingRunner(supervisor)


def _collect(runner):
    seen = []
    runner.rate_success.connect(lambda path, stars: seen.append(("success", stars)))
    runner.rate_deferred.connect(lambda path, stars: seen.append(("deferred", stars)))
    runner.rate_error.connect(lambda path, stars, msg: seen.append(("error", msg)))
    return seen


def test_rate_success(qtbot, runner, make_script, recorded_args):
    make_script("musiclib_rate.sh", 'echo "$*" >> "$(dirname "$0")/calls.log"')
    seen = _collect(runner)
    with qtbot.waitSignal(runner.rate_success, timeout=5000):
        runner.rate("/music/a.mp3", 4)
    assert seen == [("success", 4)]
    assert recorded_args() == ["/music/a.mp3 4"]


def test_exit_3_is_deferred_not_error(qtbot, runner, make_script):
    make_script("musiclib_rate.sh", "exit 3")
    seen = _collect(runner)
    with qtbot.waitSignal(runner.rate_deferred, timeout=5000):
        runner.rate("/music/a.mp3", 2)
    assert seen == [("deferred", 2)]


def test_failure_is_error_not_deferred(qtbot, runner, make_script):
    make_script("musiclib_rate.sh", "echo 'no such track' >&2\nexit 1")
    seen = _collect(runner)
    with qtbot.waitSignal(runner.rate_error, timeout=5000):
        runner.rate("/music/a.mp3", 5)
    assert seen == [("error", "no such track")]


def test_missing_script_is_error(qtbot, runner):
    seen = _collect(runner)
    runner.rate("/music/a.mp3", 1)
    assert len(seen) == 1 and seen[0][0] == "error"


@pytest.mark.parametrize("stars", [-1, 6])
def test_invalid_rating(runner, stars):
    with pytest.raises(ValueError):
        runner.rate("/music/a.mp3", stars)
