import pytest

from agent.tool_orchestration.doom_loop import DoomLoopDetector, canonicalize_args
from agent.tool_orchestration.errors import ConfigurationError


def test_three_identical_calls_trip_on_the_third():
    detector = DoomLoopDetector(3)

    results = [detector.check("t", {"x": 1}) for _ in range(3)]

    assert results == [False, False, True]
    assert detector.call_count == 3


def test_key_order_does_not_affect_equality():
    detector = DoomLoopDetector(2)

    assert detector.check("move_clip", {"a": 1, "b": {"c": 2, "d": [1, 2]}}) is False
    assert detector.check("move_clip", {"b": {"d": [1, 2], "c": 2}, "a": 1}) is True


def test_integral_floats_equal_their_int_form():
    detector = DoomLoopDetector(2)

    assert detector.check("move_clip", {"newTimelineIn": 5, "clip": {"t": [1]}}) is False
    assert detector.check("move_clip", {"newTimelineIn": 5.0, "clip": {"t": [1.0]}}) is True
    assert canonicalize_args({"x": 1.5}) != canonicalize_args({"x": 1})


def test_canonicalize_args_is_recursive_and_keeps_list_order():
    assert canonicalize_args({"b": {"y": 1, "x": 2}, "a": 0}) == canonicalize_args(
        {"a": 0, "b": {"x": 2, "y": 1}}
    )
    assert canonicalize_args({"a": [1, 2]}) != canonicalize_args({"a": [2, 1]})
    assert canonicalize_args(None) == canonicalize_args({})


def test_different_tool_name_is_a_different_call():
    detector = DoomLoopDetector(2)

    assert detector.check("a", {"x": 1}) is False
    assert detector.check("b", {"x": 1}) is False


def test_differing_call_restarts_run_at_one():
    detector = DoomLoopDetector(3)

    assert detector.check("a", {}) is False
    assert detector.check("a", {}) is False
    assert detector.check("b", {}) is False
    assert detector.consecutive_count == 1
    assert detector.check("a", {}) is False
    assert detector.check("a", {}) is False
    assert detector.check("a", {}) is True


def test_interleaved_repeats_do_not_remember_earlier_runs():
    detector = DoomLoopDetector(3)

    results = [detector.check(name, {}) for name in ["a", "a", "b", "b"]]
    assert results == [False, False, False, False]

    # The first "a" run does not count toward a later one.
    assert detector.check("a", {}) is False


def test_run_keeps_tripping_once_threshold_is_reached():
    detector = DoomLoopDetector(2)

    results = [detector.check("t", {"x": 1}) for _ in range(4)]

    assert results == [False, True, True, True]


def test_reset_clears_history_and_count():
    detector = DoomLoopDetector(2)
    detector.check("t", {})
    detector.check("t", {})

    detector.reset()

    assert detector.call_count == 0
    assert detector.history == []
    assert detector.check("t", {}) is False


@pytest.mark.parametrize("threshold", [0, 1, -3, 2.5, True])
def test_invalid_threshold_raises_configuration_error(threshold):
    with pytest.raises(ConfigurationError) as exc_info:
        DoomLoopDetector(threshold)

    assert exc_info.value.invalid_field == "threshold"
