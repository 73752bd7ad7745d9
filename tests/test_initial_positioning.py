import threading

import numpy as np
import pytest

from iiwa_control.initial_positioning import InitialPositioningController, PositioningState
from iiwa_control.shared_state import SharedControlState

from conftest import IIWA_REFERENCE


def _controller(command_sink, **kwargs):
    state = SharedControlState(7)
    return state, InitialPositioningController(state, command_sink, IIWA_REFERENCE, **kwargs)


def test_without_measurement_keeps_commanding(command_sink):
    _, ctrl = _controller(command_sink)
    assert ctrl.step() == float("inf")
    assert ctrl.status is PositioningState.RUNNING
    assert np.array_equal(command_sink.commands[-1], IIWA_REFERENCE)
    # one message per joint channel
    assert [i for i, _ in command_sink.messages] == list(range(7))


def test_one_joint_at_threshold_blocks_convergence(command_sink):
    state, ctrl = _controller(command_sink)
    measured = np.array(IIWA_REFERENCE)
    measured[2] += 0.002
    state.set_measurement(measured)
    assert ctrl.step() == pytest.approx(0.002)
    assert ctrl.status is PositioningState.RUNNING


def test_all_joints_within_threshold_converges(command_sink):
    state, ctrl = _controller(command_sink)
    state.set_measurement(np.array(IIWA_REFERENCE) + 0.0015)
    ctrl.step()
    assert ctrl.status is PositioningState.CONVERGED


def test_run_returns_after_settle(command_sink):
    state, ctrl = _controller(command_sink, poll_hz=100.0, settle_s=0.0)
    state.set_measurement(IIWA_REFERENCE)
    assert ctrl.run(threading.Event())
    assert ctrl.cycles == 1


def test_run_waits_until_joints_arrive(command_sink):
    state, ctrl = _controller(command_sink, poll_hz=100.0, settle_s=0.0)
    state.set_measurement(np.zeros(7))
    timer = threading.Timer(0.1, state.set_measurement, args=(IIWA_REFERENCE,))
    timer.start()
    assert ctrl.run(threading.Event())
    timer.join()
    assert ctrl.cycles > 1
    assert ctrl.last_max_error < 0.002


def test_run_interrupted_by_stop(command_sink):
    state, ctrl = _controller(command_sink, poll_hz=100.0)
    state.set_measurement(np.zeros(7))
    stop = threading.Event()
    threading.Timer(0.1, stop.set).start()
    assert not ctrl.run(stop)
    assert ctrl.status is PositioningState.RUNNING


def test_reference_length_checked(command_sink):
    with pytest.raises(ValueError):
        InitialPositioningController(SharedControlState(7), command_sink, [0.0] * 6)
