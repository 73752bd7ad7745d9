import threading
import time

import numpy as np
import pytest
import yaml

from iiwa_control.__main__ import main
from iiwa_control.config import ConfigurationError, config_from_dict
from iiwa_control.ik_loop import ControlPhase
from iiwa_control.kinematic_model import ModelLoadFailure
from iiwa_control.supervisor import Supervisor
from iiwa_control.transport import SimulatedArm, simulated_transport
from iiwa_control.trigger import AutoTrigger, StartTrigger

from conftest import IIWA_REFERENCE, RecordingPoseSink


def _wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _fast_config(**overrides):
    data = {
        "initial_positioning": {"settle_s": 0.0, "poll_hz": 50.0},
        "simulation": {"rate_hz": 200.0, "time_constant_s": 0.02},
    }
    data.update(overrides)
    return config_from_dict(data)


class TestSimulatedArm:

    def test_follows_setpoints(self):
        received = []
        arm = SimulatedArm(3, rate_hz=200.0, time_constant_s=0.02, extra_values=2)
        arm.start(received.append)
        try:
            arm.publish([0.5, -0.5, 1.0])
            assert _wait_until(lambda: np.allclose(arm.positions, [0.5, -0.5, 1.0], atol=1e-3), timeout=3.0)
        finally:
            arm.stop()
        assert len(received[-1]) == 5
        assert np.array_equal(arm.setpoints, [0.5, -0.5, 1.0])

    def test_rejects_bad_time_constant(self):
        with pytest.raises(ValueError):
            SimulatedArm(3, time_constant_s=0.0)


def test_end_to_end_with_simulated_arm():
    config = _fast_config()
    pose_sink = RecordingPoseSink()
    transport = simulated_transport(7, trigger=AutoTrigger(), pose_sink=pose_sink,
                                    rate_hz=200.0, time_constant_s=0.02)
    supervisor = Supervisor.from_config(config, transport, record=True)
    with supervisor:
        assert _wait_until(lambda: supervisor.ik_loop.phase is ControlPhase.TRACKING)
        assert _wait_until(lambda: supervisor.ik_loop.tracking_cycles >= 50)
        assert supervisor.failure is None
        assert supervisor.state.tracking_active
        assert supervisor.state.elapsed > 0.0

    assert not supervisor.fk_loop.is_running
    assert not supervisor.ik_loop.is_running
    assert not transport.source.is_running
    assert len(pose_sink.poses) > 0
    assert len(supervisor.recorder) == supervisor.ik_loop.tracking_cycles


def test_positioning_reaches_reference_before_tracking():
    config = _fast_config()
    trigger = StartTrigger()
    transport = simulated_transport(7, trigger=trigger, rate_hz=200.0, time_constant_s=0.02)
    supervisor = Supervisor.from_config(config, transport)
    supervisor.start()
    try:
        assert _wait_until(lambda: supervisor.ik_loop.phase is ControlPhase.WAIT_FOR_TRIGGER)
        measured = supervisor.state.get_measurement()
        assert np.max(np.abs(measured - IIWA_REFERENCE)) < 0.01
        # trajectory clock frozen until the trigger fires
        time.sleep(0.1)
        assert supervisor.state.elapsed == 0.0
        assert supervisor.ik_loop.tracking_cycles == 0
    finally:
        supervisor.stop()


def test_run_forever_honours_duration():
    transport = simulated_transport(7, trigger=AutoTrigger(), rate_hz=200.0, time_constant_s=0.02)
    supervisor = Supervisor.from_config(_fast_config(), transport)
    t0 = time.monotonic()
    supervisor.run_forever(duration_s=0.5, install_signal_handlers=False)
    assert time.monotonic() - t0 < 5.0
    assert not supervisor.fk_loop.is_running


def test_request_shutdown_from_another_thread():
    transport = simulated_transport(7, trigger=StartTrigger(), rate_hz=200.0, time_constant_s=0.02)
    supervisor = Supervisor.from_config(_fast_config(), transport)
    threading.Timer(0.3, supervisor.request_shutdown).start()
    supervisor.run_forever(install_signal_handlers=False)
    assert not supervisor.ik_loop.is_running


def test_model_load_failure_propagates(tmp_path):
    config = config_from_dict({"robot": {"description": str(tmp_path / "missing.yaml")}})
    transport = simulated_transport(7)
    with pytest.raises(ModelLoadFailure):
        Supervisor.from_config(config, transport)


def test_reference_length_mismatch():
    config = config_from_dict({"initial_positioning": {"reference": [0.0, 1.0]}})
    with pytest.raises(ConfigurationError, match="has 7 joints"):
        Supervisor.from_config(config, simulated_transport(7))


def test_transport_channel_mismatch():
    with pytest.raises(ConfigurationError, match="6 joint channels"):
        Supervisor.from_config(_fast_config(), simulated_transport(6))


class TestCli:

    def test_reference_not_matching_chain_exits_2(self, tmp_path):
        p = tmp_path / "cfg.yaml"
        p.write_text(yaml.safe_dump({
            "robot": {"description": str(_packaged_description())},
            "initial_positioning": {"reference": [0.0, 1.57, 0.0]},
        }))
        assert main(["--config", str(p), "--sim", "--auto-start"]) == 2

    def test_bad_config_exits_2(self, tmp_path):
        p = tmp_path / "bad.yaml"
        p.write_text(yaml.safe_dump({"rates": {"fk_hz": -1.0}}))
        assert main(["--config", str(p)]) == 2

    def test_bad_model_exits_1(self, tmp_path):
        p = tmp_path / "cfg.yaml"
        p.write_text(yaml.safe_dump({"robot": {"tip_frame": "no_such_link"}, "initial_positioning": {}}))
        # description is resolved next to this config file
        (tmp_path / "lbr_iiwa.yaml").write_text("joints: []\n")
        assert main(["--config", str(p), "--sim"]) == 1

    def test_sim_run_with_recording(self, tmp_path):
        cfg = tmp_path / "cfg.yaml"
        cfg.write_text(yaml.safe_dump({
            "robot": {"description": str(_packaged_description())},
            "initial_positioning": {"settle_s": 0.0, "poll_hz": 50.0},
            "simulation": {"rate_hz": 200.0, "time_constant_s": 0.02},
        }))
        out = tmp_path / "tracking.csv"
        assert main(["--config", str(cfg), "--sim", "--auto-start", "--duration", "2.0",
                     "--record", str(out)]) == 0
        assert out.exists()


def _packaged_description():
    from iiwa_control.config import CONFIG_DIR
    return CONFIG_DIR / "lbr_iiwa.yaml"
