"""
Command line entry point.

    python -m iiwa_control --sim --auto-start --duration 30 --record tracking.csv
"""

import argparse
import logging
from typing import List

from .config import ConfigurationError, load_config
from .kinematic_model import ModelLoadFailure
from .supervisor import Supervisor
from .transport import LoggingPoseSink, simulated_transport
from .trigger import AutoTrigger, ConsoleTrigger
from .udp_bridge import udp_transport

logger = logging.getLogger("iiwa_control")


def _setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # numba's debug output drowns everything else
    logging.getLogger("numba").setLevel(logging.WARNING)
    if debug:
        logging.getLogger("iiwa_control").setLevel(logging.DEBUG)


def _parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m iiwa_control",
        description="Cartesian circle tracking for a 7-DOF KUKA LBR iiwa (FK/IK control loops).",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to control_config.yaml (default: the packaged one).",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--sim",
        action="store_true",
        help="Run against the in-process simulated arm (default).",
    )
    mode.add_argument(
        "--udp",
        action="store_true",
        help="Exchange joint states, commands and poses over UDP.",
    )
    parser.add_argument(
        "--auto-start",
        action="store_true",
        help="Start tracking right after initial positioning instead of waiting for Enter.",
    )
    parser.add_argument(
        "--record",
        type=str,
        default=None,
        metavar="CSV",
        help="Record tracking data and save it to this CSV file on shutdown.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        metavar="S",
        help="Stop after this many seconds (default: run until Ctrl+C).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose logging.",
    )
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = _parse_args(argv)
    _setup_logging(args.debug)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2

    trigger = AutoTrigger() if args.auto_start else ConsoleTrigger()
    # Supervisor.from_config checks this against the loaded chain
    n_joints = len(config.initial_positioning.reference)

    try:
        if args.udp:
            transport = udp_transport(config.udp, n_joints, trigger)
        else:
            sim = config.simulation
            transport = simulated_transport(
                n_joints, trigger=trigger, pose_sink=LoggingPoseSink(),
                rate_hz=sim.rate_hz, time_constant_s=sim.time_constant_s, extra_values=sim.extra_values,
            )
    except OSError as e:
        logger.error("Could not open transport: %s", e)
        return 1

    logger.info("=" * 60)
    logger.info("  IIWA CARTESIAN CONTROLLER (%s)", "UDP" if args.udp else "SIMULATION")
    logger.info("=" * 60)

    try:
        supervisor = Supervisor.from_config(config, transport, record=args.record is not None)
    except ModelLoadFailure as e:
        logger.error("Failed to load the kinematic model: %s", e)
        transport.close()
        return 1
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        transport.close()
        return 2

    supervisor.run_forever(duration_s=args.duration)

    if supervisor.recorder is not None:
        summary = supervisor.recorder.summary()
        logger.info("Tracking summary: %d samples, max error %.4f m, mean error %.4f m, converged %.1f%%",
                    summary["samples"], summary["max_tracking_error"], summary["mean_tracking_error"],
                    100.0 * summary["convergence_ratio"])
        supervisor.recorder.save(args.record)

    if supervisor.failure is not None:
        return 1
    logger.info("Done.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
