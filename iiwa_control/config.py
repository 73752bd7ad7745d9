"""
Controller configuration. General configs are loaded from
configuration_files/control_config.yaml; any section left out uses the
defaults below.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .kinematic_solver import SolverParameters

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).parent / "configuration_files"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "control_config.yaml"


class ConfigurationError(ValueError):
    pass


@dataclass
class RobotConfig:
    description: str = "lbr_iiwa.yaml"  # relative paths resolve against the config file directory
    base_frame: str = "lbr_iiwa_link_0"
    tip_frame: str = "lbr_iiwa_link_7"


@dataclass
class RateConfig:
    fk_hz: float = 50.0
    ik_rate_multiplier: float = 4.0  # IK loop runs at fk_hz * multiplier
    enable_perf_tracking: bool = True

    @property
    def ik_hz(self) -> float:
        return self.fk_hz * self.ik_rate_multiplier


@dataclass
class SolverConfig:
    max_iterations: int = 100
    tolerance: float = 1e-6
    min_singular_value: float = 1e-5

    def to_parameters(self) -> SolverParameters:
        return SolverParameters(
            max_iterations=self.max_iterations,
            tolerance=self.tolerance,
            min_singular_value=self.min_singular_value,
        )


@dataclass
class TrajectoryConfig:
    radius: float = 0.3
    height: float = 1.0
    angular_rate: Optional[float] = None  # None: 1/(2*pi) rad per second of trajectory clock
    hold_start_orientation: bool = False


@dataclass
class PositioningConfig:
    reference: List[float] = field(default_factory=lambda: [0.0, 1.57, 0.0, 1.57, 0.0, 0.0, 0.0])
    threshold: float = 0.002  # rad, max over all joints
    poll_hz: float = 10.0
    settle_s: float = 2.0


@dataclass
class SafetyConfig:
    measurement_timeout_s: float = 0.5  # FK loop warns when joint states get older than this
    on_no_convergence: str = "publish_solver_output"  # or "hold_last_good"


@dataclass
class SimulationConfig:
    rate_hz: float = 100.0
    time_constant_s: float = 0.05
    extra_values: int = 0  # trailing joint_state entries the arm does not use


@dataclass
class UdpConfig:
    bind_host: str = "0.0.0.0"
    measurement_port: int = 8100
    remote_host: str = "127.0.0.1"
    command_port: int = 8200  # joint i -> command_port + i
    pose_port: int = 8300
    max_age_s: float = 0.5
    hmac_key: str = ""


@dataclass
class ControlConfig:
    robot: RobotConfig = field(default_factory=RobotConfig)
    rates: RateConfig = field(default_factory=RateConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    trajectory: TrajectoryConfig = field(default_factory=TrajectoryConfig)
    initial_positioning: PositioningConfig = field(default_factory=PositioningConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    udp: UdpConfig = field(default_factory=UdpConfig)

    source_path: Optional[Path] = None

    def description_path(self) -> Path:
        p = Path(self.robot.description)
        if p.is_absolute():
            return p
        base = self.source_path.parent if self.source_path is not None else CONFIG_DIR
        return base / p


_SECTIONS = {f.name: f.default_factory for f in dataclasses.fields(ControlConfig)
             if f.name != "source_path"}


def _coerce(value: Any, annotation: Any, where: str) -> Any:
    if annotation is bool:
        if not isinstance(value, bool):
            raise ConfigurationError(f"{where}: expected true/false, got {value!r}")
        return value
    if annotation is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"{where}: expected an integer, got {value!r}")
        return value
    if annotation is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{where}: expected a number, got {value!r}")
        return float(value)
    if annotation is str:
        if not isinstance(value, str):
            raise ConfigurationError(f"{where}: expected a string, got {value!r}")
        return value
    if annotation == Optional[float]:
        return None if value is None else _coerce(value, float, where)
    if annotation == List[float]:
        if not isinstance(value, (list, tuple)):
            raise ConfigurationError(f"{where}: expected a list of numbers, got {value!r}")
        return [_coerce(v, float, f"{where}[{i}]") for i, v in enumerate(value)]
    raise ConfigurationError(f"{where}: unsupported option type {annotation!r}")


def _section(name: str, data: Any):
    factory = _SECTIONS[name]
    if data is None:
        return factory()
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Section '{name}' must be a mapping")
    cls = type(factory())
    known = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigurationError(f"Unknown option(s) in '{name}': {', '.join(map(str, unknown))}")
    kwargs = {key: _coerce(value, known[key].type, f"{name}.{key}") for key, value in data.items()}
    return cls(**kwargs)


def _validate(config: ControlConfig) -> None:
    if config.rates.fk_hz <= 0:
        raise ConfigurationError("rates.fk_hz must be positive")
    if config.rates.ik_rate_multiplier <= 0:
        raise ConfigurationError("rates.ik_rate_multiplier must be positive")
    if config.initial_positioning.threshold <= 0:
        raise ConfigurationError("initial_positioning.threshold must be positive")
    if config.initial_positioning.poll_hz <= 0:
        raise ConfigurationError("initial_positioning.poll_hz must be positive")
    if config.initial_positioning.settle_s < 0:
        raise ConfigurationError("initial_positioning.settle_s must be >= 0")
    if config.safety.on_no_convergence not in ("publish_solver_output", "hold_last_good"):
        raise ConfigurationError(
            f"safety.on_no_convergence must be 'publish_solver_output' or 'hold_last_good', "
            f"got {config.safety.on_no_convergence!r}")
    if config.simulation.rate_hz <= 0 or config.simulation.time_constant_s <= 0:
        raise ConfigurationError("simulation.rate_hz and simulation.time_constant_s must be positive")
    try:
        config.solver.to_parameters()
    except ValueError as e:
        raise ConfigurationError(f"solver: {e}") from e


def config_from_dict(data: Optional[Mapping[str, Any]], source_path: Optional[Path] = None) -> ControlConfig:
    data = data or {}
    if not isinstance(data, Mapping):
        raise ConfigurationError("Configuration root must be a mapping")
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ConfigurationError(f"Unknown configuration section(s): {', '.join(map(str, unknown))}")
    sections = {name: _section(name, data.get(name)) for name in _SECTIONS}
    config = ControlConfig(source_path=source_path, **sections)
    _validate(config)
    return config


def load_config(path: Optional[Union[str, Path]] = None) -> ControlConfig:
    """Load control configuration YAML file (the packaged default if path is None)."""
    p = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    try:
        with p.open('r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration '{p}': {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in '{p}': {e}") from e
    config = config_from_dict(data, source_path=p.resolve())
    logger.debug("Loaded configuration from %s", p)
    return config


def config_as_dict(config: ControlConfig) -> Dict[str, Any]:
    return {name: dataclasses.asdict(getattr(config, name)) for name in _SECTIONS}

