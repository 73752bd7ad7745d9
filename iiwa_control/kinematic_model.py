"""
Kinematic chain model.

Builds an immutable base->tip chain from a robot description. The description
is a plain mapping (loaded from YAML, or converted from URDF XML):

    links:  [name, ...]
    joints:
      - name: joint_1
        type: revolute            # revolute | continuous | prismatic | fixed
        parent: link_0
        child: link_1
        origin: {xyz: [0, 0, 0.1575], rpy: [0, 0, 0]}
        axis: [0, 0, 1]
        limit: {lower: -2.96, upper: 2.96}

Any problem resolving the chain raises ModelLoadFailure. The caller treats
it as fatal.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
import yaml
from urdf_parser_py.urdf import URDF

from .quaternion_math import matrix_from_rpy

logger = logging.getLogger(__name__)

# Segment joint type codes (shared with the numba kernels)
JOINT_FIXED = 0
JOINT_REVOLUTE = 1
JOINT_PRISMATIC = 2

_JOINT_TYPES = {
    "fixed": JOINT_FIXED,
    "revolute": JOINT_REVOLUTE,
    "continuous": JOINT_REVOLUTE,
    "prismatic": JOINT_PRISMATIC,
}


class ModelLoadFailure(RuntimeError):
    """Raised when no valid kinematic chain can be built from the description."""


@dataclass(frozen=True, eq=False)
class ChainDescriptor:
    """Ordered base->tip chain. Segment i = fixed origin transform, then joint motion."""

    base_frame: str
    tip_frame: str
    joint_names: Tuple[str, ...]
    segment_names: Tuple[str, ...]
    origins: np.ndarray
    """[n_segments, 4, 4] fixed transforms parent->joint frame."""
    axes: np.ndarray
    """[n_segments, 3] unit joint axes in the joint frame (zeros for fixed)."""
    joint_types: np.ndarray
    """[n_segments] JOINT_* codes."""
    joint_index: np.ndarray
    """[n_segments] index into the configuration vector, -1 for fixed segments."""
    lower_limits: np.ndarray
    upper_limits: np.ndarray

    @property
    def n_joints(self) -> int:
        return len(self.joint_names)

    @property
    def n_segments(self) -> int:
        return len(self.segment_names)

    def clip_to_limits(self, q: np.ndarray) -> np.ndarray:
        return np.clip(np.asarray(q, dtype=np.float64), self.lower_limits, self.upper_limits)

    def random_configuration(self, rng: np.random.Generator, margin: float = 0.0,
                             default_span: float = np.pi) -> np.ndarray:
        """Uniform sample inside the joint limits shrunk by `margin` (continuous joints use ±default_span)."""
        lower = np.where(np.isfinite(self.lower_limits), self.lower_limits, -default_span) + margin
        upper = np.where(np.isfinite(self.upper_limits), self.upper_limits, default_span) - margin
        return rng.uniform(lower, upper)


def _vector(value: Any, length: int, what: str) -> np.ndarray:
    try:
        arr = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ModelLoadFailure(f"{what}: not numeric ({value!r})") from e
    if arr.shape != (length,) or not np.all(np.isfinite(arr)):
        raise ModelLoadFailure(f"{what}: expected {length} finite values, got {value!r}")
    return arr


def _origin_transform(origin: Optional[Mapping[str, Any]], what: str) -> np.ndarray:
    origin = origin or {}
    if not isinstance(origin, Mapping):
        raise ModelLoadFailure(f"{what}: origin must be a mapping")
    xyz = _vector(origin.get("xyz", (0.0, 0.0, 0.0)), 3, f"{what} origin.xyz")
    rpy = _vector(origin.get("rpy", (0.0, 0.0, 0.0)), 3, f"{what} origin.rpy")
    transform = np.eye(4)
    transform[:3, :3] = matrix_from_rpy(rpy[0], rpy[1], rpy[2])
    transform[:3, 3] = xyz
    return transform


def build(description: Mapping[str, Any], base_frame: str, tip_frame: str) -> ChainDescriptor:
    """Resolve the ordered chain base_frame -> tip_frame from a description mapping."""
    if not isinstance(description, Mapping):
        raise ModelLoadFailure("Robot description must be a mapping")
    joints = description.get("joints")
    if not isinstance(joints, list) or not joints:
        raise ModelLoadFailure("Robot description has no 'joints' list")

    links = set(description.get("links") or [])
    parent_joint: Dict[str, Mapping[str, Any]] = {}
    for i, joint in enumerate(joints):
        if not isinstance(joint, Mapping):
            raise ModelLoadFailure(f"Joint #{i} is not a mapping")
        for key in ("name", "type", "parent", "child"):
            if not isinstance(joint.get(key), str) or not joint.get(key):
                raise ModelLoadFailure(f"Joint #{i} is missing '{key}'")
        if joint["type"] not in _JOINT_TYPES:
            raise ModelLoadFailure(f"Joint '{joint['name']}' has unsupported type '{joint['type']}'")
        child = joint["child"]
        if child in parent_joint:
            raise ModelLoadFailure(f"Link '{child}' has more than one parent joint")
        parent_joint[child] = joint
        links.add(child)
        links.add(joint["parent"])

    for frame in (base_frame, tip_frame):
        if frame not in links:
            raise ModelLoadFailure(f"Frame '{frame}' is not in the robot description")

    # Walk tip -> base
    path: List[Mapping[str, Any]] = []
    link = tip_frame
    while link != base_frame:
        joint = parent_joint.get(link)
        if joint is None:
            raise ModelLoadFailure(f"Frames '{base_frame}' and '{tip_frame}' are not connected")
        path.append(joint)
        link = joint["parent"]
        if len(path) > len(parent_joint):
            raise ModelLoadFailure("Robot description contains a kinematic loop")
    path.reverse()

    n_seg = len(path)
    origins = np.zeros((n_seg, 4, 4))
    axes = np.zeros((n_seg, 3))
    joint_types = np.zeros(n_seg, dtype=np.int64)
    joint_index = np.full(n_seg, -1, dtype=np.int64)
    joint_names: List[str] = []
    lower: List[float] = []
    upper: List[float] = []

    for s, joint in enumerate(path):
        name = joint["name"]
        jtype = _JOINT_TYPES[joint["type"]]
        origins[s] = _origin_transform(joint.get("origin"), f"Joint '{name}'")
        joint_types[s] = jtype
        if jtype == JOINT_FIXED:
            continue
        axis = _vector(joint.get("axis", (1.0, 0.0, 0.0)), 3, f"Joint '{name}' axis")
        norm = np.linalg.norm(axis)
        if norm < 1e-9:
            raise ModelLoadFailure(f"Joint '{name}' has a zero axis")
        axes[s] = axis / norm
        joint_index[s] = len(joint_names)
        joint_names.append(name)

        limit = joint.get("limit") or {}
        if joint["type"] == "continuous" or not limit:
            lower.append(-np.inf)
            upper.append(np.inf)
        else:
            try:
                lo = float(limit.get("lower", -np.inf))
                hi = float(limit.get("upper", np.inf))
            except (AttributeError, TypeError, ValueError) as e:
                raise ModelLoadFailure(f"Joint '{name}' has a malformed limit: {limit!r}") from e
            if lo > hi:
                raise ModelLoadFailure(f"Joint '{name}' has lower limit above upper limit")
            lower.append(lo)
            upper.append(hi)

    if not joint_names:
        raise ModelLoadFailure(f"Chain '{base_frame}' -> '{tip_frame}' has no movable joints")

    chain = ChainDescriptor(
        base_frame=base_frame,
        tip_frame=tip_frame,
        joint_names=tuple(joint_names),
        segment_names=tuple(j["name"] for j in path),
        origins=origins,
        axes=axes,
        joint_types=joint_types,
        joint_index=joint_index,
        lower_limits=np.asarray(lower, dtype=np.float64),
        upper_limits=np.asarray(upper, dtype=np.float64),
    )
    logger.info("Chain %s -> %s: %d joints, %d segments",
                base_frame, tip_frame, chain.n_joints, chain.n_segments)
    return chain


def _urdf_joint(joint) -> Dict[str, Any]:
    if not joint.parent or not joint.child:
        raise ModelLoadFailure(f"URDF joint '{joint.name}' needs both <parent> and <child>")
    entry: Dict[str, Any] = {
        "name": joint.name,
        "type": joint.type,
        "parent": joint.parent,
        "child": joint.child,
    }
    if joint.origin is not None:
        entry["origin"] = {
            "xyz": list(joint.origin.xyz or (0.0, 0.0, 0.0)),
            "rpy": list(joint.origin.rpy or (0.0, 0.0, 0.0)),
        }
    if joint.axis is not None:
        entry["axis"] = list(joint.axis)
    limit = joint.limit
    if limit is not None and limit.lower is not None and limit.upper is not None:
        entry["limit"] = {"lower": float(limit.lower), "upper": float(limit.upper)}
    return entry


def description_from_urdf(urdf_text: str) -> Dict[str, Any]:
    """Convert URDF XML into the description mapping used by build()."""
    try:
        robot = URDF.from_xml_string(urdf_text.encode("utf-8"))
    except Exception as e:
        raise ModelLoadFailure(f"Failed to parse URDF: {e}") from e

    try:
        joints = [_urdf_joint(j) for j in robot.joints]
    except (AttributeError, TypeError, ValueError) as e:
        raise ModelLoadFailure(f"Malformed URDF joint: {e}") from e

    return {
        "name": robot.name or "",
        "links": [link.name for link in robot.links],
        "joints": joints,
    }


def load_description(path) -> Dict[str, Any]:
    """Read a description file (.urdf/.xml as URDF, anything else as YAML)."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ModelLoadFailure(f"Cannot read robot description '{p}': {e}") from e

    if p.suffix.lower() in (".urdf", ".xml"):
        return description_from_urdf(text)
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ModelLoadFailure(f"Failed to parse robot description '{p}': {e}") from e
    if not isinstance(data, dict):
        raise ModelLoadFailure(f"Robot description '{p}' is not a mapping")
    return data


def load_chain(path, base_frame: str, tip_frame: str) -> ChainDescriptor:
    return build(load_description(path), base_frame, tip_frame)
