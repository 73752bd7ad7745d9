import copy

import numpy as np
import pytest
import yaml

from iiwa_control.kinematic_model import (
    JOINT_FIXED,
    JOINT_REVOLUTE,
    ModelLoadFailure,
    build,
    description_from_urdf,
    load_chain,
    load_description,
)

TWO_LINK = {
    "links": ["base", "upper", "lower", "tool"],
    "joints": [
        {"name": "shoulder", "type": "revolute", "parent": "base", "child": "upper",
         "origin": {"xyz": [0.0, 0.0, 0.1]}, "axis": [0.0, 0.0, 1.0],
         "limit": {"lower": -1.0, "upper": 1.0}},
        {"name": "elbow", "type": "continuous", "parent": "upper", "child": "lower",
         "origin": {"xyz": [0.5, 0.0, 0.0]}, "axis": [0.0, 0.0, 2.0]},
        {"name": "flange", "type": "fixed", "parent": "lower", "child": "tool",
         "origin": {"xyz": [0.25, 0.0, 0.0]}},
    ],
}

TWO_LINK_URDF = """<?xml version="1.0"?>
<robot name="two_link">
  <link name="base"/>
  <link name="upper"/>
  <link name="lower"/>
  <link name="tool"/>
  <joint name="shoulder" type="revolute">
    <parent link="base"/>
    <child link="upper"/>
    <origin xyz="0 0 0.1" rpy="0 0 0"/>
    <axis xyz="0 0 1"/>
    <limit lower="-1.0" upper="1.0" effort="10" velocity="1"/>
  </joint>
  <joint name="elbow" type="continuous">
    <parent link="upper"/>
    <child link="lower"/>
    <origin xyz="0.5 0 0"/>
    <axis xyz="0 0 2"/>
  </joint>
  <joint name="flange" type="fixed">
    <parent link="lower"/>
    <child link="tool"/>
    <origin xyz="0.25 0 0"/>
  </joint>
</robot>
"""


def test_packaged_iiwa_chain(chain):
    assert chain.base_frame == "lbr_iiwa_link_0"
    assert chain.tip_frame == "lbr_iiwa_link_7"
    assert chain.n_joints == 7
    assert chain.joint_names == tuple(f"lbr_iiwa_joint_{i}" for i in range(1, 8))
    assert np.all(chain.joint_types == JOINT_REVOLUTE)
    assert np.all(chain.lower_limits < 0.0) and np.all(chain.upper_limits > 0.0)


def test_build_two_link():
    chain = build(TWO_LINK, "base", "tool")
    assert chain.n_joints == 2
    assert chain.n_segments == 3
    assert list(chain.joint_index) == [0, 1, -1]
    assert chain.joint_types[2] == JOINT_FIXED
    assert np.allclose(chain.axes[1], [0.0, 0.0, 1.0])
    assert np.isinf(chain.lower_limits[1]) and np.isinf(chain.upper_limits[1])
    assert np.allclose(chain.origins[1][:3, 3], [0.5, 0.0, 0.0])


def test_subchain_between_inner_frames():
    chain = build(TWO_LINK, "upper", "lower")
    assert chain.joint_names == ("elbow",)


def test_clip_and_random_configuration(rng):
    chain = build(TWO_LINK, "base", "tool")
    assert np.allclose(chain.clip_to_limits([5.0, 5.0]), [1.0, 5.0])
    for _ in range(20):
        q = chain.random_configuration(rng, margin=0.1)
        assert -0.9 <= q[0] <= 0.9
        assert -np.pi + 0.1 <= q[1] <= np.pi - 0.1


@pytest.mark.parametrize("base, tip", [("base", "nowhere"), ("nowhere", "tool")])
def test_unknown_frame(base, tip):
    with pytest.raises(ModelLoadFailure, match="not in the robot description"):
        build(TWO_LINK, base, tip)


def test_frames_not_connected():
    with pytest.raises(ModelLoadFailure, match="not connected"):
        build(TWO_LINK, "tool", "base")


def test_unsupported_joint_type():
    desc = copy.deepcopy(TWO_LINK)
    desc["joints"][0]["type"] = "floating"
    with pytest.raises(ModelLoadFailure, match="unsupported type"):
        build(desc, "base", "tool")


def test_link_with_two_parents():
    desc = copy.deepcopy(TWO_LINK)
    desc["joints"].append({"name": "extra", "type": "fixed", "parent": "base", "child": "lower"})
    with pytest.raises(ModelLoadFailure, match="more than one parent"):
        build(desc, "base", "tool")


def test_zero_axis():
    desc = copy.deepcopy(TWO_LINK)
    desc["joints"][0]["axis"] = [0.0, 0.0, 0.0]
    with pytest.raises(ModelLoadFailure, match="zero axis"):
        build(desc, "base", "tool")


def test_inverted_limits():
    desc = copy.deepcopy(TWO_LINK)
    desc["joints"][0]["limit"] = {"lower": 1.0, "upper": -1.0}
    with pytest.raises(ModelLoadFailure):
        build(desc, "base", "tool")


def test_no_movable_joints():
    with pytest.raises(ModelLoadFailure, match="no movable joints"):
        build(TWO_LINK, "lower", "tool")


def test_missing_joints():
    with pytest.raises(ModelLoadFailure):
        build({"links": ["a"]}, "a", "a")


def test_urdf_matches_yaml_description():
    from_urdf = build(description_from_urdf(TWO_LINK_URDF), "base", "tool")
    from_dict = build(TWO_LINK, "base", "tool")
    assert from_urdf.joint_names == from_dict.joint_names
    assert np.allclose(from_urdf.origins, from_dict.origins)
    assert np.allclose(from_urdf.axes, from_dict.axes)
    assert np.array_equal(from_urdf.lower_limits, from_dict.lower_limits)


def test_urdf_parse_error():
    with pytest.raises(ModelLoadFailure, match="parse URDF"):
        description_from_urdf("<robot><joint></robot>")


def test_urdf_joint_without_parent():
    with pytest.raises(ModelLoadFailure):
        description_from_urdf('<robot name="r"><joint name="j" type="fixed"><child link="a"/></joint></robot>')


def test_load_description_by_suffix(tmp_path):
    urdf = tmp_path / "two_link.urdf"
    urdf.write_text(TWO_LINK_URDF)
    yml = tmp_path / "two_link.yaml"
    yml.write_text(yaml.safe_dump(TWO_LINK))
    assert load_chain(urdf, "base", "tool").n_joints == 2
    assert load_description(yml)["joints"][1]["name"] == "elbow"


def test_load_description_missing_file(tmp_path):
    with pytest.raises(ModelLoadFailure, match="Cannot read"):
        load_description(tmp_path / "missing.yaml")


def test_load_description_not_a_mapping(tmp_path):
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n")
    with pytest.raises(ModelLoadFailure, match="not a mapping"):
        load_description(p)


def test_urdf_with_encoding_declaration():
    text = TWO_LINK_URDF.replace('<?xml version="1.0"?>', '<?xml version="1.0" encoding="UTF-8"?>')
    desc = description_from_urdf(text)
    assert desc["name"] == "two_link"
    assert desc["links"] == ["base", "upper", "lower", "tool"]
    assert desc["joints"][0]["limit"] == {"lower": -1.0, "upper": 1.0}
    assert "limit" not in desc["joints"][1]
