import numpy as np
import pytest

from iiwa_control.frames import CartesianPose
from iiwa_control.kinematic_solver import KinematicSolver, NoConvergence, SolverParameters

from conftest import IIWA_REFERENCE


def test_zero_configuration_points_straight_up(solver):
    pose = solver.forward(np.zeros(7))
    assert np.allclose(pose.position, [0.0, 0.0, 1.261], atol=1e-9)


def test_forward_is_deterministic_with_unit_quaternion(solver, chain, rng):
    for _ in range(50):
        q = chain.random_configuration(rng)
        a = solver.forward(q)
        b = solver.forward(q.copy())
        assert np.array_equal(a.position, b.position)
        assert np.array_equal(a.rotation, b.rotation)
        assert abs(np.linalg.norm(a.quaternion) - 1.0) < 1e-9


def test_forward_rejects_wrong_length(solver):
    with pytest.raises(ValueError):
        solver.forward(np.zeros(6))
    with pytest.raises(ValueError):
        solver.inverse_position(np.zeros(8), CartesianPose.identity())


def test_forward_does_not_modify_input(solver):
    q = np.array(IIWA_REFERENCE)
    solver.forward(q)
    assert np.array_equal(q, IIWA_REFERENCE)


def test_jacobian_matches_finite_differences(solver, chain, rng):
    q = chain.random_configuration(rng, margin=0.2)
    jac = solver.jacobian(q)
    assert jac.shape == (6, 7)
    h = 1e-6
    for j in range(7):
        dq = np.zeros(7)
        dq[j] = h
        plus = solver.forward(q + dq)
        minus = solver.forward(q - dq)
        linear = (plus.position - minus.position) / (2 * h)
        angular = minus.error_to(plus)[3:] / (2 * h)
        assert np.allclose(jac[:3, j], linear, atol=1e-6)
        assert np.allclose(jac[3:, j], angular, atol=1e-6)


def test_inverse_velocity_realises_twist(solver):
    q = np.array([0.1, 0.6, -0.2, -1.2, 0.3, 0.8, 0.0])
    twist = np.array([0.05, -0.02, 0.01, 0.0, 0.1, -0.05])
    dq = solver.inverse_velocity(q, twist)
    assert np.allclose(solver.jacobian(q) @ dq, twist, atol=1e-9)


def test_inverse_position_round_trip(solver, chain, rng):
    for _ in range(20):
        q_true = chain.random_configuration(rng, margin=0.3)
        target = solver.forward(q_true)
        seed = chain.clip_to_limits(q_true + rng.uniform(-0.1, 0.1, size=7))

        solution = solver.inverse_position(seed, target)

        reached = solver.forward(solution.q)
        translation, angle = reached.distance_to(target)
        assert translation < 1e-4
        assert angle < 1e-3
        assert solution.error < solver.params.tolerance
        assert 0 <= solution.iterations <= solver.params.max_iterations


def test_inverse_position_at_target_needs_no_iterations(solver):
    q = np.array(IIWA_REFERENCE)
    solution = solver.inverse_position(q, solver.forward(q))
    assert solution.iterations == 0
    assert np.allclose(solution.q, q)


def test_unreachable_target_raises_after_iteration_cap(solver):
    target = CartesianPose.identity([3.0, 0.0, 0.0])
    seed = np.array(IIWA_REFERENCE)
    with pytest.raises(NoConvergence) as info:
        solver.inverse_position(seed, target)
    e = info.value
    assert e.iterations == solver.params.max_iterations
    assert e.q.shape == (7,)
    assert e.error > solver.params.tolerance


def test_non_finite_error_aborts_before_cap(solver):
    seed = np.array(IIWA_REFERENCE)
    seed[0] = np.nan
    with pytest.raises(NoConvergence) as info:
        solver.inverse_position(seed, solver.forward(IIWA_REFERENCE))
    assert info.value.iterations < solver.params.max_iterations
    assert not np.isfinite(info.value.error)


def test_iteration_cap_is_configurable(chain):
    small = KinematicSolver(chain, SolverParameters(max_iterations=3))
    with pytest.raises(NoConvergence) as info:
        small.inverse_position(np.zeros(7), CartesianPose.identity([3.0, 0.0, 0.0]))
    assert info.value.iterations == 3


@pytest.mark.parametrize("kwargs", [
    {"max_iterations": 0},
    {"tolerance": 0.0},
    {"min_singular_value": -1.0},
])
def test_solver_parameters_validation(kwargs):
    with pytest.raises(ValueError):
        SolverParameters(**kwargs)
