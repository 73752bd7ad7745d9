"""
Common rotation math operations optimized with numba.

All quaternions use [w, x, y, z] format, where w is the scalar part
and [x, y, z] is the vector part. Everything is float64: pose outputs are
checked for unit norm at 1e-9.
"""

import numpy as np
import numba


@numba.njit(fastmath=False)
def normalize_vector(x, eps=1e-12):
    """Normalize a vector to unit length."""
    x = np.asarray(x, dtype=np.float64)
    norm = np.linalg.norm(x)
    if norm < eps:
        return x.copy()
    return x / norm


# Quaternion operations
@numba.njit(fastmath=False)
def quat_normalize(q, eps=1e-12):
    """
    Normalize a quaternion to unit magnitude.

    Args:
        q: Quaternion [w, x, y, z]

    Returns:
        Normalized quaternion of unit length (identity if degenerate)
    """
    q = np.asarray(q, dtype=np.float64)
    norm = np.sqrt(q[0]*q[0] + q[1]*q[1] + q[2]*q[2] + q[3]*q[3])
    if norm < eps:
        return np.array([1.0, 0.0, 0.0, 0.0])
    return q / norm


@numba.njit(fastmath=False)
def quat_multiply(q1, q2):
    """Hamilton product q1*q2."""
    w1, x1, y1, z1 = q1[0], q1[1], q1[2], q1[3]
    w2, x2, y2, z2 = q2[0], q2[1], q2[2], q2[3]
    return np.array([
        w1*w2 - x1*x2 - y1*y2 - z1*z2,
        w1*x2 + x1*w2 + y1*z2 - z1*y2,
        w1*y2 - x1*z2 + y1*w2 + z1*x2,
        w1*z2 + x1*y2 - y1*x2 + z1*w2,
    ])


@numba.njit(fastmath=False)
def quat_unique(q):
    """Ensure quaternion has non-negative real part."""
    if q[0] < 0.0:
        return -q
    return q.copy()


@numba.njit(fastmath=False)
def quat_from_axis_angle(axis, angle):
    """Convert axis-angle to quaternion."""
    axis_norm = normalize_vector(axis)
    half_angle = 0.5 * angle
    sin_half = np.sin(half_angle)
    return np.array([
        np.cos(half_angle),
        axis_norm[0] * sin_half,
        axis_norm[1] * sin_half,
        axis_norm[2] * sin_half,
    ])


@numba.njit(fastmath=False)
def axis_angle_from_quat(q, eps=1e-12):
    """Convert quaternion to a rotation vector (axis * angle, angle in [0, π])."""
    q = quat_unique(quat_normalize(q))
    quat_im = np.array([q[1], q[2], q[3]])
    mag = np.linalg.norm(quat_im)
    if mag < eps:
        return np.zeros(3)
    angle = 2.0 * np.arctan2(mag, q[0])
    return quat_im / mag * angle


@numba.njit(fastmath=False)
def matrix_from_quat(q):
    """Rotation matrix of a (normalized) quaternion."""
    q = quat_normalize(q)
    w, x, y, z = q[0], q[1], q[2], q[3]
    m = np.empty((3, 3))
    m[0, 0] = 1.0 - 2.0 * (y*y + z*z)
    m[0, 1] = 2.0 * (x*y - w*z)
    m[0, 2] = 2.0 * (x*z + w*y)
    m[1, 0] = 2.0 * (x*y + w*z)
    m[1, 1] = 1.0 - 2.0 * (x*x + z*z)
    m[1, 2] = 2.0 * (y*z - w*x)
    m[2, 0] = 2.0 * (x*z - w*y)
    m[2, 1] = 2.0 * (y*z + w*x)
    m[2, 2] = 1.0 - 2.0 * (x*x + y*y)
    return m


@numba.njit(fastmath=False)
def quat_from_matrix(m):
    """
    Quaternion of a rotation matrix (Shepperd's method).

    Picks the largest of the four diagonal combinations as pivot so the
    division is always well conditioned. Result has w >= 0 and unit norm.
    """
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    q = np.empty(4)
    if trace > m[0, 0] and trace > m[1, 1] and trace > m[2, 2]:
        s = 2.0 * np.sqrt(1.0 + trace)
        q[0] = 0.25 * s
        q[1] = (m[2, 1] - m[1, 2]) / s
        q[2] = (m[0, 2] - m[2, 0]) / s
        q[3] = (m[1, 0] - m[0, 1]) / s
    elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
        s = 2.0 * np.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2])
        q[0] = (m[2, 1] - m[1, 2]) / s
        q[1] = 0.25 * s
        q[2] = (m[0, 1] + m[1, 0]) / s
        q[3] = (m[0, 2] + m[2, 0]) / s
    elif m[1, 1] > m[2, 2]:
        s = 2.0 * np.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2])
        q[0] = (m[0, 2] - m[2, 0]) / s
        q[1] = (m[0, 1] + m[1, 0]) / s
        q[2] = 0.25 * s
        q[3] = (m[1, 2] + m[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1])
        q[0] = (m[1, 0] - m[0, 1]) / s
        q[1] = (m[0, 2] + m[2, 0]) / s
        q[2] = (m[1, 2] + m[2, 1]) / s
        q[3] = 0.25 * s
    return quat_unique(quat_normalize(q))


@numba.njit(fastmath=False)
def rotation_about_axis(axis, angle):
    """Rodrigues rotation matrix for `angle` radians about unit `axis`."""
    x, y, z = axis[0], axis[1], axis[2]
    c = np.cos(angle)
    s = np.sin(angle)
    t = 1.0 - c
    m = np.empty((3, 3))
    m[0, 0] = t*x*x + c
    m[0, 1] = t*x*y - s*z
    m[0, 2] = t*x*z + s*y
    m[1, 0] = t*x*y + s*z
    m[1, 1] = t*y*y + c
    m[1, 2] = t*y*z - s*x
    m[2, 0] = t*x*z - s*y
    m[2, 1] = t*y*z + s*x
    m[2, 2] = t*z*z + c
    return m


@numba.njit(fastmath=False)
def matrix_from_rpy(roll, pitch, yaw):
    """Fixed-axis roll/pitch/yaw (URDF convention): R = Rz(yaw) Ry(pitch) Rx(roll)."""
    cr, sr = np.cos(roll), np.sin(roll)
    cp, sp = np.cos(pitch), np.sin(pitch)
    cy, sy = np.cos(yaw), np.sin(yaw)
    m = np.empty((3, 3))
    m[0, 0] = cy*cp
    m[0, 1] = cy*sp*sr - sy*cr
    m[0, 2] = cy*sp*cr + sy*sr
    m[1, 0] = sy*cp
    m[1, 1] = sy*sp*sr + cy*cr
    m[1, 2] = sy*sp*cr - cy*sr
    m[2, 0] = -sp
    m[2, 1] = cp*sr
    m[2, 2] = cp*cr
    return m


@numba.njit(fastmath=False)
def rotation_error(current, target):
    """
    Orientation error between two rotation matrices as a base-frame rotation
    vector, i.e. the rotation that takes `current` onto `target`.
    """
    # target @ current.T
    r_err = np.zeros((3, 3))
    for i in range(3):
        for j in range(3):
            acc = 0.0
            for k in range(3):
                acc += target[i, k] * current[j, k]
            r_err[i, j] = acc
    return axis_angle_from_quat(quat_from_matrix(r_err))


def is_rotation_matrix(m: np.ndarray, atol: float = 1e-6) -> bool:
    """Orthonormal with determinant +1."""
    m = np.asarray(m, dtype=np.float64)
    if m.shape != (3, 3) or not np.all(np.isfinite(m)):
        return False
    return bool(np.allclose(m @ m.T, np.eye(3), atol=atol) and abs(np.linalg.det(m) - 1.0) < atol)
