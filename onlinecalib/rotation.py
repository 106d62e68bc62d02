#!/usr/bin/env python3
"""
Rotation utilities.

quaternion: [x, y, z, w]
"""

import numpy as np
import torch


def rotation_matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    """
    Convert rotation matrix to quaternion.

    Args:
        R: 3x3 rotation matrix

    Returns:
        Quaternion as [x, y, z, w] with w >= 0
    """
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError("R must be a 3x3 matrix")

    # Method from http://www.euclideanspace.com/maths/geometry/rotations/conversions/matrixToQuaternion/
    trace = np.trace(R)

    if trace > 0:
        S = np.sqrt(trace + 1.0) * 2  # S = 4 * qw
        w = 0.25 * S
        x = (R[2, 1] - R[1, 2]) / S
        y = (R[0, 2] - R[2, 0]) / S
        z = (R[1, 0] - R[0, 1]) / S
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        S = np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2]) * 2  # S = 4 * qx
        w = (R[2, 1] - R[1, 2]) / S
        x = 0.25 * S
        y = (R[0, 1] + R[1, 0]) / S
        z = (R[0, 2] + R[2, 0]) / S
    elif R[1, 1] > R[2, 2]:
        S = np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2]) * 2  # S = 4 * qy
        w = (R[0, 2] - R[2, 0]) / S
        x = (R[0, 1] + R[1, 0]) / S
        y = 0.25 * S
        z = (R[1, 2] + R[2, 1]) / S
    else:
        S = np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1]) * 2  # S = 4 * qz
        w = (R[1, 0] - R[0, 1]) / S
        x = (R[0, 2] + R[2, 0]) / S
        y = (R[1, 2] + R[2, 1]) / S
        z = 0.25 * S

    q = np.array([x, y, z, w])
    if q[3] < 0:
        q = -q
    return q / np.linalg.norm(q)


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion to rotation matrix.

    Args:
        q: Quaternion as [x, y, z, w]

    Returns:
        3x3 rotation matrix
    """
    if len(q) != 4:
        raise ValueError("q must be a 4-vector [x, y, z, w]")

    x, y, z, w = q

    norm = np.sqrt(x*x + y*y + z*z + w*w)
    if norm > 0:
        x, y, z, w = x/norm, y/norm, z/norm, w/norm

    # R = [1-2y²-2z², 2xy-2zw, 2xz+2yw;
    #      2xy+2zw, 1-2x²-2z², 2yz-2xw;
    #      2xz-2yw, 2yz+2xw, 1-2x²-2y²]
    return np.array([
        [1 - 2*y*y - 2*z*z, 2*x*y - 2*z*w, 2*x*z + 2*y*w],
        [2*x*y + 2*z*w, 1 - 2*x*x - 2*z*z, 2*y*z - 2*x*w],
        [2*x*z - 2*y*w, 2*y*z + 2*x*w, 1 - 2*x*x - 2*y*y]
    ])


def quaternion_to_rotation_matrix_tensor(q: torch.Tensor) -> torch.Tensor:
    """
    Differentiable quaternion to rotation matrix for torch tensors.

    The quaternion is assumed to be of unit length, so the derivative is the
    one of the unnormalized expression.
    """
    x, y, z, w = q[0], q[1], q[2], q[3]
    return torch.stack([
        torch.stack([1 - 2*y*y - 2*z*z, 2*x*y - 2*z*w, 2*x*z + 2*y*w]),
        torch.stack([2*x*y + 2*z*w, 1 - 2*x*x - 2*z*z, 2*y*z - 2*x*w]),
        torch.stack([2*x*z - 2*y*w, 2*y*z + 2*x*w, 1 - 2*x*x - 2*y*y])
    ])


def quaternion_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product a * b of two [x, y, z, w] quaternions."""
    av, aw = a[:3], a[3]
    bv, bw = b[:3], b[3]
    v = aw * bv + bw * av + np.cross(av, bv)
    w = aw * bw - np.dot(av, bv)
    return np.array([v[0], v[1], v[2], w])


def quaternion_conjugate(q: np.ndarray) -> np.ndarray:
    return np.array([-q[0], -q[1], -q[2], q[3]])


def quaternion_to_angle_axis(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion to angle-axis representation.

    Args:
        q: Quaternion as [x, y, z, w]

    Returns:
        Angle-axis as [x, y, z] where magnitude is the angle in radians
    """
    if len(q) != 4:
        raise ValueError("q must be a 4-vector [x, y, z, w]")

    q = np.asarray(q, dtype=np.float64)
    q = q / np.linalg.norm(q)
    if q[3] < 0:
        q = -q

    xyz = q[:3]
    sin_half_angle = np.linalg.norm(xyz)
    if sin_half_angle < 1e-10:
        # First order: q ~ [omega / 2, 1]
        return 2.0 * xyz / q[3]

    angle = 2.0 * np.arctan2(sin_half_angle, q[3])
    return xyz / sin_half_angle * angle


def angle_axis_to_quaternion(angle_axis: np.ndarray) -> np.ndarray:
    """
    Convert angle-axis representation to quaternion.

    Args:
        angle_axis: Angle-axis as [x, y, z] where magnitude is the angle in radians

    Returns:
        Quaternion as [x, y, z, w]
    """
    if len(angle_axis) != 3:
        raise ValueError("angle_axis must be a 3-vector [x, y, z]")

    angle_axis = np.asarray(angle_axis, dtype=np.float64)
    angle = np.linalg.norm(angle_axis)

    if angle < 1e-10:
        xyz = 0.5 * angle_axis
        q = np.array([xyz[0], xyz[1], xyz[2], 1.0])
        return q / np.linalg.norm(q)

    # w = cos(angle/2)
    # [x, y, z] = sin(angle/2) * axis
    half_angle = angle / 2.0
    axis = angle_axis / angle

    w = np.cos(half_angle)
    xyz = np.sin(half_angle) * axis

    return np.array([xyz[0], xyz[1], xyz[2], w])


def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Convert a vector to a skew-symmetric matrix.
    """
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ], dtype=np.float64)


def so3_log(R: np.ndarray) -> np.ndarray:
    """Rotation vector of the rotation matrix R, angle in [0, pi]."""
    return quaternion_to_angle_axis(rotation_matrix_to_quaternion(R))


def so3_left_jacobian(phi: np.ndarray) -> np.ndarray:
    """
    Left Jacobian of SO(3), also the V matrix of the SE(3) exponential.
    """
    theta = np.linalg.norm(phi)
    I = np.eye(3)
    K = skew_symmetric(phi)

    if theta < 1e-5:
        return I + 0.5 * K + (1.0 / 6.0) * K @ K

    theta2 = theta**2
    theta3 = theta**3
    A = (1 - np.cos(theta)) / theta2
    B = (theta - np.sin(theta)) / theta3
    return I + A * K + B * K @ K


def so3_left_jacobian_inverse(phi: np.ndarray) -> np.ndarray:
    theta = np.linalg.norm(phi)
    I = np.eye(3)
    K = skew_symmetric(phi)

    if theta < 1e-5:
        return I - 0.5 * K + (1.0 / 12.0) * K @ K

    half = 0.5 * theta
    C = (1.0 - half * np.cos(half) / np.sin(half)) / theta**2
    return I - 0.5 * K + C * K @ K
