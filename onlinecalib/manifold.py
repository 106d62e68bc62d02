#!/usr/bin/env python3
"""
SE(3) manifold math.

Poses are 7-vectors [qx, qy, qz, qw, tx, ty, tz]. Updating them additively
would break the unit norm of the quaternion, so steps live in the
6-dimensional tangent space and the pose is updated by right multiplication
with the exponential of the step:

    x [+] delta = x * exp(delta),   delta = [upsilon, omega]

The calibrator uses `minus` to measure how far each solve moved the
keyframes. Inside pyceres a pose is solved as two blocks, see
`SE3.parameter_blocks`.
"""

import numpy as np

from onlinecalib.rotation import skew_symmetric, quaternion_to_rotation_matrix
from onlinecalib.se3 import SE3, NUM_PARAMS, TANGENT_SIZE


class SE3Manifold:
    """
    Right-perturbation SE(3) manifold with ambient size 7 and tangent size 6.
    """
    ambient_size = NUM_PARAMS
    tangent_size = TANGENT_SIZE

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        return (SE3(x) * SE3.exp(delta)).data

    def plus_jacobian(self, x: np.ndarray) -> np.ndarray:
        """
        Jacobian of plus(x, delta) w.r.t. delta at delta = 0, shape (7, 6).

        q * [omega / 2, 1] gives 0.5 * [[qw I + [qv]x], [-qv^T]] for the
        quaternion rows; t + R upsilon gives R for the translation rows.
        """
        x = np.asarray(x, dtype=np.float64)
        qv, qw = x[:3], x[3]
        J = np.zeros((NUM_PARAMS, TANGENT_SIZE))
        J[:3, 3:] = 0.5 * (qw * np.eye(3) + skew_symmetric(qv))
        J[3, 3:] = -0.5 * qv
        J[4:, :3] = quaternion_to_rotation_matrix(x[:4])
        return J

    def minus(self, y: np.ndarray, x: np.ndarray) -> np.ndarray:
        return (SE3(x).inverse() * SE3(y)).log()

    def minus_jacobian(self, x: np.ndarray) -> np.ndarray:
        """
        Jacobian of minus(y, x) w.r.t. y at y = x, shape (6, 7).

        This is a left inverse of `plus_jacobian(x)`.
        """
        x = np.asarray(x, dtype=np.float64)
        qv, qw = x[:3], x[3]
        J = np.zeros((TANGENT_SIZE, NUM_PARAMS))
        J[3:, :3] = 2.0 * (qw * np.eye(3) - skew_symmetric(qv))
        J[3:, 3] = -2.0 * qv
        J[:3, 4:] = quaternion_to_rotation_matrix(x[:4]).T
        return J
