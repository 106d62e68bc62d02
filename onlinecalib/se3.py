#!/usr/bin/env python3
"""
Rigid body transforms.

An SE3 is stored as 7 doubles [qx, qy, qz, qw, tx, ty, tz]. The `data`
array of an SE3 backs the solver parameter blocks (see `parameter_blocks`), so
it is never reallocated: all in-place updates go through `data[:] = ...`.
"""

import numpy as np
import torch
from typing import List, Optional, Union

from onlinecalib.errors import InvalidArgumentError
from onlinecalib.rotation import (
    quaternion_to_rotation_matrix,
    quaternion_to_rotation_matrix_tensor,
    rotation_matrix_to_quaternion,
    quaternion_multiply,
    quaternion_conjugate,
    angle_axis_to_quaternion,
    so3_log,
    so3_left_jacobian,
    so3_left_jacobian_inverse,
)

NUM_PARAMS = 7
TANGENT_SIZE = 6
QUATERNION_SIZE = 4
TRANSLATION_SIZE = 3


class SE3:
    def __init__(self, data: Optional[np.ndarray] = None):
        """
        Args:
            data: 7-vector [qx, qy, qz, qw, tx, ty, tz]. Copied and the
                quaternion normalized. Identity when None.
        """
        self.data = np.zeros(NUM_PARAMS, dtype=np.float64)
        if data is None:
            self.data[3] = 1.0
            return

        values = np.asarray(data, dtype=np.float64).reshape(-1)
        if values.shape[0] != NUM_PARAMS:
            raise InvalidArgumentError(f"SE3 needs {NUM_PARAMS} values, got {values.shape[0]}")
        if not np.all(np.isfinite(values)):
            raise InvalidArgumentError("SE3 values must be finite")
        norm = np.linalg.norm(values[:4])
        if norm < 1e-12:
            raise InvalidArgumentError("SE3 quaternion has zero norm")
        self.data[:4] = values[:4] / norm
        self.data[4:] = values[4:]

    @classmethod
    def from_rt(cls, R: np.ndarray, t: np.ndarray) -> "SE3":
        t = np.asarray(t, dtype=np.float64).reshape(-1)
        if t.shape[0] != 3:
            raise InvalidArgumentError("translation must be a 3-vector")
        return cls(np.concatenate([rotation_matrix_to_quaternion(R), t]))

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> "SE3":
        """From a 4x4 or 3x4 matrix [R | t]."""
        T = np.asarray(T, dtype=np.float64)
        if T.shape not in ((4, 4), (3, 4)):
            raise InvalidArgumentError(f"expected a 4x4 or 3x4 matrix, got {T.shape}")
        return cls.from_rt(T[:3, :3], T[:3, 3])

    @classmethod
    def exp(cls, xi: np.ndarray) -> "SE3":
        """
        Exponential map.

        Args:
            xi: tangent vector [upsilon (translation), omega (rotation)]
        """
        xi = np.asarray(xi, dtype=np.float64).reshape(-1)
        if xi.shape[0] != TANGENT_SIZE:
            raise InvalidArgumentError("SE3 tangent vector must have 6 elements")
        upsilon, omega = xi[:3], xi[3:]
        q = angle_axis_to_quaternion(omega)
        t = so3_left_jacobian(omega) @ upsilon
        return cls(np.concatenate([q, t]))

    def log(self) -> np.ndarray:
        """Inverse of `exp`: returns [upsilon, omega]."""
        omega = so3_log(self.rotation_matrix())
        upsilon = so3_left_jacobian_inverse(omega) @ self.data[4:]
        return np.concatenate([upsilon, omega])

    def parameter_blocks(self) -> List[np.ndarray]:
        """
        Views of the quaternion and translation halves of `data`, the two
        blocks a pose is solved as.
        """
        return [self.data[:QUATERNION_SIZE], self.data[QUATERNION_SIZE:]]

    def quaternion(self) -> np.ndarray:
        return self.data[:4].copy()

    def translation(self) -> np.ndarray:
        return self.data[4:].copy()

    def rotation_matrix(self) -> np.ndarray:
        return quaternion_to_rotation_matrix(self.data[:4])

    def matrix3x4(self) -> np.ndarray:
        return np.hstack([self.rotation_matrix(), self.data[4:].reshape(3, 1)])

    def matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :4] = self.matrix3x4()
        return T

    def inverse(self) -> "SE3":
        q_inv = quaternion_conjugate(self.data[:4])
        R_inv = quaternion_to_rotation_matrix(q_inv)
        return SE3(np.concatenate([q_inv, -R_inv @ self.data[4:]]))

    def copy(self) -> "SE3":
        other = SE3()
        other.data[:] = self.data
        return other

    def __mul__(self, other: Union["SE3", np.ndarray]):
        if isinstance(other, SE3):
            q = quaternion_multiply(self.data[:4], other.data[:4])
            t = self.rotation_matrix() @ other.data[4:] + self.data[4:]
            return SE3(np.concatenate([q, t]))

        points = np.asarray(other, dtype=np.float64)
        if points.shape == (3,):
            return self.rotation_matrix() @ points + self.data[4:]
        if points.ndim == 2 and points.shape[1] == 3:
            return points @ self.rotation_matrix().T + self.data[4:]
        raise InvalidArgumentError(f"cannot transform array of shape {points.shape}")

    def __repr__(self) -> str:
        return f"SE3(q={np.round(self.data[:4], 6).tolist()}, t={np.round(self.data[4:], 6).tolist()})"


def transform_point_tensor(pose: torch.Tensor, point: torch.Tensor) -> torch.Tensor:
    """
    Apply a raw 7-vector pose to a 3D point, differentiable in both.

    Args:
        pose: tensor [qx, qy, qz, qw, tx, ty, tz]
        point: tensor (3,)

    Returns:
        R(q) @ point + t
    """
    R = quaternion_to_rotation_matrix_tensor(pose[:4])
    return R @ point + pose[4:]
