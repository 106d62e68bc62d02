#!/usr/bin/env python3
"""
Reprojection cost for online calibration using pyceres.

A pose is solved as a quaternion block and a translation block, so the
cost reads five parameter blocks:

    q_kw (4), t_kw (3)   world to keyframe
    q_ck (4), t_ck (3)   keyframe to camera
    intrinsics           NUM_PARAMS of the camera model
"""

import numpy as np
import pyceres
import torch
from dataclasses import dataclass
from typing import List, Optional, Type

from onlinecalib.camera import CameraModel
from onlinecalib.errors import InvalidArgumentError
from onlinecalib.se3 import QUATERNION_SIZE, TRANSLATION_SIZE, transform_point_tensor


class ReprojectionCost(pyceres.CostFunction):
    """
    r = project(T_ck * (T_kw * P_w), intrinsics) - p

    The landmark P_w is a fixed world point. Residual and Jacobians are both
    computed from `residual_tensor`: plain evaluation runs it on float64
    tensors and the Jacobians come from torch autograd on the same graph.
    """

    def __init__(self, landmark: np.ndarray, pixel: np.ndarray, camera_type: Type[CameraModel]):
        super().__init__()
        self.landmark = np.array(landmark, dtype=np.float64).reshape(-1)
        self.pixel = np.array(pixel, dtype=np.float64).reshape(-1)
        if self.landmark.shape != (3,):
            raise InvalidArgumentError("landmark must be a 3-vector")
        if self.pixel.shape != (2,):
            raise InvalidArgumentError("pixel must be a 2-vector")
        if not (np.all(np.isfinite(self.landmark)) and np.all(np.isfinite(self.pixel))):
            raise InvalidArgumentError("landmark and pixel must be finite")

        self.camera_type = camera_type
        self._landmark_t = torch.from_numpy(self.landmark)
        self._pixel_t = torch.from_numpy(self.pixel)
        self.set_num_residuals(2)
        self.set_parameter_block_sizes([QUATERNION_SIZE, TRANSLATION_SIZE,
                                        QUATERNION_SIZE, TRANSLATION_SIZE,
                                        camera_type.NUM_PARAMS])

    def residual_tensor(self, T_kw: torch.Tensor, T_ck: torch.Tensor, intrinsics: torch.Tensor) -> torch.Tensor:
        P_k = transform_point_tensor(T_kw, self._landmark_t)
        P_c = transform_point_tensor(T_ck, P_k)
        return self.camera_type.project_tensor(P_c, intrinsics) - self._pixel_t

    def evaluate(self, T_kw: np.ndarray, T_ck: np.ndarray, intrinsics: np.ndarray) -> np.ndarray:
        """
        Residual for the given parameter values, without derivatives.
        """
        with torch.no_grad():
            return self.residual_tensor(*self._to_tensors([T_kw, T_ck, intrinsics])).numpy()

    def jacobians(self, T_kw: np.ndarray, T_ck: np.ndarray, intrinsics: np.ndarray) -> List[np.ndarray]:
        """
        Jacobians w.r.t. the three parameter blocks, shapes (2, 7), (2, 7), (2, N).
        """
        inputs = self._to_tensors([T_kw, T_ck, intrinsics])
        J = torch.autograd.functional.jacobian(self.residual_tensor, inputs)
        return [J_i.numpy() for J_i in J]

    def _residual_blocks(self, q_kw, t_kw, q_ck, t_ck, intrinsics) -> torch.Tensor:
        return self.residual_tensor(torch.cat([q_kw, t_kw]), torch.cat([q_ck, t_ck]), intrinsics)

    def Evaluate(self, parameters, residuals, jacobians):
        inputs = self._to_tensors(parameters)
        with torch.no_grad():
            r = self._residual_blocks(*inputs)
        if not bool(torch.all(torch.isfinite(r))):
            return False
        residuals[:] = r.numpy()

        if jacobians is not None and any(j is not None for j in jacobians):
            J = torch.autograd.functional.jacobian(self._residual_blocks, inputs)
            for i, J_i in enumerate(J):
                if jacobians[i] is not None:
                    jacobians[i][:] = J_i.numpy().flatten('C')
        return True

    @staticmethod
    def _to_tensors(parameters) -> tuple:
        return tuple(torch.tensor(np.asarray(p, dtype=np.float64).reshape(-1)) for p in parameters)


@dataclass
class ResidualBlock:
    """
    A cost bound to the parameter blocks it reads.

    `parameters` holds views of the arrays owned by the frame and the camera
    (T_kw.parameter_blocks(), T_ck.parameter_blocks(), camera.params), never
    copies.
    """
    cost: ReprojectionCost
    parameters: List[np.ndarray]
    frame_id: int
    camera_id: int
    loss: Optional["pyceres.LossFunction"] = None
