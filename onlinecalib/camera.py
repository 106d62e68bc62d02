#!/usr/bin/env python3
"""
Camera models

Every model implements a single differentiable projection formula in
`project_tensor` (torch). The numpy API (project, dproject_dray,
transfer3d, ...) is built on top of it, and the reprojection cost uses the
same formula for automatic differentiation with respect to the intrinsics.
"""

import abc
import numpy as np
import torch
from typing import Dict, Iterator, List, Optional, Tuple, Type

from onlinecalib.errors import InvalidArgumentError
from onlinecalib.se3 import SE3

_EPS = 1e-9
_NEWTON_ITERATIONS = 20


def _as_vector(values, size: int, name: str) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float64).reshape(-1)
    if vector.shape[0] != size:
        raise InvalidArgumentError(f"{name} must have {size} elements, got {vector.shape[0]}")
    return vector


def _normalize_tensor(ray: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    x = ray[0] / ray[2]
    y = ray[1] / ray[2]
    return x, y


def _safe_radius_tensor(x: torch.Tensor, y: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    # sqrt has an infinite derivative at 0; keep the unused branch finite.
    r2 = x * x + y * y
    is_small = r2 < _EPS * _EPS
    r = torch.sqrt(torch.where(is_small, torch.ones_like(r2), r2))
    return r, is_small


def _map_tensor(x: torch.Tensor, y: torch.Tensor, params: torch.Tensor) -> torch.Tensor:
    fu, fv, u0, v0 = params[0], params[1], params[2], params[3]
    return torch.stack([fu * x + u0, fv * y + v0])


def _unmap(pixel: np.ndarray, params: np.ndarray) -> np.ndarray:
    fu, fv, u0, v0 = params[:4]
    return np.array([(pixel[0] - u0) / fu, (pixel[1] - v0) / fv])


class CameraModel(abc.ABC):
    """
    Projection capability shared by all lens models.

    Attributes:
        params: intrinsics vector, float64 of length NUM_PARAMS. The array is
            used directly as a solver parameter block.
    """

    NUM_PARAMS = 0
    NAME = ""

    def __init__(self, params: np.ndarray):
        self.params = _as_vector(params, self.NUM_PARAMS, f"{self.NAME} intrinsics").copy()
        if not np.all(np.isfinite(self.params)):
            raise InvalidArgumentError("camera intrinsics must be finite")
        if self.params[0] == 0 or self.params[1] == 0:
            raise InvalidArgumentError("focal lengths must be non-zero")

    @classmethod
    @abc.abstractmethod
    def project_tensor(cls, ray: torch.Tensor, params: torch.Tensor) -> torch.Tensor:
        """
        Project a camera frame ray to a pixel.

        Args:
            ray: tensor (3,), not necessarily of unit length, z > 0
            params: intrinsics tensor (NUM_PARAMS,)

        Returns:
            pixel tensor (2,)
        """

    @abc.abstractmethod
    def unproject(self, pixel: np.ndarray) -> np.ndarray:
        """Ray with z = 1 that projects to `pixel`."""

    def project(self, ray: np.ndarray) -> np.ndarray:
        ray_t = torch.from_numpy(_as_vector(ray, 3, "ray"))
        with torch.no_grad():
            return self.project_tensor(ray_t, torch.from_numpy(self.params.copy())).numpy()

    def dproject_dray(self, ray: np.ndarray) -> np.ndarray:
        """2x3 Jacobian of `project` at `ray`."""
        ray_t = torch.from_numpy(_as_vector(ray, 3, "ray"))
        params_t = torch.from_numpy(self.params.copy())
        J = torch.autograd.functional.jacobian(lambda r: self.project_tensor(r, params_t), ray_t)
        return J.numpy()

    def dproject_dparams(self, ray: np.ndarray) -> np.ndarray:
        """2xNUM_PARAMS Jacobian of `project` w.r.t. the intrinsics."""
        ray_t = torch.from_numpy(_as_vector(ray, 3, "ray"))
        params_t = torch.from_numpy(self.params.copy())
        J = torch.autograd.functional.jacobian(lambda p: self.project_tensor(ray_t, p), params_t)
        return J.numpy()

    def transfer3d(self, T_ba: SE3, ray: np.ndarray, rho: float) -> np.ndarray:
        """
        Project a ray of frame a with inverse depth rho into this camera,
        which sits in frame b.
        """
        ray = _as_vector(ray, 3, "ray")
        ray_b = T_ba.rotation_matrix() @ ray + rho * T_ba.translation()
        return self.project(ray_b)

    def dtransfer3d_dray(self, T_ba: SE3, ray: np.ndarray, rho: float) -> np.ndarray:
        """
        2x4 Jacobian of `transfer3d` w.r.t. [ray, rho].
        """
        ray = _as_vector(ray, 3, "ray")
        R = T_ba.rotation_matrix()
        t = T_ba.translation()
        J_project = self.dproject_dray(R @ ray + rho * t)
        J = np.zeros((2, 4))
        J[:, :3] = J_project @ R
        J[:, 3] = J_project @ t
        return J

    def copy(self) -> "CameraModel":
        return type(self)(self.params)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.params.tolist()})"


class PinholeCamera(CameraModel):
    """fu, fv, u0, v0"""

    NUM_PARAMS = 4
    NAME = "pinhole"

    @classmethod
    def project_tensor(cls, ray, params):
        x, y = _normalize_tensor(ray)
        return _map_tensor(x, y, params)

    def unproject(self, pixel):
        pn = _unmap(_as_vector(pixel, 2, "pixel"), self.params)
        return np.array([pn[0], pn[1], 1.0])

    def dproject_dray(self, ray):
        fu, fv = self.params[0], self.params[1]
        x, y, z = _as_vector(ray, 3, "ray")
        z_inv = 1.0 / z
        return np.array([
            [fu * z_inv, 0, -fu * x * z_inv**2],
            [0, fv * z_inv, -fv * y * z_inv**2]
        ])


class FovCamera(CameraModel):
    """
    Field-of-view (ATAN) fisheye model: fu, fv, u0, v0, w

    r_d = atan(2 r tan(w / 2)) / w
    """

    NUM_PARAMS = 5
    NAME = "fov"

    @staticmethod
    def _factor_tensor(r, is_small, w):
        w_small = torch.abs(w) < 1e-5
        w_safe = torch.where(w_small, torch.ones_like(w), w)
        mul = 2.0 * torch.tan(w_safe / 2.0)
        factor = torch.where(is_small, mul / w_safe, torch.atan(r * mul) / (w_safe * r))
        return torch.where(w_small, torch.ones_like(factor), factor)

    @classmethod
    def project_tensor(cls, ray, params):
        x, y = _normalize_tensor(ray)
        r, is_small = _safe_radius_tensor(x, y)
        factor = cls._factor_tensor(r, is_small, params[4])
        return _map_tensor(factor * x, factor * y, params)

    def unproject(self, pixel):
        pd = _unmap(_as_vector(pixel, 2, "pixel"), self.params)
        w = self.params[4]
        rd = np.linalg.norm(pd)
        if abs(w) < 1e-5:
            factor = 1.0
        elif rd < _EPS:
            factor = w / (2.0 * np.tan(w / 2.0))
        else:
            factor = np.tan(rd * w) / (2.0 * np.tan(w / 2.0)) / rd
        return np.array([factor * pd[0], factor * pd[1], 1.0])


class Poly3Camera(CameraModel):
    """
    Radial polynomial model: fu, fv, u0, v0, k1, k2, k3

    r_d = r (1 + k1 r^2 + k2 r^4 + k3 r^6)
    """

    NUM_PARAMS = 7
    NAME = "poly3"

    @classmethod
    def project_tensor(cls, ray, params):
        x, y = _normalize_tensor(ray)
        r2 = x * x + y * y
        factor = 1.0 + r2 * (params[4] + r2 * (params[5] + r2 * params[6]))
        return _map_tensor(factor * x, factor * y, params)

    def unproject(self, pixel):
        pd = _unmap(_as_vector(pixel, 2, "pixel"), self.params)
        k1, k2, k3 = self.params[4:]
        rd = np.linalg.norm(pd)
        if rd < _EPS:
            return np.array([pd[0], pd[1], 1.0])

        ru = rd
        for _ in range(_NEWTON_ITERATIONS):
            ru2 = ru * ru
            f = ru * (1.0 + ru2 * (k1 + ru2 * (k2 + ru2 * k3))) - rd
            df = 1.0 + ru2 * (3.0 * k1 + ru2 * (5.0 * k2 + ru2 * 7.0 * k3))
            step = f / df
            ru -= step
            if abs(step) < 1e-14:
                break
        factor = ru / rd
        return np.array([factor * pd[0], factor * pd[1], 1.0])


class KannalaBrandtCamera(CameraModel):
    """
    Equidistant fisheye model: fu, fv, u0, v0, k0, k1, k2, k3

    theta = atan(r), r_d = theta (1 + k0 theta^2 + k1 theta^4 + k2 theta^6 + k3 theta^8)
    """

    NUM_PARAMS = 8
    NAME = "kb4"

    @classmethod
    def project_tensor(cls, ray, params):
        x, y = _normalize_tensor(ray)
        r, is_small = _safe_radius_tensor(x, y)
        theta = torch.atan(r)
        theta2 = theta * theta
        d = theta * (1.0 + theta2 * (params[4] + theta2 * (params[5] + theta2 * (params[6] + theta2 * params[7]))))
        factor = torch.where(is_small, torch.ones_like(r), d / r)
        return _map_tensor(factor * x, factor * y, params)

    def unproject(self, pixel):
        pd = _unmap(_as_vector(pixel, 2, "pixel"), self.params)
        k0, k1, k2, k3 = self.params[4:]
        rd = np.linalg.norm(pd)
        if rd < _EPS:
            return np.array([pd[0], pd[1], 1.0])

        theta = rd
        for _ in range(_NEWTON_ITERATIONS):
            t2 = theta * theta
            f = theta * (1.0 + t2 * (k0 + t2 * (k1 + t2 * (k2 + t2 * k3)))) - rd
            df = 1.0 + t2 * (3.0 * k0 + t2 * (5.0 * k1 + t2 * (7.0 * k2 + t2 * 9.0 * k3)))
            step = f / df
            theta -= step
            if abs(step) < 1e-14:
                break
        factor = np.tan(theta) / rd
        return np.array([factor * pd[0], factor * pd[1], 1.0])


CAMERA_MODELS: Dict[str, Type[CameraModel]] = {
    model.NAME: model
    for model in (PinholeCamera, FovCamera, Poly3Camera, KannalaBrandtCamera)
}


def create_camera(name: str, params: np.ndarray) -> CameraModel:
    """
    Create a camera model by name ("pinhole", "fov", "poly3", "kb4").
    """
    if name not in CAMERA_MODELS:
        raise InvalidArgumentError(f"unknown camera model '{name}', expected one of {sorted(CAMERA_MODELS)}")
    return CAMERA_MODELS[name](params)


class CameraAndPose:
    """A camera and its keyframe to camera transform T_ck."""

    def __init__(self, camera: CameraModel, T_ck: Optional[SE3] = None):
        self.camera = camera
        self.T_ck = T_ck if T_ck is not None else SE3()

    def copy(self) -> "CameraAndPose":
        return CameraAndPose(self.camera.copy(), self.T_ck.copy())

    def __repr__(self) -> str:
        return f"CameraAndPose({self.camera!r}, {self.T_ck!r})"


class Rig:
    """
    Ordered collection of cameras and their camera to rig transforms.
    """

    def __init__(self):
        self.cameras: List[CameraModel] = []
        self.T_rc: List[SE3] = []

    def add_camera(self, camera: CameraModel, T_rc: Optional[SE3] = None) -> int:
        if not isinstance(camera, CameraModel):
            raise InvalidArgumentError(f"expected a CameraModel, got {type(camera).__name__}")
        self.cameras.append(camera)
        self.T_rc.append(T_rc if T_rc is not None else SE3())
        return len(self.cameras) - 1

    def __len__(self) -> int:
        return len(self.cameras)

    def __getitem__(self, index: int) -> Tuple[CameraModel, SE3]:
        return self.cameras[index], self.T_rc[index]

    def __iter__(self) -> Iterator[Tuple[CameraModel, SE3]]:
        return iter(zip(self.cameras, self.T_rc))
