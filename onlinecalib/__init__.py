#!/usr/bin/env python3
"""
onlinecalib - continuous camera calibration by online bundle adjustment

Frames, cameras and 2D-3D observations are fed in from producer threads
while a background thread keeps re-optimizing keyframe poses, camera
extrinsics and intrinsics with pyceres.
"""

__version__ = "0.1.0"

from .errors import CalibrationError, InvalidArgumentError, InvalidStateError
from .config import CalibratorConfig
from .se3 import SE3
from .manifold import SE3Manifold
from .camera import (
    CameraModel,
    PinholeCamera,
    FovCamera,
    Poly3Camera,
    KannalaBrandtCamera,
    CameraAndPose,
    Rig,
    create_camera,
)
from .cost import ReprojectionCost, ResidualBlock
from .solver import ProblemBuilder, SolveResult, SolveSummary, solve
from .calibrator import Calibrator

__all__ = [
    # Errors
    "CalibrationError",
    "InvalidArgumentError",
    "InvalidStateError",

    # Geometry
    "SE3",
    "SE3Manifold",

    # Cameras
    "CameraModel",
    "PinholeCamera",
    "FovCamera",
    "Poly3Camera",
    "KannalaBrandtCamera",
    "CameraAndPose",
    "Rig",
    "create_camera",

    # Optimisation
    "ReprojectionCost",
    "ResidualBlock",
    "ProblemBuilder",
    "SolveResult",
    "SolveSummary",
    "solve",
    "Calibrator",
    "CalibratorConfig",
]
