#!/usr/bin/env python3
"""
Online calibration

Frames, cameras and observations are added from any thread while a
background thread repeatedly rebuilds a pyceres problem from the current
state and solves it. One lock guards every structural change and the
problem build; the solve itself runs outside the lock, on a snapshot that
may already be stale when it finishes. The next cycle picks up everything
added in the meantime.
"""

import logging
import threading
import numpy as np
import pyceres
from typing import List, Optional

from onlinecalib.camera import CameraAndPose, CameraModel, Rig
from onlinecalib.config import CalibratorConfig
from onlinecalib.cost import ReprojectionCost, ResidualBlock
from onlinecalib.errors import InvalidArgumentError, InvalidStateError
from onlinecalib.manifold import SE3Manifold
from onlinecalib.se3 import SE3
from onlinecalib.solver import ProblemBuilder, SolveResult, make_loss, make_solver_options, solve

logger = logging.getLogger(__name__)


def _check_pose(pose, name: str):
    if pose is not None and not isinstance(pose, SE3):
        raise InvalidArgumentError(f"{name} must be an SE3, got {type(pose).__name__}")


class Calibrator:
    """
    Continuously bundle adjusts keyframe poses T_kw, camera extrinsics T_ck
    and camera intrinsics against fixed world landmarks.

    The extrinsics of camera 0 are held constant to fix the gauge.
    Frames and cameras are addressed by the integer ids returned when they
    are added; ids are never reused and entries are never moved, so the
    arrays bound to a residual stay valid while a solve is running.
    """

    def __init__(self, config: Optional[CalibratorConfig] = None):
        self.config = config if config is not None else CalibratorConfig()

        self._lock = threading.Lock()
        self._progress = threading.Condition()
        self._stop_requested = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._frames: List[SE3] = []
        self._cameras: List[CameraAndPose] = []
        self._residuals: List[ResidualBlock] = []

        self._quaternion_manifold = pyceres.EigenQuaternionManifold()
        self._manifold = SE3Manifold()
        self._loss = make_loss(self.config)
        self._solver_options = make_solver_options(self.config)

        self._iterations_completed = 0
        self._last_result: Optional[SolveResult] = None

    # ------------------------------------------------------------------
    # lifecycle

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the background solve loop. Does nothing if it is already running."""
        if self.running:
            logger.warning("Already running.")
            return
        self._stop_requested.clear()
        self._thread = threading.Thread(target=self._solve_thread, name="onlinecalib-solver", daemon=True)
        self._thread.start()

    def stop(self):
        """
        Ask the loop to exit and wait for it. The solve in flight, if any, is
        run to completion.
        """
        self._stop_requested.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def close(self):
        """Stop the loop and log the final per camera summary."""
        self.stop()
        self.report()

    def __enter__(self) -> "Calibrator":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # structure

    def add_camera(self, camera: CameraModel, T_ck: Optional[SE3] = None) -> int:
        """
        Args:
            camera: camera model with initial intrinsics, copied
            T_ck: keyframe to camera transform, identity when None

        Returns:
            camera id
        """
        if not isinstance(camera, CameraModel):
            raise InvalidArgumentError(f"expected a CameraModel, got {type(camera).__name__}")
        _check_pose(T_ck, "T_ck")
        entry = CameraAndPose(camera.copy(), T_ck.copy() if T_ck is not None else SE3())
        with self._lock:
            camera_id = len(self._cameras)
            self._cameras.append(entry)
        return camera_id

    def add_rig(self, rig: Rig) -> List[int]:
        """
        Add every camera of a rig. The rig stores camera to rig transforms,
        the calibrator their inverses.
        """
        return [self.add_camera(camera, T_rc.inverse()) for camera, T_rc in rig]

    def add_frame(self, T_kw: Optional[SE3] = None) -> int:
        """
        Args:
            T_kw: world to keyframe transform, identity when None

        Returns:
            frame id
        """
        _check_pose(T_kw, "T_kw")
        frame = T_kw.copy() if T_kw is not None else SE3()
        with self._lock:
            frame_id = len(self._frames)
            self._frames.append(frame)
        return frame_id

    def add_observation(self, frame: int, camera: int, landmark: np.ndarray, pixel: np.ndarray):
        """
        Add a measurement of a fixed world point.

        Args:
            frame: frame id
            camera: camera id
            landmark: 3D point in world coordinates, never optimized
            pixel: observed 2D pixel location
        """
        with self._lock:
            if not 0 <= frame < len(self._frames):
                raise InvalidArgumentError(f"frame id {frame} out of range [0, {len(self._frames)})")
            if not 0 <= camera < len(self._cameras):
                raise InvalidArgumentError(f"camera id {camera} out of range [0, {len(self._cameras)})")

            cp = self._cameras[camera]
            T_kw = self._frames[frame]
            cost = ReprojectionCost(landmark, pixel, type(cp.camera))
            self._residuals.append(ResidualBlock(
                cost=cost,
                parameters=[*T_kw.parameter_blocks(), *cp.T_ck.parameter_blocks(), cp.camera.params],
                frame_id=frame,
                camera_id=camera,
                loss=self._loss,
            ))

    def clear(self):
        """Remove all frames, cameras and observations and reset the solve progress."""
        if self.running:
            raise InvalidStateError("clear() called while the calibrator is running")
        with self._lock:
            self._frames.clear()
            self._cameras.clear()
            self._residuals.clear()
        with self._progress:
            self._iterations_completed = 0
            self._last_result = None

    def num_frames(self) -> int:
        return len(self._frames)

    def num_cameras(self) -> int:
        return len(self._cameras)

    def num_observations(self) -> int:
        return len(self._residuals)

    def get_frame(self, i: int) -> SE3:
        """Copy of the current T_kw of frame i."""
        return self._frames[self._check_index(i, len(self._frames), "frame")].copy()

    def get_camera(self, i: int) -> CameraAndPose:
        """Copy of the current intrinsics and T_ck of camera i."""
        return self._cameras[self._check_index(i, len(self._cameras), "camera")].copy()

    @staticmethod
    def _check_index(i: int, size: int, what: str) -> int:
        if not 0 <= i < size:
            raise InvalidArgumentError(f"{what} id {i} out of range [0, {size})")
        return i

    # ------------------------------------------------------------------
    # optimisation

    @property
    def iterations_completed(self) -> int:
        """Number of finished solve attempts, successful or not."""
        return self._iterations_completed

    @property
    def last_result(self) -> Optional[SolveResult]:
        return self._last_result

    def wait_for_iterations(self, count: int, timeout: Optional[float] = None) -> bool:
        """
        Block until at least `count` solves have finished.

        Returns:
            False if the timeout expired first
        """
        with self._progress:
            return self._progress.wait_for(lambda: self._iterations_completed >= count, timeout)

    def build_problem(self) -> ProblemBuilder:
        """Snapshot the current state into a new problem. Takes the lock."""
        with self._lock:
            return self._build_problem_locked()

    def _build_problem_locked(self) -> ProblemBuilder:
        builder = ProblemBuilder()
        for c, cp in enumerate(self._cameras):
            builder.add_pose(cp.T_ck, self._quaternion_manifold, constant=(c == 0))
        for T_kw in self._frames:
            builder.add_pose(T_kw, self._quaternion_manifold)
        for block in self._residuals:
            builder.add_residual_block(block)
        return builder

    def solve_once(self) -> Optional[SolveResult]:
        """
        Run one cycle of the background loop on the calling thread.

        Returns:
            None when there was nothing to solve, otherwise the result
        """
        if self.running:
            raise InvalidStateError("solve_once() called while the background loop is running")
        return self._solve_cycle()

    def _solve_cycle(self) -> Optional[SolveResult]:
        with self._lock:
            builder = self._build_problem_locked()
            frames = list(self._frames)
            frames_before = [T_kw.data.copy() for T_kw in frames]
        if builder.num_residuals() == 0:
            return None

        result = solve(self._solver_options, builder)
        if result.ok:
            summary = result.summary
            summary.max_frame_step = max(
                (float(np.linalg.norm(self._manifold.minus(T_kw.data, x0)))
                 for T_kw, x0 in zip(frames, frames_before)),
                default=0.0)
            logger.info(summary.brief_report)
            logger.info("Frames: %d; Observations: %d; mse: %g",
                        len(frames), summary.num_residuals, summary.mse)
            logger.debug("Largest frame step: %g", summary.max_frame_step)
        else:
            logger.error("Solve failed: %s", result.error)

        self._record(result)
        return result

    def _record(self, result: SolveResult):
        with self._progress:
            self._last_result = result
            self._iterations_completed += 1
            self._progress.notify_all()

    def _solve_thread(self):
        while not self._stop_requested.is_set():
            try:
                result = self._solve_cycle()
            except Exception as e:
                logger.exception("Solver cycle failed")
                self._record(SolveResult(error=f"{type(e).__name__}: {e}"))
                result = None
            if result is None:
                # Nothing was solved; wait for new observations without spinning.
                self._stop_requested.wait(self.config.idle_wait)

    # ------------------------------------------------------------------
    # reporting

    def report(self):
        logger.info("------------------------------------------")
        for c in range(self.num_cameras()):
            cp = self.get_camera(c)
            logger.info("Camera: %d", c)
            logger.info("%s", np.array2string(cp.camera.params, precision=6))
            logger.info("\n%s", np.array2string(cp.T_ck.matrix3x4(), precision=6))
