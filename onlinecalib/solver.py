#!/usr/bin/env python3
"""
Thin layer between the calibrator and pyceres.

The calibrator keeps ownership of every array, cost, loss and manifold it
hands to a problem; they must outlive the `solve` call.

A pose is registered as two blocks, the [x, y, z, w] quaternion on
`pyceres.EigenQuaternionManifold` and the translation as a plain Euclidean
block. Both are views into `SE3.data`, so the solver writes straight back
into the pose.
"""

import logging
import numpy as np
import pyceres
from dataclasses import dataclass
from typing import Optional

from onlinecalib.config import CalibratorConfig
from onlinecalib.cost import ResidualBlock
from onlinecalib.se3 import SE3, QUATERNION_SIZE, TRANSLATION_SIZE

logger = logging.getLogger(__name__)


@dataclass
class SolveSummary:
    initial_cost: float
    final_cost: float
    num_residuals: int
    iterations: int
    termination_type: str
    brief_report: str
    # largest tangent space step of any keyframe over the solve
    max_frame_step: float = 0.0

    @property
    def mse(self) -> float:
        if self.num_residuals == 0:
            return 0.0
        return self.final_cost / self.num_residuals


@dataclass
class SolveResult:
    """Either a summary or the error message of a failed solve."""
    summary: Optional[SolveSummary] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ProblemBuilder:
    """
    Builds one pyceres.Problem.
    """

    def __init__(self):
        self.problem = pyceres.Problem()

    def add_parameter_block(self, values: np.ndarray, size: int, manifold: Optional[pyceres.Manifold] = None):
        self.problem.add_parameter_block(values, size)
        if manifold is not None:
            self.problem.set_manifold(values, manifold)

    def set_parameter_block_constant(self, values: np.ndarray):
        self.problem.set_parameter_block_constant(values)

    def add_pose(self, pose: SE3, quaternion_manifold: pyceres.Manifold, constant: bool = False):
        q, t = pose.parameter_blocks()
        self.add_parameter_block(q, QUATERNION_SIZE, quaternion_manifold)
        self.add_parameter_block(t, TRANSLATION_SIZE)
        if constant:
            self.set_parameter_block_constant(q)
            self.set_parameter_block_constant(t)

    def add_residual_block(self, block: ResidualBlock):
        self.problem.add_residual_block(block.cost, block.loss, block.parameters)

    def num_residuals(self) -> int:
        return self.problem.num_residuals()

    def num_residual_blocks(self) -> int:
        return self.problem.num_residual_blocks()

    def num_parameter_blocks(self) -> int:
        return self.problem.num_parameter_blocks()


def make_solver_options(config: CalibratorConfig) -> pyceres.SolverOptions:
    options = pyceres.SolverOptions()
    options.linear_solver_type = pyceres.LinearSolverType.DENSE_QR
    options.num_threads = config.thread_count
    options.minimizer_progress_to_stdout = config.progress_to_stdout
    options.max_num_iterations = config.max_iterations
    options.update_state_every_iteration = config.report_every_iteration
    return options


def make_loss(config: CalibratorConfig) -> Optional[pyceres.LossFunction]:
    if config.loss_scale is None:
        return None
    return pyceres.HuberLoss(config.loss_scale)


def solve(options: pyceres.SolverOptions, builder: ProblemBuilder) -> SolveResult:
    """
    Solve the problem in place.

    Failures raised by pyceres (or by a cost function evaluated inside it)
    are returned as `SolveResult.error`.
    """
    logger.debug("Problem: %d parameter blocks, %d residual blocks, %d residuals",
                 builder.num_parameter_blocks(), builder.num_residual_blocks(), builder.num_residuals())

    summary = pyceres.SolverSummary()
    try:
        pyceres.solve(options, builder.problem, summary)
    except Exception as e:
        return SolveResult(error=f"{type(e).__name__}: {e}")

    return SolveResult(summary=SolveSummary(
        initial_cost=float(summary.initial_cost),
        final_cost=float(summary.final_cost),
        num_residuals=builder.num_residuals(),
        iterations=int(summary.num_successful_steps + summary.num_unsuccessful_steps),
        termination_type=str(summary.termination_type),
        brief_report=summary.BriefReport(),
    ))
