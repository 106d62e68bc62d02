#!/usr/bin/env python3
"""
Calibrator configuration.
"""

from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

from onlinecalib.errors import InvalidArgumentError


@dataclass
class CalibratorConfig:
    """
    Args:
        max_iterations: solver iterations per background cycle
        thread_count: threads used inside a single solve
        report_every_iteration: let the solver write intermediate states into
            the parameter blocks after every iteration
        progress_to_stdout: print the solver's per-iteration progress
        loss_scale: Huber loss scale applied to every observation, plain
            squared loss when None
        idle_wait: seconds the background loop waits when there is nothing
            to solve
    """
    max_iterations: int = 100
    thread_count: int = 4
    report_every_iteration: bool = True
    progress_to_stdout: bool = False
    loss_scale: Optional[float] = None
    idle_wait: float = 0.01

    def __post_init__(self):
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.thread_count < 1:
            raise InvalidArgumentError(f"thread_count must be >= 1, got {self.thread_count}")
        if self.loss_scale is not None and self.loss_scale <= 0:
            raise InvalidArgumentError(f"loss_scale must be positive, got {self.loss_scale}")
        if self.idle_wait < 0:
            raise InvalidArgumentError(f"idle_wait must be >= 0, got {self.idle_wait}")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "CalibratorConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise InvalidArgumentError(f"unknown calibrator options: {sorted(unknown)}")
        return cls(**values)
