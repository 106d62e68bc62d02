"""
Exception types raised by onlinecalib.

Usage errors are raised synchronously to the caller. Solver failures are
never raised out of the background loop; they are returned as values by
`onlinecalib.solver.solve` and logged.
"""


class CalibrationError(Exception):
    """Base class for all onlinecalib errors."""


class InvalidArgumentError(CalibrationError, ValueError):
    """An argument is malformed or refers to an entry that does not exist."""


class InvalidStateError(CalibrationError, RuntimeError):
    """The operation is not allowed in the calibrator's current state."""
