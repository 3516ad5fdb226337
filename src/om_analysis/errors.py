class TrajectoryAnalysisError(Exception):
    """Base error for trajectory analysis failures."""


class InputContractError(TrajectoryAnalysisError, ValueError):
    """Raised when input data breaks a documented contract."""


class InsufficientOverlapError(TrajectoryAnalysisError):
    """Raised when patient pairs share too few grid points to be compared."""


class ConvergenceError(TrajectoryAnalysisError):
    """Raised when a clustering step cannot produce the requested result."""
