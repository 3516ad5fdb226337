"""
Linear interpolation of irregularly sampled severity scores onto a shared grid.

Each patient is interpolated only within their own observed span. Grid points
before the first or after the last observation are left missing (NaN) rather
than extrapolated, so later steps can tell "unknown" apart from "measured".
"""

import logging
from typing import Mapping

import numpy as np
import pandas as pd

from om_analysis.data.loader import PatientSeries
from om_analysis.errors import InputContractError

logger = logging.getLogger(__name__)


def build_time_grid(series: Mapping[str, PatientSeries], step: float) -> np.ndarray:
    """
    Builds the shared time grid from the earliest to the latest observed
    timepoint across all patients, at a fixed step.

    If the span is not a multiple of `step`, the last grid point falls short
    of the global maximum rather than overshooting it.
    """
    if step <= 0:
        raise InputContractError(f"Grid step must be positive, got {step}")
    if not series:
        raise InputContractError("Cannot build a time grid without any patient series")

    t_min = min(s.timepoints[0] for s in series.values())
    t_max = max(s.timepoints[-1] for s in series.values())

    n_points = int(np.floor((t_max - t_min) / step + 1e-9)) + 1
    # Offsets are rounded, not the grid itself, so grid[0] is exactly t_min.
    offsets = np.round(step * np.arange(n_points), 10)
    grid = np.minimum(t_min + offsets, t_max)
    grid.setflags(write=False)
    return grid


def interpolate_series(timepoints, values, grid) -> np.ndarray:
    """
    Interpolates one patient's scores onto `grid`.

    Args:
        timepoints: Strictly increasing observation times.
        values: Scores observed at `timepoints`, with no missing entries.
        grid: The shared, ordered time grid.

    Returns:
        An array aligned to `grid`: linearly interpolated inside
        [min(timepoints), max(timepoints)], NaN outside.

    Raises:
        InputContractError: For empty, mismatched, missing or non-increasing input.
    """
    t = np.asarray(timepoints, dtype=float)
    v = np.asarray(values, dtype=float)
    grid = np.asarray(grid, dtype=float)

    if t.ndim != 1 or t.shape != v.shape:
        raise InputContractError(
            f"Timepoints and values must be 1D and of equal length, got {t.shape} and {v.shape}"
        )
    if t.size == 0:
        raise InputContractError("Cannot interpolate an empty series")
    if np.isnan(t).any() or np.isnan(v).any():
        raise InputContractError("Series contains missing timepoints or values")
    if np.any(np.diff(t) <= 0):
        raise InputContractError("Timepoints must be strictly increasing")

    interpolated = np.full(grid.shape, np.nan)
    # Grid points within float tolerance of the span ends count as inside.
    after_start = (grid >= t[0]) | np.isclose(grid, t[0])
    before_end = (grid <= t[-1]) | np.isclose(grid, t[-1])
    inside = after_start & before_end
    interpolated[inside] = np.interp(np.clip(grid[inside], t[0], t[-1]), t, v)
    return interpolated


def interpolate_patients(
    series: Mapping[str, PatientSeries], grid: np.ndarray
) -> pd.DataFrame:
    """
    Interpolates every patient onto the grid.

    Returns:
        A DataFrame indexed by patient_id (sorted) with one column per grid
        point; entries outside a patient's observed span are NaN.
    """
    patient_ids = sorted(series)
    rows = [
        interpolate_series(series[pid].timepoints, series[pid].scores, grid)
        for pid in patient_ids
    ]

    matrix = pd.DataFrame(
        np.vstack(rows) if rows else np.empty((0, len(grid))),
        index=pd.Index(patient_ids, name="patient_id"),
        columns=pd.Index(np.asarray(grid, dtype=float), name="timepoint"),
    )

    empty_rows = matrix.index[matrix.isna().all(axis=1)].tolist()
    if empty_rows:
        # Single-timepoint patients that fall between grid points.
        logger.warning(f"{len(empty_rows)} patient(s) have no grid points in range: {empty_rows}")

    return matrix
