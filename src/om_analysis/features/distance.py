"""
Pairwise distances between interpolated trajectories with missing entries.

Two patients are compared only on the grid points that both of them cover.
Missing values are never imputed; pairs that share too few grid points are
marked as undefined instead of receiving a made-up distance.

Normalisation policy
--------------------
With ``normalize=True`` (the default) the distance is the root-mean-square
difference over the shared grid points, ``sqrt(sum(d**2) / n_overlap)``.
This keeps pairs with long and short overlaps on the same scale. With
``normalize=False`` the plain Euclidean norm over the shared points is used.
"""

import logging
from dataclasses import dataclass
from typing import Literal

import numpy as np
import pandas as pd

from om_analysis.errors import InputContractError, InsufficientOverlapError

logger = logging.getLogger(__name__)

# Upper bound on the size of one block of pairwise differences.
MAX_BLOCK_ELEMENTS = 2_000_000


@dataclass(frozen=True)
class PairwiseDistances:
    """
    A symmetric patient-by-patient distance matrix.

    Attributes:
        values: Distances; undefined pairs hold `sentinel`.
        overlap: Number of grid points shared by each pair.
        undefined: True where a pair shares too few grid points to be compared.
        sentinel: The value stored for undefined pairs.
    """

    values: pd.DataFrame
    overlap: pd.DataFrame
    undefined: pd.DataFrame
    sentinel: float

    @property
    def patient_ids(self) -> list:
        return self.values.index.tolist()

    @property
    def n_undefined_pairs(self) -> int:
        # Each unordered pair appears twice in the symmetric mask.
        return int(self.undefined.to_numpy().sum()) // 2

    def undefined_pairs(self) -> list:
        """Lists the undefined pairs as (patient_id, patient_id) tuples with i < j."""
        mask = np.triu(self.undefined.to_numpy(), k=1)
        ids = self.patient_ids
        return [(ids[i], ids[j]) for i, j in zip(*np.nonzero(mask))]

    def resolve(self, policy: Literal["mean", "raise"] = "mean") -> np.ndarray:
        """
        Returns a fully finite distance array for downstream clustering.

        Undefined pairs carry no information about the pair. Under the
        "mean" policy they are replaced by the mean of all defined
        off-diagonal distances, so they count as neither identical nor
        maximally different. Under "raise" any undefined pair is an error.

        Raises:
            InsufficientOverlapError: Under "raise" when an undefined pair
                exists, or under "mean" when no defined pair exists at all.
        """
        if policy not in ("mean", "raise"):
            raise InputContractError(f"Unknown undefined-distance policy '{policy}'")

        resolved = self.values.to_numpy(dtype=float).copy()
        undefined = self.undefined.to_numpy()
        if not undefined.any():
            return resolved

        if policy == "raise":
            raise InsufficientOverlapError(
                f"{self.n_undefined_pairs} patient pair(s) share too few grid points: "
                f"{self.undefined_pairs()[:10]}"
            )

        off_diagonal = ~np.eye(len(resolved), dtype=bool)
        defined = off_diagonal & ~undefined
        if not defined.any():
            raise InsufficientOverlapError("No patient pair shares enough grid points")

        fill_value = resolved[defined].mean()
        logger.warning(
            f"Replacing {self.n_undefined_pairs} undefined distance(s) with the "
            f"mean defined distance {fill_value:.4f}"
        )
        resolved[undefined] = fill_value
        return resolved


def missing_aware_distances(
    matrix: pd.DataFrame,
    *,
    min_overlap: int = 2,
    normalize: bool = True,
    sentinel: float = np.nan,
) -> PairwiseDistances:
    """
    Computes Euclidean distances between rows using only the columns that
    are observed (non-NaN) in both rows.

    Args:
        matrix: Interpolated matrix, rows = patients, columns = grid points.
        min_overlap: Minimum number of shared columns for a distance to be
            defined. Pairs below this receive `sentinel`.
        normalize: If True, use the root-mean-square difference over the
            shared columns; otherwise the plain Euclidean norm.
        sentinel: Value stored for undefined pairs.

    Returns:
        A PairwiseDistances with a zero diagonal and symmetric values.
    """
    if min_overlap < 1:
        raise InputContractError(f"min_overlap must be at least 1, got {min_overlap}")

    values = matrix.to_numpy(dtype=float)
    n_patients, n_grid = values.shape

    overlap = np.zeros((n_patients, n_patients), dtype=int)
    sum_sq = np.zeros((n_patients, n_patients))
    block_size = max(1, MAX_BLOCK_ELEMENTS // max(1, n_patients * n_grid))
    for start in range(0, n_patients, block_size):
        stop = min(start + block_size, n_patients)
        # (block, n, n_grid) differences; NaN wherever either row is missing.
        diff = values[start:stop, None, :] - values[None, :, :]
        shared = ~np.isnan(diff)
        overlap[start:stop] = shared.sum(axis=2)
        sum_sq[start:stop] = (np.where(shared, diff, 0.0) ** 2).sum(axis=2)

    with np.errstate(divide="ignore", invalid="ignore"):
        if normalize:
            distances = np.sqrt(sum_sq / overlap)
        else:
            distances = np.sqrt(sum_sq)

    undefined = overlap < min_overlap
    np.fill_diagonal(undefined, False)
    distances[undefined] = sentinel
    np.fill_diagonal(distances, 0.0)

    if undefined.any():
        logger.warning(
            f"{int(undefined.sum()) // 2} of {n_patients * (n_patients - 1) // 2} "
            f"patient pairs share fewer than {min_overlap} grid points"
        )

    index = matrix.index
    return PairwiseDistances(
        values=pd.DataFrame(distances, index=index, columns=index),
        overlap=pd.DataFrame(overlap, index=index, columns=index),
        undefined=pd.DataFrame(undefined, index=index, columns=index),
        sentinel=sentinel,
    )
