"""
Ward hierarchical clustering of trajectories and gap-statistic selection of
the number of clusters.

The gap statistic (Tibshirani, Walther & Hastie, 2001) compares the observed
within-cluster dispersion W_k with its expectation under a uniform reference
distribution:

    Gap(k) = E*[log W_k] - log W_k

Both the observed data and every reference sample are clustered with the
same Ward procedure used for the final assignment.
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import cut_tree, linkage
from scipy.spatial.distance import squareform
from tqdm import tqdm

from om_analysis.errors import ConvergenceError, InputContractError
from om_analysis.features.distance import PairwiseDistances, missing_aware_distances

logger = logging.getLogger(__name__)

# Floor for log(W_k); W_k is exactly 0 when every cluster is a singleton.
MIN_DISPERSION = 1e-12


def _check_distance_array(distances: np.ndarray) -> np.ndarray:
    distances = np.asarray(distances, dtype=float)
    if distances.ndim != 2 or distances.shape[0] != distances.shape[1]:
        raise InputContractError(f"Distance matrix must be square, got shape {distances.shape}")
    if not np.all(np.isfinite(distances)):
        raise InputContractError(
            "Distance matrix contains non-finite entries; resolve undefined pairs first"
        )
    if not np.allclose(distances, distances.T):
        raise InputContractError("Distance matrix must be symmetric")
    return distances


def ward_linkage(distances: np.ndarray) -> np.ndarray:
    """
    Builds a Ward minimum-variance linkage from a square distance matrix.

    scipy applies the Lance-Williams update for Ward on squared distances,
    which is the conventional (ward.D2) formulation.
    """
    distances = _check_distance_array(distances)
    if distances.shape[0] < 2:
        raise InputContractError("Ward linkage needs at least two patients")
    condensed = squareform(distances, checks=False)
    return linkage(condensed, method="ward")


def cut_tree_labels(linkage_matrix: np.ndarray, n_clusters: int) -> np.ndarray:
    """
    Cuts a linkage into exactly `n_clusters` clusters.

    Returns:
        Integer labels in [1, n_clusters], numbered in order of first
        appearance along the rows.
    """
    n_samples = linkage_matrix.shape[0] + 1
    if not 1 <= n_clusters <= n_samples:
        raise InputContractError(
            f"Cannot cut {n_samples} patients into {n_clusters} clusters"
        )

    raw = cut_tree(linkage_matrix, n_clusters=n_clusters).ravel()
    codes, uniques = pd.factorize(raw)
    if len(uniques) != n_clusters:
        raise ConvergenceError(
            f"Tree cut produced {len(uniques)} clusters instead of {n_clusters}"
        )
    return codes + 1


class HierarchicalClusterer:
    """
    Assigns each patient to one of `n_clusters` Ward clusters.

    Patients are put in lexicographic order before the linkage is built, so
    ties in merge order are broken by row/column index and repeated runs on
    the same data reproduce the same labels.
    """

    def __init__(self, n_clusters: int):
        if n_clusters < 1:
            raise InputContractError(f"n_clusters must be positive, got {n_clusters}")
        self.n_clusters = n_clusters
        self.linkage_: Optional[np.ndarray] = None
        self.labels_: Optional[pd.Series] = None

    def fit_predict(self, distances: pd.DataFrame) -> pd.Series:
        """
        Args:
            distances: Square, finite distance DataFrame indexed by patient_id
                on both axes.

        Returns:
            A Series named 'cluster' with one label in [1, n_clusters] per patient.
        """
        order = sorted(distances.index)
        ordered = distances.loc[order, order].to_numpy(dtype=float)
        if self.n_clusters > len(order):
            raise InputContractError(
                f"Cannot form {self.n_clusters} clusters from {len(order)} patients"
            )

        if len(order) == 1:
            labels = np.ones(1, dtype=int)
        else:
            self.linkage_ = ward_linkage(ordered)
            labels = cut_tree_labels(self.linkage_, self.n_clusters)

        self.labels_ = pd.Series(
            labels, index=pd.Index(order, name="patient_id"), name="cluster"
        )
        return self.labels_


def within_cluster_dispersion(distances: np.ndarray, labels: np.ndarray) -> float:
    """
    W_k = sum over clusters r of (1 / 2 n_r) * sum_{i, j in C_r} d_ij^2.

    Singleton clusters contribute 0.
    """
    distances = np.asarray(distances, dtype=float)
    labels = np.asarray(labels)
    dispersion = 0.0
    for label in np.unique(labels):
        idx = np.flatnonzero(labels == label)
        if idx.size <= 1:
            continue
        block = distances[np.ix_(idx, idx)]
        dispersion += float((block**2).sum()) / (2.0 * idx.size)
    return dispersion


def _log_dispersions(distances: np.ndarray, ks: np.ndarray) -> np.ndarray:
    linkage_matrix = ward_linkage(distances) if distances.shape[0] > 1 else None
    log_w = np.empty(ks.size, dtype=float)
    for i, k in enumerate(ks):
        if linkage_matrix is None:
            labels = np.ones(1, dtype=int)
        else:
            labels = cut_tree_labels(linkage_matrix, int(k))
        log_w[i] = np.log(max(within_cluster_dispersion(distances, labels), MIN_DISPERSION))
    return log_w


@dataclass(frozen=True)
class GapStatisticResult:
    """Per-k gap statistics and the selected cluster count."""

    ks: np.ndarray
    log_dispersion: np.ndarray
    reference_log_dispersion: np.ndarray
    gap: np.ndarray
    standard_error: np.ndarray
    n_clusters: int
    seed: int
    n_references: int

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "k": self.ks,
                "log_dispersion": self.log_dispersion,
                "reference_log_dispersion": self.reference_log_dispersion,
                "gap": self.gap,
                "standard_error": self.standard_error,
                "selected": self.ks == self.n_clusters,
            }
        )


def _uniform_reference(values: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """
    Draws a reference sample uniformly over each grid column's observed range,
    keeping the original missing pattern.
    """
    observed = ~np.isnan(values)
    has_data = observed.any(axis=0)
    low = np.where(has_data, np.where(observed, values, np.inf).min(axis=0), 0.0)
    high = np.where(has_data, np.where(observed, values, -np.inf).max(axis=0), 0.0)
    reference = rng.uniform(low, high, size=values.shape)
    reference[~observed] = np.nan
    return reference


def select_n_clusters(gap: np.ndarray, standard_error: np.ndarray, ks: np.ndarray) -> int:
    """Smallest k whose gap is within one standard error of the maximum gap."""
    best = int(np.argmax(gap))
    threshold = gap[best] - standard_error[best]
    return int(ks[np.flatnonzero(gap >= threshold)[0]])


def gap_statistic(
    matrix: pd.DataFrame,
    *,
    k_max: int,
    n_references: int,
    seed: int,
    min_overlap: int = 2,
    normalize: bool = True,
    undefined_policy: Literal["mean", "raise"] = "mean",
    distances: Optional[PairwiseDistances] = None,
) -> GapStatisticResult:
    """
    Computes the gap statistic for k = 1..k_max and selects the cluster count.

    Args:
        matrix: Interpolated matrix (patients x grid points, NaN = missing).
        k_max: Largest candidate cluster count; at most the number of patients.
        n_references: Number of uniform reference samples (B).
        seed: Seed for the reference sampler. Required for reproducibility.
        min_overlap, normalize, undefined_policy: Distance settings, applied
            identically to the observed data and to every reference sample.
        distances: Precomputed distances for `matrix`, if already available.

    Returns:
        A GapStatisticResult with the selected `n_clusters`.
    """
    n_patients = matrix.shape[0]
    if not 1 <= k_max <= n_patients:
        raise InputContractError(f"k_max must lie in [1, {n_patients}], got {k_max}")
    if n_references < 1:
        raise InputContractError(f"n_references must be positive, got {n_references}")

    matrix = matrix.sort_index()
    distance_kwargs = {"min_overlap": min_overlap, "normalize": normalize}
    if distances is None:
        distances = missing_aware_distances(matrix, **distance_kwargs)
    else:
        distances = PairwiseDistances(
            values=distances.values.loc[matrix.index, matrix.index],
            overlap=distances.overlap.loc[matrix.index, matrix.index],
            undefined=distances.undefined.loc[matrix.index, matrix.index],
            sentinel=distances.sentinel,
        )

    ks = np.arange(1, k_max + 1)
    log_w = _log_dispersions(distances.resolve(undefined_policy), ks)

    rng = np.random.default_rng(seed)
    values = matrix.to_numpy(dtype=float)
    reference_log_w = np.empty((n_references, ks.size), dtype=float)
    for b in tqdm(range(n_references), desc="Gap statistic references"):
        reference = pd.DataFrame(_uniform_reference(values, rng), index=matrix.index)
        reference_distances = missing_aware_distances(reference, **distance_kwargs)
        reference_log_w[b] = _log_dispersions(
            reference_distances.resolve(undefined_policy), ks
        )

    expected_log_w = reference_log_w.mean(axis=0)
    gap = expected_log_w - log_w
    standard_error = reference_log_w.std(axis=0) * np.sqrt(1.0 + 1.0 / n_references)
    n_clusters = select_n_clusters(gap, standard_error, ks)
    logger.info(f"Gap statistic selected k={n_clusters} (k_max={k_max}, B={n_references})")

    return GapStatisticResult(
        ks=ks,
        log_dispersion=log_w,
        reference_log_dispersion=expected_log_w,
        gap=gap,
        standard_error=standard_error,
        n_clusters=n_clusters,
        seed=seed,
        n_references=n_references,
    )
