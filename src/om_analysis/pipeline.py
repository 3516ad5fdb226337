# File: src/om_analysis/pipeline.py

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import numpy as np
import pandas as pd
from sklearn.metrics import silhouette_score

from om_analysis.cache import cached_call
from om_analysis.config import ClusteringConfig
from om_analysis.data.loader import PatientSeries
from om_analysis.errors import InputContractError
from om_analysis.features.distance import PairwiseDistances, missing_aware_distances
from om_analysis.features.interpolation import build_time_grid, interpolate_patients
from om_analysis.models.clustering import (
    GapStatisticResult,
    HierarchicalClusterer,
    gap_statistic,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrajectoryClusteringResult:
    """Everything produced by one trajectory clustering run."""

    grid: np.ndarray
    interpolated: pd.DataFrame
    distances: PairwiseDistances
    gap: GapStatisticResult
    assignments: pd.Series
    silhouette: Optional[float]

    @property
    def n_clusters(self) -> int:
        return self.gap.n_clusters


def cluster_trajectories(
    series: Mapping[str, PatientSeries],
    config: ClusteringConfig,
    *,
    cache_dir: Optional[Path] = None,
    force_recompute: bool = False,
) -> TrajectoryClusteringResult:
    """
    Runs the full pipeline: interpolate, compute distances, pick k with the
    gap statistic and cut the Ward tree.

    Args:
        series: Patient series keyed by patient_id.
        config: Grid, gap-statistic and distance settings.
        cache_dir: If given, the gap statistic is memoized here, keyed by a
            hash of the interpolated matrix and the settings.
        force_recompute: Recompute the gap statistic even if cached.

    Returns:
        A TrajectoryClusteringResult.
    """
    if not series:
        raise InputContractError("No patient series to cluster")

    grid = build_time_grid(series, config.grid_step)
    interpolated = interpolate_patients(series, grid)
    logger.info(
        f"Interpolated {interpolated.shape[0]} patients onto {interpolated.shape[1]} grid points"
    )

    distances = missing_aware_distances(
        interpolated, min_overlap=config.min_overlap, normalize=config.normalize
    )
    resolved = distances.resolve(config.undefined_policy)

    gap_kwargs = dict(
        k_max=config.k_max,
        n_references=config.n_references,
        seed=config.seed,
        min_overlap=config.min_overlap,
        normalize=config.normalize,
        undefined_policy=config.undefined_policy,
    )
    if cache_dir is not None:
        gap = cached_call(
            cache_dir,
            "gap_statistic",
            gap_statistic,
            interpolated,
            force_recompute=force_recompute,
            **gap_kwargs,
        )
    else:
        gap = gap_statistic(interpolated, distances=distances, **gap_kwargs)

    resolved_frame = pd.DataFrame(resolved, index=interpolated.index, columns=interpolated.index)
    assignments = HierarchicalClusterer(gap.n_clusters).fit_predict(resolved_frame)

    silhouette = None
    if 2 <= gap.n_clusters < len(assignments):
        silhouette = float(
            silhouette_score(resolved, assignments.loc[interpolated.index], metric="precomputed")
        )
        logger.info(f"Silhouette score at k={gap.n_clusters}: {silhouette:.4f}")

    sizes = assignments.value_counts().sort_index().to_dict()
    logger.info(f"Cluster sizes: {sizes}")

    return TrajectoryClusteringResult(
        grid=grid,
        interpolated=interpolated,
        distances=distances,
        gap=gap,
        assignments=assignments,
        silhouette=silhouette,
    )


def cluster_profiles(assignments: pd.Series, clinical: pd.DataFrame) -> pd.DataFrame:
    """
    Summarizes clinical covariates per trajectory cluster.

    Args:
        assignments: Cluster label per patient_id, as returned by the pipeline.
        clinical: Validated clinical table from `load_clinical_table`.

    Returns:
        One row per cluster with patient count, mean age, mean BMI and the
        fraction of female patients. Patients without clinical data only
        count towards `n_patients`.
    """
    merged = assignments.rename("cluster").to_frame().join(
        clinical.set_index("patient_id"), how="left"
    )
    missing = merged["age"].isna().sum()
    if missing:
        logger.warning(f"{missing} clustered patient(s) have no clinical record")

    grouped = merged.groupby("cluster")
    return pd.DataFrame(
        {
            "n_patients": grouped.size(),
            "mean_age": grouped["age"].mean(),
            "mean_bmi": grouped["bmi"].mean(),
            "fraction_female": grouped["sex"].apply(
                lambda s: (s.dropna() == "F").mean() if s.notna().any() else np.nan
            ),
        }
    )
