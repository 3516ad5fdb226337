import logging

import pytest
import numpy as np
import pandas as pd
from pydantic import ValidationError
from sklearn.metrics import silhouette_score

from om_analysis.config import ClusteringConfig
from om_analysis.data.loader import PatientSeries
from om_analysis.errors import InputContractError, InsufficientOverlapError
from om_analysis.models.clustering import HierarchicalClusterer
from om_analysis.pipeline import cluster_profiles, cluster_trajectories


@pytest.fixture
def step_function_series():
    """Three perfectly separable step-function trajectories."""
    return {
        "rising": PatientSeries(
            patient_id="rising", timepoints=(0, 5, 6, 10), scores=(0, 0, 10, 10)
        ),
        "falling": PatientSeries(
            patient_id="falling", timepoints=(0, 5, 6, 10), scores=(10, 10, 0, 0)
        ),
        "flat": PatientSeries(patient_id="flat", timepoints=(0, 10), scores=(0, 0)),
    }


@pytest.fixture
def config():
    return ClusteringConfig(seed=42, k_max=3, n_references=20)


def test_config_requires_seed():
    with pytest.raises(ValidationError):
        ClusteringConfig()


def test_config_rejects_unknown_fields_and_bad_values():
    with pytest.raises(ValidationError):
        ClusteringConfig(seed=1, n_clusters=3)
    with pytest.raises(ValidationError):
        ClusteringConfig(seed=1, grid_step=0)
    with pytest.raises(ValidationError):
        ClusteringConfig(seed=1, undefined_policy="ignore")


def test_end_to_end_step_functions(step_function_series, config):
    result = cluster_trajectories(step_function_series, config)

    assert result.n_clusters == 3
    assert sorted(result.assignments.index) == ["falling", "flat", "rising"]
    assert result.assignments.nunique() == 3
    assert result.assignments.between(1, 3).all()
    np.testing.assert_array_equal(result.grid, np.arange(0, 11, dtype=float))
    assert result.interpolated.shape == (3, 11)
    # Silhouette is undefined when every patient is its own cluster
    assert result.silhouette is None


def test_end_to_end_is_reproducible(step_function_series, config):
    first = cluster_trajectories(step_function_series, config)
    second = cluster_trajectories(step_function_series, config)

    pd.testing.assert_series_equal(first.assignments, second.assignments)
    np.testing.assert_array_equal(first.gap.gap, second.gap.gap)


def test_partial_spans_are_clustered(config):
    series = {
        "early": PatientSeries(patient_id="early", timepoints=(0, 4), scores=(1, 1)),
        "late": PatientSeries(patient_id="late", timepoints=(6, 10), scores=(8, 8)),
        "full": PatientSeries(patient_id="full", timepoints=(0, 10), scores=(1, 8)),
    }

    result = cluster_trajectories(series, config)

    # early and late never overlap
    assert result.distances.n_undefined_pairs == 1
    assert set(result.assignments.index) == {"early", "late", "full"}
    assert result.assignments.between(1, result.n_clusters).all()


def test_partial_spans_with_raise_policy():
    series = {
        "early": PatientSeries(patient_id="early", timepoints=(0, 4), scores=(1, 1)),
        "late": PatientSeries(patient_id="late", timepoints=(6, 10), scores=(8, 8)),
    }
    config = ClusteringConfig(seed=0, k_max=2, n_references=5, undefined_policy="raise")

    with pytest.raises(InsufficientOverlapError):
        cluster_trajectories(series, config)


def test_silhouette_positive_for_two_separated_groups():
    series = {
        f"low{i}": PatientSeries(
            patient_id=f"low{i}", timepoints=(0, 10), scores=(i * 0.1, i * 0.1)
        )
        for i in range(3)
    }
    series.update(
        {
            f"high{i}": PatientSeries(
                patient_id=f"high{i}", timepoints=(0, 10), scores=(20 + i * 0.1, 20 + i * 0.1)
            )
            for i in range(3)
        }
    )
    config = ClusteringConfig(seed=3, k_max=5, n_references=10)

    result = cluster_trajectories(series, config)
    distances = result.distances.values
    labels = HierarchicalClusterer(2).fit_predict(distances)
    score = silhouette_score(
        distances.to_numpy(), labels.loc[distances.index], metric="precomputed"
    )

    assert labels.loc[["low0", "low1", "low2"]].nunique() == 1
    assert labels["low0"] != labels["high0"]
    assert 0.9 < score <= 1.0
    if 2 <= result.n_clusters < 6:
        assert -1.0 <= result.silhouette <= 1.0
    else:
        assert result.silhouette is None


def test_gap_statistic_is_cached(step_function_series, config, tmp_path, caplog):
    cache_dir = tmp_path / "cache"

    with caplog.at_level(logging.INFO, logger="om_analysis.cache"):
        first = cluster_trajectories(step_function_series, config, cache_dir=cache_dir)
        caplog.clear()
        second = cluster_trajectories(step_function_series, config, cache_dir=cache_dir)
        assert "Loading cached gap_statistic" in caplog.text

        caplog.clear()
        cluster_trajectories(
            step_function_series, config, cache_dir=cache_dir, force_recompute=True
        )
        assert "Computing gap_statistic" in caplog.text

    assert len(list(cache_dir.glob("gap_statistic_*.joblib"))) == 1
    np.testing.assert_array_equal(first.gap.gap, second.gap.gap)

    # A different seed is a different cache entry
    cluster_trajectories(
        step_function_series, config.model_copy(update={"seed": 7}), cache_dir=cache_dir
    )
    assert len(list(cache_dir.glob("gap_statistic_*.joblib"))) == 2


def test_empty_series_rejected(config):
    with pytest.raises(InputContractError):
        cluster_trajectories({}, config)


def test_cluster_profiles():
    assignments = pd.Series(
        [1, 1, 2, 2],
        index=pd.Index(["A", "B", "C", "D"], name="patient_id"),
        name="cluster",
    )
    clinical = pd.DataFrame(
        {
            "patient_id": ["A", "B", "C"],
            "age": [40.0, 60.0, 70.0],
            "weight": [70.0, 80.0, 90.0],
            "height": [170.0, 180.0, 190.0],
            "sex": ["F", "M", "F"],
            "bmi": [20.0, 22.0, 24.0],
        }
    )

    profiles = cluster_profiles(assignments, clinical)

    assert profiles.index.tolist() == [1, 2]
    assert profiles["n_patients"].tolist() == [2, 2]
    assert profiles.loc[1, "mean_age"] == pytest.approx(50.0)
    assert profiles.loc[2, "mean_age"] == pytest.approx(70.0)
    assert profiles.loc[1, "mean_bmi"] == pytest.approx(21.0)
    assert profiles.loc[1, "fraction_female"] == pytest.approx(0.5)
    # Patient D has no clinical record
    assert profiles.loc[2, "fraction_female"] == pytest.approx(1.0)
