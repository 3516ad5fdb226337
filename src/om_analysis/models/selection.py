"""
Combines per-cluster variable-selection results into sign summaries.

The scripts feed these helpers from a long table with one row per selected
variable (`cluster`, `variable`, `coefficient`).
"""

from pathlib import Path

import numpy as np
import pandas as pd
from typing import Dict, Hashable, Mapping

from om_analysis.errors import InputContractError


def load_selection_results(csv_path: Path) -> Dict[Hashable, Dict[str, float]]:
    """
    Reads per-cluster selection results from a CSV with columns `cluster`,
    `variable` and `coefficient` into the mapping `selection_sign_matrix`
    expects.
    """
    if not csv_path.exists():
        raise FileNotFoundError(f"Selection results not found at {csv_path}")

    df = pd.read_csv(csv_path)
    missing = [col for col in ("cluster", "variable", "coefficient") if col not in df.columns]
    if missing:
        raise InputContractError(f"{csv_path} is missing required column(s): {missing}")
    if df[["cluster", "variable"]].duplicated().any():
        raise InputContractError(f"{csv_path} lists a variable twice for the same cluster")

    return {
        cluster: dict(zip(group["variable"].astype(str), group["coefficient"].astype(float)))
        for cluster, group in df.groupby("cluster", sort=False)
    }


def selection_sign_matrix(results: Mapping[Hashable, Mapping[str, float]]) -> pd.DataFrame:
    """
    Combines per-cluster variable-selection results into one matrix.

    Parameters
    ----------
    results : Mapping[Hashable, Mapping[str, float]]
        For each cluster, the selected variables and their coefficients.
        Variables absent from a cluster's result were not selected there.

    Returns
    -------
    pd.DataFrame
        Variables (rows, sorted) by clusters (columns, in input order) with
        entries -1, 0 or +1: the sign of the selected coefficient, 0 when the
        variable was not selected or its coefficient is zero.

    Examples
    --------
    >>> results = {1: {"Prevotella": 0.4}, 2: {"Prevotella": -0.1, "age": 0.2}}
    >>> signs = selection_sign_matrix(results)
    """
    if not results:
        raise InputContractError("No selection results to combine")

    coefficients = pd.DataFrame(
        {cluster: pd.Series(selected, dtype=float) for cluster, selected in results.items()}
    )
    signs = np.sign(coefficients.fillna(0.0)).astype(int).sort_index()
    signs.index.name = "variable"
    signs.columns.name = "cluster"
    return signs


def consistent_variables(sign_matrix: pd.DataFrame, min_clusters: int = 2) -> pd.Series:
    """
    Variables selected with the same sign in at least `min_clusters` clusters.

    Returns a Series indexed by variable with the shared sign (+1 or -1).
    A variable positive in some clusters and negative in others is dropped.
    """
    positive = (sign_matrix > 0).sum(axis=1)
    negative = (sign_matrix < 0).sum(axis=1)

    shared_sign = pd.Series(0, index=sign_matrix.index, name="sign")
    shared_sign[(positive >= min_clusters) & (negative == 0)] = 1
    shared_sign[(negative >= min_clusters) & (positive == 0)] = -1
    return shared_sign[shared_sign != 0].sort_index()
