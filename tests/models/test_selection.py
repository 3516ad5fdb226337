import pytest
import pandas as pd

from om_analysis.errors import InputContractError
from om_analysis.models.selection import (
    consistent_variables,
    load_selection_results,
    selection_sign_matrix,
)


@pytest.fixture
def per_cluster_results():
    return {
        1: {"Prevotella": 0.4, "Streptococcus": -0.2, "age": 0.05},
        2: {"Prevotella": 0.1, "Veillonella": -0.3},
        3: {"Prevotella": 0.7, "Streptococcus": 0.3, "Veillonella": -0.1, "age": 0.0},
    }


def test_sign_matrix_shape_and_values(per_cluster_results):
    signs = selection_sign_matrix(per_cluster_results)

    assert signs.index.tolist() == ["Prevotella", "Streptococcus", "Veillonella", "age"]
    assert signs.columns.tolist() == [1, 2, 3]
    assert signs.loc["Prevotella"].tolist() == [1, 1, 1]
    assert signs.loc["Streptococcus"].tolist() == [-1, 0, 1]
    assert signs.loc["Veillonella"].tolist() == [0, -1, -1]
    # A zero coefficient counts as not selected
    assert signs.loc["age"].tolist() == [1, 0, 0]


def test_sign_matrix_keeps_cluster_with_no_selection():
    signs = selection_sign_matrix({"a": {"x": -2.0}, "b": {}})

    assert signs.columns.tolist() == ["a", "b"]
    assert signs.loc["x"].tolist() == [-1, 0]


def test_sign_matrix_requires_results():
    with pytest.raises(InputContractError):
        selection_sign_matrix({})


def test_consistent_variables(per_cluster_results):
    signs = selection_sign_matrix(per_cluster_results)

    consistent = consistent_variables(signs, min_clusters=2)

    # Streptococcus flips sign and is dropped; age is selected only once
    assert consistent.to_dict() == {"Prevotella": 1, "Veillonella": -1}
    assert consistent.name == "sign"


def test_consistent_variables_threshold(per_cluster_results):
    signs = selection_sign_matrix(per_cluster_results)

    assert consistent_variables(signs, min_clusters=3).index.tolist() == ["Prevotella"]
    assert consistent_variables(signs, min_clusters=1).index.tolist() == [
        "Prevotella",
        "Veillonella",
        "age",
    ]


def test_consistent_variables_empty_when_nothing_shared():
    signs = pd.DataFrame({1: [1, 0], 2: [0, -1]}, index=["x", "y"])
    assert consistent_variables(signs, min_clusters=2).empty


def test_load_selection_results(tmp_path):
    csv_path = tmp_path / "selection.csv"
    csv_path.write_text(
        "cluster,variable,coefficient\n1,Prevotella,0.4\n1,age,-0.1\n2,Prevotella,0.2"
    )

    results = load_selection_results(csv_path)

    assert results == {1: {"Prevotella": 0.4, "age": -0.1}, 2: {"Prevotella": 0.2}}
    signs = selection_sign_matrix(results)
    assert consistent_variables(signs).to_dict() == {"Prevotella": 1}


def test_load_selection_results_rejects_duplicates(tmp_path):
    csv_path = tmp_path / "selection.csv"
    csv_path.write_text("cluster,variable,coefficient\n1,age,0.4\n1,age,0.1")

    with pytest.raises(InputContractError, match="twice"):
        load_selection_results(csv_path)


def test_load_selection_results_missing_column(tmp_path):
    csv_path = tmp_path / "selection.csv"
    csv_path.write_text("cluster,variable\n1,age")

    with pytest.raises(InputContractError, match="coefficient"):
        load_selection_results(csv_path)
