# File: src/om_analysis/data/loader.py

import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple

import numpy as np
import pandas as pd
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from om_analysis.errors import InputContractError

logger = logging.getLogger(__name__)


def _reject_missing(v):
    if v is None or pd.isna(v):
        raise ValueError("Value must not be missing")
    return v


class SymptomRecord(BaseModel):
    """A Pydantic model for a single row of the patient-metadata table."""

    patient_id: str
    timepoint: float
    om_score: float

    @field_validator("patient_id", mode="before")
    @classmethod
    def id_to_string(cls, v) -> str:
        """Rejects missing identifiers and stringifies numeric ones."""
        _reject_missing(v)
        return str(v)

    @field_validator("timepoint", "om_score", mode="before")
    @classmethod
    def no_missing_numbers(cls, v):
        """NaN is a valid float, so it has to be rejected explicitly."""
        return _reject_missing(v)


class ClinicalRecord(BaseModel):
    """A Pydantic model for a single row of the clinical-feature table."""

    patient_id: str
    age: float = Field(gt=0)
    weight: float = Field(gt=0)
    height: float = Field(gt=0)
    sex: Literal["F", "M"]

    @field_validator("patient_id", mode="before")
    @classmethod
    def id_to_string(cls, v) -> str:
        _reject_missing(v)
        return str(v)

    @field_validator("age", "weight", "height", mode="before")
    @classmethod
    def no_missing_numbers(cls, v):
        return _reject_missing(v)

    @field_validator("sex", mode="before")
    @classmethod
    def normalise_sex(cls, v) -> str:
        """Accepts 'F'/'M' as well as 'female'/'male' in any case."""
        _reject_missing(v)
        mapping = {"f": "F", "female": "F", "m": "M", "male": "M"}
        return mapping.get(str(v).strip().lower(), v)


class PatientSeries(BaseModel):
    """An immutable severity-score series for one patient."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    timepoints: Tuple[float, ...]
    scores: Tuple[float, ...]

    @model_validator(mode="after")
    def check_series(self) -> "PatientSeries":
        if len(self.timepoints) == 0:
            raise InputContractError(f"Patient {self.patient_id} has an empty series")
        if len(self.timepoints) != len(self.scores):
            raise InputContractError(
                f"Patient {self.patient_id}: {len(self.timepoints)} timepoints "
                f"but {len(self.scores)} scores"
            )
        if np.isnan(self.timepoints).any() or np.isnan(self.scores).any():
            raise InputContractError(f"Patient {self.patient_id} has missing values")
        if np.any(np.diff(self.timepoints) <= 0):
            raise InputContractError(
                f"Patient {self.patient_id}: timepoints must be strictly increasing"
            )
        return self

    @property
    def span(self) -> Tuple[float, float]:
        return self.timepoints[0], self.timepoints[-1]


def mean_impute(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    """
    Replaces missing entries in each of `columns` with that column's mean.

    Raises:
        InputContractError: If a column is absent or has no observed values.
    """
    df = df.copy()
    for col in columns:
        if col not in df.columns:
            raise InputContractError(f"Cannot impute missing column '{col}'")
        try:
            values = pd.to_numeric(df[col], errors="raise")
        except (TypeError, ValueError) as e:
            raise InputContractError(f"Column '{col}' contains non-numeric values") from e
        if values.isna().all():
            raise InputContractError(f"Column '{col}' has no observed values to impute from")
        n_missing = int(values.isna().sum())
        if n_missing:
            logger.info(f"Mean-imputing {n_missing} missing value(s) in '{col}'")
        df[col] = values.fillna(values.mean())
    return df


def _check_columns(df: pd.DataFrame, required: List[str], source: Path) -> None:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise InputContractError(f"{source} is missing required column(s): {missing}")


def _read_symptom_csv(csv_path, id_col, time_col, score_col, impute_cols):
    if not csv_path.exists():
        raise FileNotFoundError(f"Symptom table not found at {csv_path}")

    df = pd.read_csv(csv_path, dtype={id_col: str})
    _check_columns(df, [id_col, time_col, score_col], csv_path)
    return mean_impute(df, impute_cols if impute_cols is not None else [score_col])


def _validate_symptom_rows(
    df: pd.DataFrame, id_col: str, time_col: str, score_col: str, errors: str
) -> Tuple[List[SymptomRecord], Dict[str, str]]:
    """
    Validates every row. With errors="skip", a patient with any invalid row
    is rejected as a whole and the reason is recorded instead of raised.
    """
    records, rejected = [], {}
    for row_number, row in enumerate(df.to_dict(orient="records")):
        try:
            records.append(
                SymptomRecord(patient_id=row[id_col], timepoint=row[time_col], om_score=row[score_col])
            )
        except ValidationError as e:
            if errors == "raise":
                raise
            patient_id = row[id_col]
            if patient_id is None or pd.isna(patient_id):
                logger.warning(f"Dropping symptom row {row_number} without a patient id")
                continue
            reason = f"row {row_number}: {e.errors()[0]['msg']}"
            rejected.setdefault(str(patient_id), reason)
            logger.warning(f"Rejecting patient {patient_id}: {reason}")

    return [rec for rec in records if rec.patient_id not in rejected], rejected


def _records_frame(records: List[SymptomRecord]) -> pd.DataFrame:
    return pd.DataFrame(
        [rec.model_dump() for rec in records],
        columns=["patient_id", "timepoint", "om_score"],
    )


def load_symptom_table(
    csv_path: Path,
    *,
    id_col: str = "id",
    time_col: str = "timepoint",
    score_col: str = "om_score",
    impute_cols: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Loads the patient-metadata table and validates every row.

    Args:
        csv_path: Path to the symptom CSV file.
        id_col: Column holding the patient identifier.
        time_col: Column holding the (real-valued) timepoint.
        score_col: Column holding the OM severity score.
        impute_cols: Columns to mean-impute before validation. Defaults to
            the score column.

    Returns:
        A DataFrame with columns `patient_id`, `timepoint` and `om_score`.

    Raises:
        FileNotFoundError: If the CSV does not exist.
        InputContractError: If a required column is missing.
        pydantic.ValidationError: If a row does not conform to the schema.
    """
    df = _read_symptom_csv(csv_path, id_col, time_col, score_col, impute_cols)
    records, _ = _validate_symptom_rows(df, id_col, time_col, score_col, errors="raise")
    logger.info(f"Loaded and validated {len(records)} symptom records from {csv_path}")
    return _records_frame(records)


def _series_for_patient(patient_id, group: pd.DataFrame, score_col: str) -> PatientSeries:
    group = group.sort_values("timepoint")
    duplicated = group["timepoint"][group["timepoint"].duplicated()]
    if not duplicated.empty:
        raise InputContractError(
            f"Patient {patient_id} has duplicate timepoint(s): {sorted(set(duplicated))}"
        )
    return PatientSeries(
        patient_id=str(patient_id),
        timepoints=tuple(group["timepoint"].astype(float)),
        scores=tuple(group[score_col].astype(float)),
    )


def _group_patient_series(
    df: pd.DataFrame, score_col: str, errors: str
) -> Tuple[Dict[str, PatientSeries], Dict[str, str]]:
    if errors not in ("raise", "skip"):
        raise InputContractError(f"errors must be 'raise' or 'skip', got '{errors}'")
    if df.empty:
        raise InputContractError("Cannot build patient series from an empty table")

    series, rejected = {}, {}
    for patient_id, group in df.groupby("patient_id", sort=True):
        try:
            series[str(patient_id)] = _series_for_patient(patient_id, group, score_col)
        except (InputContractError, ValidationError) as e:
            if errors == "raise":
                raise
            rejected[str(patient_id)] = str(e)
            logger.warning(f"Rejecting patient {patient_id}: {e}")
    return series, rejected


def build_patient_series(
    df: pd.DataFrame, score_col: str = "om_score", errors: Literal["raise", "skip"] = "raise"
) -> Dict[str, PatientSeries]:
    """
    Groups a validated symptom table into one series per patient.

    Rows are sorted by time within each patient; two rows at the same
    timepoint for one patient are a contract violation. With errors="skip"
    the offending patient is logged and left out instead.
    """
    series, _ = _group_patient_series(df, score_col, errors)
    return series


def load_patient_series(
    csv_path: Path,
    *,
    id_col: str = "id",
    time_col: str = "timepoint",
    score_col: str = "om_score",
    impute_cols: Optional[List[str]] = None,
    errors: Literal["raise", "skip"] = "skip",
) -> Tuple[Dict[str, PatientSeries], Dict[str, str]]:
    """
    Loads the symptom table straight into per-patient series.

    A contract violation confined to one patient (an invalid row, a duplicate
    timepoint) rejects only that patient when errors="skip"; table-wide
    problems such as a missing file or column always raise.

    Returns:
        The valid series keyed by patient_id, and the rejected patients
        mapped to the reason they were rejected.

    Raises:
        InputContractError: If no patient survives validation.
    """
    if errors not in ("raise", "skip"):
        raise InputContractError(f"errors must be 'raise' or 'skip', got '{errors}'")

    df = _read_symptom_csv(csv_path, id_col, time_col, score_col, impute_cols)
    records, rejected = _validate_symptom_rows(df, id_col, time_col, score_col, errors)
    if not records:
        raise InputContractError(f"No valid patient series in {csv_path}: {rejected}")

    series, rejected_series = _group_patient_series(_records_frame(records), "om_score", errors)
    rejected.update(rejected_series)
    if not series:
        raise InputContractError(f"No valid patient series in {csv_path}: {rejected}")

    if rejected:
        logger.warning(f"Rejected {len(rejected)} patient(s): {sorted(rejected)}")
    logger.info(f"Loaded {len(series)} patient series from {csv_path}")
    return series, rejected


def load_clinical_table(csv_path: Path, id_col: str = "id") -> pd.DataFrame:
    """
    Loads the clinical-feature table (age, weight in kg, height in cm, sex),
    validates it and adds a derived `bmi` column.
    """
    if not csv_path.exists():
        raise FileNotFoundError(f"Clinical table not found at {csv_path}")

    df = pd.read_csv(csv_path, dtype={id_col: str})
    _check_columns(df, [id_col, "age", "weight", "height", "sex"], csv_path)
    df = df.rename(columns={id_col: "patient_id"})

    records = [ClinicalRecord(**row) for row in df.to_dict(orient="records")]
    df = pd.DataFrame([rec.model_dump() for rec in records])

    duplicated = df["patient_id"][df["patient_id"].duplicated()]
    if not duplicated.empty:
        raise InputContractError(
            f"Clinical table lists patient(s) more than once: {sorted(set(duplicated))}"
        )

    df["bmi"] = df["weight"] / (df["height"] / 100.0) ** 2
    return df
