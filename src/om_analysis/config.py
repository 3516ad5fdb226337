from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ClusteringConfig(BaseModel):
    """Parameters for a single trajectory clustering run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    seed: int
    grid_step: float = Field(default=1.0, gt=0)
    k_max: int = Field(default=6, ge=1)
    n_references: int = Field(default=50, ge=1)
    min_overlap: int = Field(default=2, ge=1)
    normalize: bool = True
    undefined_policy: Literal["mean", "raise"] = "mean"
