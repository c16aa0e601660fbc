from __future__ import annotations

from pydantic import BaseModel, Field


class CalibrationConfig(BaseModel):
    prior_strength: float = Field(
        10.0, gt=0, description="Pseudo-sample count of the raw score; history weight is n / (n + prior_strength)."
    )
    max_records_per_bucket: int = Field(1000, description="Oldest records are dropped beyond this many per bucket.")
    confidence_level_z: float = Field(1.96, description="z value of the reported confidence interval.")

    @classmethod
    def default(cls) -> "CalibrationConfig":
        return cls()
