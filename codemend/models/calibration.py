from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

ANY = "*"


class CalibrationRecord(BaseModel):
    """One (predicted, actual) pair; immutable once written."""

    model_config = ConfigDict(frozen=True)

    fix_id: str
    method: str = "unknown"
    domain: str = "unknown"
    predicted: float = Field(..., ge=0.0, le=1.0)
    actual: bool
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CalibrationContext(BaseModel):
    method: str = "unknown"
    domain: str = "unknown"
    file_path: Optional[str] = None
    issue_type: Optional[str] = None


class ConfidenceInterval(BaseModel):
    lower: float
    upper: float
    margin: float


class CalibrationResult(BaseModel):
    original: float
    calibrated: float
    sample_count: int
    bucket: str
    blend_weight: float
    interval: ConfidenceInterval
    reliability: str


class BandCalibration(BaseModel):
    count: int
    mean_predicted: float
    mean_actual: float


class CalibrationReport(BaseModel):
    method: Optional[str] = None
    domain: Optional[str] = None
    sample_count: int = 0
    mean_predicted: float = 0.0
    mean_actual: float = 0.0
    # |mean predicted - observed success rate|
    calibration_error: float = 0.0
    mean_absolute_error: float = 0.0
    expected_calibration_error: float = 0.0
    bias: float = 0.0
    reliability: str = "low"
    bands: Dict[str, BandCalibration] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)
