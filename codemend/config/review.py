from __future__ import annotations

from pydantic import BaseModel, Field


class ReviewConfig(BaseModel):
    auto_approve_min_confidence: float = Field(
        0.85, description="Calibrated confidence a safe fix needs before the safe-tier policy approves it."
    )
    batch_pattern_threshold: int = Field(
        3, description="Same (type, severity) auto-approvals in one batch needed to record a batch pattern."
    )

    @classmethod
    def default(cls) -> "ReviewConfig":
        return cls()
