from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field


class RegressionThresholds(BaseModel):
    max_new_errors: int = Field(0, description="New critical/high findings tolerated before rollback.")
    max_test_failures: int = Field(0, description="Test failures tolerated before rollback.")
    max_error_rate: float = Field(0.05, description="Error rate above which the fix is rolled back.")
    rollback_score_threshold: float = Field(0.7, description="Weighted rollback score that triggers rollback.")


class MonitoringConfig(BaseModel):
    window_seconds: float = Field(30.0, description="Length of the post-application observation window.")
    poll_interval: float = Field(5.0, description="Seconds between signal polls.")
    stable_checks: int = Field(3, description="Consecutive clean polls that close the session early as resolved.")
    test_command: Optional[str] = Field(None, description="Command run after application; {file} is substituted.")
    test_timeout: int = Field(300, description="Timeout in seconds for the test command.")
    thresholds: RegressionThresholds = Field(default_factory=RegressionThresholds)


class PipelineConfig(BaseModel):
    stage_timeouts: Dict[str, float] = Field(
        default_factory=lambda: {
            "predict_impact": 30.0,
            "generate_fix": 120.0,
            "calibrate_confidence": 10.0,
            "apply": 30.0,
            "monitor": 600.0,
            "rollback_decision": 30.0,
        },
        description="Timeout in seconds per pipeline stage.",
    )
    default_stage_timeout: float = Field(60.0, description="Timeout for stages not listed in stage_timeouts.")
    stage_retries: int = Field(1, description="Retries per stage for transient errors.")
    block_on_high_risk: bool = Field(True, description="High-risk fixes stop before application and need review.")
    backup_dir: str = Field(".codemend/backups", description="Where original file contents are kept before a write.")
    validate_syntax: bool = Field(True, description="Reject fixes that leave a Python file unparsable.")
    history_size: int = Field(200, description="Finished pipelines kept for status queries.")
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @classmethod
    def default(cls) -> "PipelineConfig":
        return cls()
