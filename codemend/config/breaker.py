from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class BreakerConfig(BaseModel):
    failure_threshold: int = Field(5, ge=1, description="Consecutive failures that open the circuit.")
    failure_window: float = Field(60.0, description="Seconds within which failures are counted as consecutive.")
    reset_timeout: float = Field(30.0, description="Seconds an open circuit waits before allowing a trial.")
    call_timeout: Optional[float] = Field(30.0, description="Per-call timeout in seconds; a timeout counts as a failure.")

    @classmethod
    def default(cls) -> "BreakerConfig":
        return cls()
