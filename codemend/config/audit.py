from typing import Optional

from pydantic import BaseModel, Field


class AuditConfig(BaseModel):
    enabled: bool = Field(True, description="Enable or disable audit logging.")
    log_dir: str = Field(".codemend/audit", description="Directory to store audit log files.")
    max_file_size_mb: int = Field(10, description="Maximum size of a single audit log file in MB before rotation.")


class WebhookConfig(BaseModel):
    url: Optional[str] = Field(None, description="Endpoint that receives pipeline and review events.")
    headers: dict = Field(default_factory=dict, description="Extra HTTP headers sent with each event.")
    timeout: float = Field(10.0, description="Request timeout in seconds.")
    topics: list = Field(
        default_factory=lambda: ["pipeline.completed", "pipeline.failed", "fix.rolled_back"],
        description="Event topics forwarded to the webhook.",
    )

    @property
    def enabled(self) -> bool:
        return bool(self.url)
