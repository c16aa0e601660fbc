from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AuditEvent(BaseModel):
    timestamp: datetime = Field(..., description="The timestamp of the audit event.")
    event_type: str = Field(..., description="The type of event, e.g. 'issue.transitioned' or 'cli.crawl'.")
    source: str = Field("codemend", description="The component that produced the event.")
    issue_id: Optional[str] = Field(None, description="The issue the event concerns, if any.")
    actor: Optional[str] = Field(None, description="Who triggered the event, if known.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event-specific details.")
