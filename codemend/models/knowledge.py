from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from codemend.models.issue import new_id


class KnowledgeType(str, Enum):
    PATTERN = "pattern"
    FIX = "fix"


class KnowledgeEntry(BaseModel):
    """A reusable pattern or fix description.

    Usage statistics are only ever written by ``KnowledgeStore.record_usage``;
    ``success_rate`` is derived from them and cannot be assigned.
    """

    id: str = Field(default_factory=lambda: new_id("kn"))
    type: KnowledgeType
    content: str
    source: str = "unknown"
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    usage_count: int = Field(0, ge=0)
    success_count: int = Field(0, ge=0)
    tags: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @computed_field
    @property
    def success_rate(self) -> float:
        if self.usage_count == 0:
            return 0.0
        return self.success_count / self.usage_count

    @property
    def score(self) -> float:
        return ranking_score(self)


def ranking_score(entry: KnowledgeEntry) -> float:
    """successRate x confidence x log(1 + usageCount)."""
    return entry.success_rate * entry.confidence * math.log1p(entry.usage_count)


class KnowledgeFilters(BaseModel):
    type: Optional[KnowledgeType] = None
    tags: List[str] = Field(default_factory=list)
    source: Optional[str] = None
    min_confidence: float = 0.0
    min_similarity: Optional[float] = None
    limit: int = Field(10, ge=1, le=500)


class ScoredEntry(BaseModel):
    entry: KnowledgeEntry
    score: float
    similarity: Optional[float] = None


class AddResult(BaseModel):
    status: str  # "stored" | "duplicate"
    entry: KnowledgeEntry
