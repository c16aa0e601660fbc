from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class KnowledgeConfig(BaseModel):
    duplicate_similarity: float = Field(
        0.9, description="Content similarity at or above which an entry from the same source is a duplicate."
    )
    search_min_similarity: float = Field(0.0, description="Default similarity floor for search results.")
    embedding_dimensions: int = Field(256, description="Size of the token-hash embedding vectors.")
    seed_file: Optional[str] = Field(None, description="YAML file loaded into the store on startup.")
    max_team_size: int = Field(3, description="Largest contributor team the team detector will form.")

    @classmethod
    def default(cls) -> "KnowledgeConfig":
        return cls()
