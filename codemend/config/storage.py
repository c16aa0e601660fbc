from __future__ import annotations

from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    backend: str = Field("memory", description="'memory' or 'sql'.")
    url: str = Field("sqlite:///.codemend/codemend.db", description="SQLAlchemy database URL for the sql backend.")
    echo: bool = Field(False, description="Log SQL statements.")

    @classmethod
    def default(cls) -> "StorageConfig":
        return cls()
