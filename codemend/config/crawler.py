from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class CrawlerConfig(BaseModel):
    extensions: List[str] = Field(
        default_factory=lambda: [".py", ".js", ".jsx", ".ts", ".tsx"],
        description="Only files with these extensions are crawled.",
    )
    exclude_dirs: List[str] = Field(
        default_factory=lambda: [".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".codemend"],
        description="Directory names that are never descended into.",
    )
    respect_gitignore: bool = Field(True, description="Skip files matched by the root .gitignore.")
    max_file_size_kb: int = Field(512, description="Files larger than this are skipped.")
    skip_unchanged: bool = Field(False, description="Skip files whose content hash matches the previous crawl.")
    auto_fix: bool = Field(False, description="Let the auto-approval policy approve eligible issues during the crawl.")
    knowledge_hint_confidence: float = Field(
        0.8, description="Minimum knowledge entry confidence for a prior fix to be attached as a suggestion."
    )
    max_line_length: int = Field(120, description="Line length above which the long-line detector reports.")

    @classmethod
    def default(cls) -> "CrawlerConfig":
        return cls()


class ParallelCrawlConfig(BaseModel):
    concurrency: int = Field(10, ge=1, description="Maximum number of crawls running at the same time.")
    history_size: int = Field(100, description="Number of finished crawl handles kept for status queries.")

    @classmethod
    def default(cls) -> "ParallelCrawlConfig":
        return cls()
