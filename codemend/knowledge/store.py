"""Ranked repository of reusable patterns and fixes.

Ranking is ``success_rate * confidence * log(1 + usage_count)``, descending,
ties broken by the most recent update. Usage statistics are written only by
``record_usage``; entries arriving through ``add_knowledge``, ``absorb`` or
seeding start with no recorded usage.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from difflib import SequenceMatcher
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import structlog
import yaml

from codemend.config.knowledge import KnowledgeConfig
from codemend.core.errors import EntryNotFound, ValidationError
from codemend.knowledge.embeddings import Embedder, HashingEmbedder, cosine_similarity
from codemend.knowledge.teams import Contributor, Team, detect_teams, team_to_entry
from codemend.models.knowledge import (
    AddResult,
    KnowledgeEntry,
    KnowledgeFilters,
    KnowledgeType,
    ScoredEntry,
    ranking_score,
)
from codemend.resilience.circuit_breaker import CircuitBreaker
from codemend.storage.interfaces import KnowledgeBackend

logger = structlog.get_logger(__name__)


def _sort_key(entry: KnowledgeEntry):
    return (ranking_score(entry), entry.updated_at.timestamp())


def _tags_overlap(a: Iterable[str], b: Iterable[str]) -> bool:
    a, b = set(a), set(b)
    if not a and not b:
        return True
    return bool(a & b)


class KnowledgeStore:
    def __init__(
        self,
        backend: KnowledgeBackend,
        config: Optional[KnowledgeConfig] = None,
        embedder: Optional[Embedder] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.backend = backend
        self.config = config or KnowledgeConfig.default()
        self.embedder = embedder or HashingEmbedder(self.config.embedding_dimensions)
        self.breaker = breaker
        self._write_lock = asyncio.Lock()

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self.breaker is None:
            return await fn(*args)
        return await self.breaker.call(fn, *args)

    def _embedding_for(self, entry: KnowledgeEntry) -> List[float]:
        if entry.embedding and len(entry.embedding) == getattr(self.embedder, "dimensions", len(entry.embedding)):
            return entry.embedding
        return self.embedder.embed(entry.content)

    def is_duplicate(self, candidate: KnowledgeEntry, existing: KnowledgeEntry) -> bool:
        if candidate.type != existing.type or candidate.source != existing.source:
            return False
        if not _tags_overlap(candidate.tags, existing.tags):
            return False
        ratio = SequenceMatcher(None, candidate.content, existing.content).ratio()
        return ratio >= self.config.duplicate_similarity

    async def add_knowledge(self, entry: KnowledgeEntry) -> AddResult:
        """Stores ``entry`` unless a near-identical entry from the same source exists.

        A duplicate is merged into the existing entry (tags and metadata
        unioned, the higher confidence kept) and returned with status
        ``"duplicate"``.
        """
        if not entry.content.strip():
            raise ValidationError("Knowledge entry content must not be empty")

        async with self._write_lock:
            existing_entries = await self._call(self.backend.all, entry.type)
            for existing in existing_entries:
                if self.is_duplicate(entry, existing):
                    merged = self._merge(existing, entry)
                    await self._call(self.backend.put, merged)
                    logger.debug("knowledge_duplicate_merged", entry_id=existing.id, source=entry.source)
                    return AddResult(status="duplicate", entry=merged)

            now = datetime.now(timezone.utc)
            fresh = entry.model_copy(
                update={
                    "usage_count": 0,
                    "success_count": 0,
                    "created_at": now,
                    "updated_at": now,
                    "embedding": self.embedder.embed(entry.content),
                }
            )
            await self._call(self.backend.put, fresh)
            logger.info("knowledge_stored", entry_id=fresh.id, type=fresh.type.value, source=fresh.source)
            return AddResult(status="stored", entry=fresh)

    @staticmethod
    def _merge(existing: KnowledgeEntry, incoming: KnowledgeEntry) -> KnowledgeEntry:
        tags = list(existing.tags) + [t for t in incoming.tags if t not in existing.tags]
        metadata = {**incoming.metadata, **existing.metadata}
        metadata["merged_count"] = int(existing.metadata.get("merged_count", 0)) + 1
        return existing.model_copy(
            update={
                "tags": tags,
                "metadata": metadata,
                "confidence": max(existing.confidence, incoming.confidence),
                "updated_at": datetime.now(timezone.utc),
            }
        )

    async def get(self, entry_id: str) -> KnowledgeEntry:
        entry = await self._call(self.backend.get, entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    async def search(self, query: str = "", filters: Optional[KnowledgeFilters] = None) -> List[ScoredEntry]:
        filters = filters or KnowledgeFilters()
        candidates = await self._call(self.backend.all, filters.type)

        min_similarity = filters.min_similarity
        if min_similarity is None:
            min_similarity = self.config.search_min_similarity
        query_vector = self.embedder.embed(query) if query.strip() else None

        matched = []
        for entry in candidates:
            if filters.source is not None and entry.source != filters.source:
                continue
            if filters.tags and not set(filters.tags) & set(entry.tags):
                continue
            if entry.confidence < filters.min_confidence:
                continue
            similarity = None
            if query_vector is not None:
                similarity = cosine_similarity(query_vector, self._embedding_for(entry))
                if similarity < min_similarity:
                    continue
            matched.append((entry, similarity))

        matched.sort(key=lambda pair: _sort_key(pair[0]), reverse=True)
        return [
            ScoredEntry(entry=entry, score=ranking_score(entry), similarity=similarity)
            for entry, similarity in matched[: filters.limit]
        ]

    async def record_usage(self, entry_id: str, success: bool) -> KnowledgeEntry:
        """Records one use of an entry and whether it worked."""
        updated = await self._call(self.backend.record_usage, entry_id, success)
        if updated is None:
            raise EntryNotFound(entry_id)
        logger.debug("knowledge_usage_recorded", entry_id=entry_id, success=success, usage=updated.usage_count)
        return updated

    async def top(self, type: Optional[KnowledgeType] = None, limit: int = 10) -> List[KnowledgeEntry]:
        entries = await self._call(self.backend.all, type)
        entries.sort(key=_sort_key, reverse=True)
        return entries[:limit]

    async def absorb(self, entries: Iterable[KnowledgeEntry], source: Optional[str] = None) -> Dict[str, int]:
        """Imports entries from another project, suppressing duplicates."""
        counts = {"stored": 0, "duplicate": 0, "invalid": 0}
        for entry in entries:
            if source is not None:
                entry = entry.model_copy(update={"source": source})
            try:
                result = await self.add_knowledge(entry)
            except ValidationError as e:
                logger.warning("knowledge_absorb_skipped", entry_id=entry.id, error=str(e))
                counts["invalid"] += 1
                continue
            counts[result.status] += 1
        logger.info("knowledge_absorbed", source=source, **counts)
        return counts

    async def seed_from_file(self, path: Union[str, Path]) -> Dict[str, int]:
        """Loads entries from a YAML list (or a mapping with an ``entries`` list)."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or []
        if isinstance(data, dict):
            data = data.get("entries", [])
        if not isinstance(data, list):
            raise ValidationError(f"Seed file {path} must contain a list of entries")

        entries = []
        for raw in data:
            raw = dict(raw)
            raw.setdefault("source", "seed")
            for stat in ("usage_count", "success_count", "success_rate"):
                raw.pop(stat, None)
            entries.append(KnowledgeEntry.model_validate(raw))
        return await self.absorb(entries)

    async def detect_and_record_teams(
        self,
        contributors: Iterable[Contributor],
        min_size: int = 3,
        max_size: int = 3,
        min_score: float = 0.5,
    ) -> Tuple[List[Team], Dict[str, int]]:
        """Groups contributors into teams and stores one pattern entry per team.

        Returns the teams, best first, and the ``absorb`` counts. A team
        already on record comes back as a duplicate instead of a second entry.
        """
        teams = detect_teams(contributors, min_size=min_size, max_size=max_size, min_score=min_score)
        counts = await self.absorb([team_to_entry(team) for team in teams])
        logger.info("teams_recorded", teams=len(teams), **counts)
        return teams, counts

    async def statistics(self) -> Dict[str, Any]:
        entries = await self._call(self.backend.all, None)
        used = [e for e in entries if e.usage_count]
        by_type: Dict[str, int] = {}
        for entry in entries:
            by_type[entry.type.value] = by_type.get(entry.type.value, 0) + 1
        return {
            "total": len(entries),
            "by_type": by_type,
            "total_usage": sum(e.usage_count for e in entries),
            "average_confidence": sum(e.confidence for e in entries) / len(entries) if entries else 0.0,
            "average_success_rate": sum(e.success_rate for e in used) / len(used) if used else 0.0,
        }
