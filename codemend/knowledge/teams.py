"""Contributor team detection.

Teams are grown greedily: each team starts from the remaining contributor
with the broadest category set and repeatedly adds the candidate with the
best marginal gain (average category complementarity with current members
plus newly covered categories). For ``n`` contributors and a maximum team
size ``k`` this costs O(k * n^2) and yields disjoint teams.
"""
from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from codemend.core.errors import ValidationError
from codemend.models.knowledge import KnowledgeEntry, KnowledgeType

TEAM_SPECIALIZATIONS: Dict[str, Set[str]] = {
    "frontend": {"ui", "css", "html", "javascript"},
    "backend": {"api", "server", "database"},
    "testing": {"test", "testing"},
    "security": {"security", "auth"},
    "performance": {"performance", "optimization"},
    "documentation": {"documentation", "docs"},
    "full-stack": {"feature", "bug", "ui", "api"},
}

# Coverage is normalized against these counts, then capped at 1.
CATEGORY_NORMALIZER = 20
FILE_TYPE_NORMALIZER = 10


class Contributor(BaseModel):
    id: str
    categories: Set[str] = Field(default_factory=set)
    file_types: Set[str] = Field(default_factory=set)


class Team(BaseModel):
    members: List[str]
    score: float
    complementarity: float
    category_coverage: float
    file_type_coverage: float
    specialization: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    file_types: List[str] = Field(default_factory=list)

    @property
    def name(self) -> str:
        label = self.specialization or "generalist"
        return f"{label}-team-{'-'.join(self.members)}"


def complementarity(a: Contributor, b: Contributor) -> float:
    """1 - Jaccard overlap of the two category sets."""
    union = a.categories | b.categories
    if not union:
        return 0.0
    return 1.0 - len(a.categories & b.categories) / len(union)


def detect_specialization(categories: Set[str]) -> Optional[str]:
    best, best_hits = None, 1
    for name, wanted in TEAM_SPECIALIZATIONS.items():
        hits = len(categories & wanted)
        if hits > best_hits:
            best, best_hits = name, hits
    return best


def evaluate_team(members: List[Contributor]) -> Team:
    categories: Set[str] = set()
    file_types: Set[str] = set()
    for member in members:
        categories |= member.categories
        file_types |= member.file_types

    pairs = 0
    total = 0.0
    for i in range(len(members)):
        for j in range(i + 1, len(members)):
            total += complementarity(members[i], members[j])
            pairs += 1
    comp = total / pairs if pairs else 0.0

    category_coverage = min(1.0, len(categories) / CATEGORY_NORMALIZER)
    file_type_coverage = min(1.0, len(file_types) / FILE_TYPE_NORMALIZER)
    specialization = detect_specialization(categories)
    score = (
        category_coverage * 0.3
        + file_type_coverage * 0.2
        + comp * 0.3
        + (0.2 if specialization else 0.0)
    )
    return Team(
        members=[m.id for m in members],
        score=round(score, 4),
        complementarity=round(comp, 4),
        category_coverage=category_coverage,
        file_type_coverage=file_type_coverage,
        specialization=specialization,
        categories=sorted(categories),
        file_types=sorted(file_types),
    )


def _seed_order(contributor: Contributor):
    return (-len(contributor.categories), contributor.id)


def detect_teams(
    contributors: Iterable[Contributor],
    min_size: int = 3,
    max_size: int = 3,
    min_score: float = 0.5,
) -> List[Team]:
    if min_size < 2 or max_size < min_size:
        raise ValidationError("Team sizes must satisfy 2 <= min_size <= max_size")
    contributors = list(contributors)
    ids = [c.id for c in contributors]
    if len(ids) != len(set(ids)):
        raise ValidationError("Contributor ids must be unique")

    remaining = sorted(contributors, key=_seed_order)
    teams: List[Team] = []

    while len(remaining) >= min_size:
        seed = remaining.pop(0)
        members = [seed]
        covered = set(seed.categories)
        # running sum of complementarity between each candidate and the current members
        comp_sums = {c.id: complementarity(c, seed) for c in remaining}

        while len(members) < max_size and remaining:
            chosen = max(
                remaining,
                key=lambda c: comp_sums[c.id] / len(members) + len(c.categories - covered) / CATEGORY_NORMALIZER,
            )
            remaining.remove(chosen)
            members.append(chosen)
            covered |= chosen.categories
            for candidate in remaining:
                comp_sums[candidate.id] += complementarity(candidate, chosen)

        team = evaluate_team(members)
        if len(members) >= min_size and team.score >= min_score:
            teams.append(team)
        else:
            # Only the seed is spent; the others stay available for later teams.
            remaining = list(heapq.merge(remaining, sorted(members[1:], key=_seed_order), key=_seed_order))

    teams.sort(key=lambda t: t.score, reverse=True)
    return teams


def team_to_entry(team: Team, source: str = "team-detection") -> KnowledgeEntry:
    specialization = team.specialization or "generalist"
    content = (
        f"Team {team.name}: {', '.join(team.members)} work well together "
        f"({specialization}); covers {', '.join(team.categories) or 'no categories'}."
    )
    return KnowledgeEntry(
        type=KnowledgeType.PATTERN,
        content=content,
        source=source,
        confidence=min(1.0, team.score),
        tags=["team", specialization],
        metadata={
            "members": team.members,
            "complementarity": team.complementarity,
            "categories": team.categories,
            "file_types": team.file_types,
        },
    )
