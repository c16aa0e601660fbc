import asyncio

import pytest

from codemend.core.errors import EntryNotFound, ValidationError
from codemend.knowledge.store import KnowledgeStore
from codemend.models.knowledge import KnowledgeEntry, KnowledgeFilters, KnowledgeType, ranking_score
from codemend.storage.memory import InMemoryKnowledgeBackend

USAGE_FIELDS = {"usage_count", "success_count", "success_rate", "updated_at"}


def make_store():
    return KnowledgeStore(InMemoryKnowledgeBackend())


def entry(content, source="crawler", tags=None, confidence=0.5, type=KnowledgeType.FIX):
    return KnowledgeEntry(type=type, content=content, source=source, tags=tags or [], confidence=confidence)


def test_search_results_are_ordered_by_score():
    store = make_store()

    async def scenario():
        a = (await store.add_knowledge(entry("use parameterized queries", confidence=0.9))).entry
        b = (await store.add_knowledge(entry("close file handles with a context manager", confidence=0.6))).entry
        c = (await store.add_knowledge(entry("replace print with logging", confidence=0.8))).entry
        for _ in range(5):
            await store.record_usage(a.id, success=True)
        await store.record_usage(b.id, success=True)
        await store.record_usage(b.id, success=False)
        for _ in range(3):
            await store.record_usage(c.id, success=True)
        return await store.search("", KnowledgeFilters(limit=10))

    results = asyncio.run(scenario())
    scores = [r.score for r in results]
    assert len(results) == 3
    assert scores == sorted(scores, reverse=True)
    assert all(r.score == pytest.approx(ranking_score(r.entry)) for r in results)
    assert results[0].entry.content == "use parameterized queries"


def test_ties_prefer_most_recent_update():
    store = make_store()

    async def scenario():
        older = (await store.add_knowledge(entry("first unused entry"))).entry
        newer = (await store.add_knowledge(entry("second, totally different advice"))).entry
        return older, newer, await store.search()

    older, newer, results = asyncio.run(scenario())
    assert [r.entry.id for r in results] == [newer.id, older.id]


def test_record_usage_touches_only_usage_fields():
    store = make_store()

    async def scenario():
        stored = (await store.add_knowledge(entry("guard against None", tags=["bug"], confidence=0.7))).entry
        updated = await store.record_usage(stored.id, success=True)
        return stored, updated

    before, after = asyncio.run(scenario())
    assert after.usage_count == 1
    assert after.success_count == 1
    assert after.success_rate == 1.0
    assert before.model_dump(exclude=USAGE_FIELDS) == after.model_dump(exclude=USAGE_FIELDS)


def test_caller_supplied_statistics_are_ignored():
    store = make_store()
    raw = entry("trust me, this always works")
    raw = raw.model_copy(update={"usage_count": 99, "success_count": 99})
    stored = asyncio.run(store.add_knowledge(raw)).entry
    assert stored.usage_count == 0
    assert stored.success_count == 0


def test_duplicates_from_same_source_are_merged():
    store = make_store()

    async def scenario():
        first = await store.add_knowledge(
            entry("Replace bare except with except Exception", tags=["PY_BARE_EXCEPT"], confidence=0.6)
        )
        second = await store.add_knowledge(
            entry("Replace bare except with except Exception.", tags=["PY_BARE_EXCEPT", "python"], confidence=0.8)
        )
        other_source = await store.add_knowledge(
            entry("Replace bare except with except Exception", source="import", tags=["PY_BARE_EXCEPT"])
        )
        return first, second, other_source, await store.backend.all()

    first, second, other_source, stored = asyncio.run(scenario())
    assert first.status == "stored"
    assert second.status == "duplicate"
    assert second.entry.id == first.entry.id
    assert set(second.entry.tags) == {"PY_BARE_EXCEPT", "python"}
    assert second.entry.confidence == 0.8
    assert other_source.status == "stored"
    assert len(stored) == 2


def test_search_filters():
    store = make_store()

    async def scenario():
        await store.add_knowledge(entry("bare except clause hides errors", tags=["python"], confidence=0.9))
        await store.add_knowledge(entry("parameterize sql queries to avoid injection", tags=["security"], confidence=0.9))
        await store.add_knowledge(entry("low confidence hint", tags=["python"], confidence=0.1))
        by_tag = await store.search("", KnowledgeFilters(tags=["python"], min_confidence=0.5))
        by_query = await store.search("bare except", KnowledgeFilters(min_similarity=0.5))
        return by_tag, by_query

    by_tag, by_query = asyncio.run(scenario())
    assert [r.entry.content for r in by_tag] == ["bare except clause hides errors"]
    contents = [r.entry.content for r in by_query]
    assert "bare except clause hides errors" in contents
    assert "parameterize sql queries to avoid injection" not in contents
    assert all(r.similarity >= 0.5 for r in by_query)


def test_unknown_entry_and_empty_content():
    store = make_store()
    with pytest.raises(EntryNotFound):
        asyncio.run(store.record_usage("kn-missing", success=True))
    with pytest.raises(EntryNotFound):
        asyncio.run(store.get("kn-missing"))
    with pytest.raises(ValidationError):
        asyncio.run(store.add_knowledge(entry("   ")))


def test_absorb_and_seed(tmp_path):
    store = make_store()
    seed = tmp_path / "seed.yaml"
    seed.write_text(
        """
entries:
  - type: fix
    content: "Use logging instead of print"
    tags: [DEBUG_OUTPUT]
    confidence: 0.7
    usage_count: 50
  - type: pattern
    content: "Bare except hides KeyboardInterrupt"
    tags: [PY_BARE_EXCEPT]
"""
    )

    async def scenario():
        seeded = await store.seed_from_file(seed)
        absorbed = await store.absorb(
            [entry("Use logging instead of print", source="x", tags=["DEBUG_OUTPUT"]), entry("brand new idea")],
            source="seed",
        )
        return seeded, absorbed, await store.statistics()

    seeded, absorbed, stats = asyncio.run(scenario())
    assert seeded == {"stored": 2, "duplicate": 0, "invalid": 0}
    assert absorbed == {"stored": 1, "duplicate": 1, "invalid": 0}
    assert stats["total"] == 3
    assert stats["total_usage"] == 0


def test_top_returns_best_entries():
    store = make_store()

    async def scenario():
        good = (await store.add_knowledge(entry("a proven fix", confidence=0.9))).entry
        await store.add_knowledge(entry("an untested idea", confidence=0.9))
        await store.record_usage(good.id, success=True)
        return good, await store.top(limit=1)

    good, top = asyncio.run(scenario())
    assert [e.id for e in top] == [good.id]
