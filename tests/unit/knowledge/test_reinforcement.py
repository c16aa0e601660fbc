import asyncio

from codemend.core.events import ISSUE_TRANSITIONED, EventBus
from codemend.knowledge.reinforcement import KnowledgeReinforcer
from codemend.knowledge.store import KnowledgeStore
from codemend.models.knowledge import KnowledgeEntry, KnowledgeType
from codemend.storage.memory import InMemoryKnowledgeBackend


def test_rejection_counts_as_failed_use():
    store = KnowledgeStore(InMemoryKnowledgeBackend())
    events = EventBus()
    KnowledgeReinforcer(store).attach(events)

    async def scenario():
        stored = (await store.add_knowledge(KnowledgeEntry(type=KnowledgeType.FIX, content="swap print for logger"))).entry
        await events.emit(ISSUE_TRANSITIONED, {"to_status": "rejected", "knowledge_entry_id": stored.id})
        await events.emit(ISSUE_TRANSITIONED, {"to_status": "approved", "knowledge_entry_id": stored.id})
        await events.emit(ISSUE_TRANSITIONED, {"to_status": "rejected", "knowledge_entry_id": None})
        return await store.get(stored.id)

    entry = asyncio.run(scenario())
    assert entry.usage_count == 1
    assert entry.success_count == 0


def test_missing_entry_does_not_break_publisher():
    store = KnowledgeStore(InMemoryKnowledgeBackend())
    events = EventBus()
    KnowledgeReinforcer(store).attach(events)
    delivered = asyncio.run(events.emit(ISSUE_TRANSITIONED, {"to_status": "rejected", "knowledge_entry_id": "kn-gone"}))
    assert delivered == 1
