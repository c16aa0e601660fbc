from __future__ import annotations

import structlog

from codemend.core.errors import CodemendError
from codemend.core.events import ISSUE_TRANSITIONED, Event, EventBus
from codemend.knowledge.store import KnowledgeStore
from codemend.models.issue import ReviewStatus

logger = structlog.get_logger(__name__)


class KnowledgeReinforcer:
    """Counts a reviewer rejecting a knowledge-sourced fix as a failed use of that entry.

    Applied fixes are scored by the fix pipeline once monitoring ends.
    """

    def __init__(self, store: KnowledgeStore):
        self.store = store

    def attach(self, events: EventBus) -> None:
        events.subscribe(ISSUE_TRANSITIONED, self.handle)

    async def handle(self, event: Event) -> None:
        entry_id = event.payload.get("knowledge_entry_id")
        if not entry_id or event.payload.get("to_status") != ReviewStatus.REJECTED.value:
            return
        try:
            await self.store.record_usage(entry_id, success=False)
        except CodemendError as e:
            logger.warning("knowledge_reinforcement_failed", entry_id=entry_id, error=str(e))
