"""In-process event channel between the review state machine, the fix
pipeline and downstream subscribers (knowledge reinforcement, audit, webhooks).
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

ISSUE_DETECTED = "issue.detected"
ISSUE_TRANSITIONED = "issue.transitioned"
PIPELINE_STARTED = "pipeline.started"
PIPELINE_COMPLETED = "pipeline.completed"
PIPELINE_FAILED = "pipeline.failed"
FIX_ROLLED_BACK = "fix.rolled_back"
CRAWL_COMPLETED = "crawl.completed"

WILDCARD = "*"


class Event(BaseModel):
    topic: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    source: str = "codemend"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[Event], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        """Registers ``handler`` for ``topic``; use ``"*"`` for every topic."""
        self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        if handler in self._handlers.get(topic, []):
            self._handlers[topic].remove(handler)

    async def publish(self, event: Event) -> int:
        """Delivers ``event`` to its subscribers in registration order.

        Returns the number of handlers that completed without raising.
        """
        delivered = 0
        for handler in list(self._handlers.get(event.topic, [])) + list(self._handlers.get(WILDCARD, [])):
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                logger.warning("event_handler_failed", topic=event.topic, error=str(e))
        return delivered

    async def emit(self, topic: str, payload: Dict[str, Any], source: str = "codemend") -> int:
        return await self.publish(Event(topic=topic, payload=payload, source=source))
