from typing import Any, Dict, Optional

import httpx
import structlog

from codemend.config.audit import WebhookConfig
from codemend.core.events import Event, EventBus

logger = structlog.get_logger(__name__)


class WebhookClient:
    """Forwards selected bus events to an HTTP endpoint as JSON."""

    def __init__(self, config: WebhookConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._config = config
        self._transport = transport

    def attach(self, events: EventBus) -> None:
        for topic in self._config.topics:
            events.subscribe(topic, self.handle)

    async def handle(self, event: Event) -> None:
        await self.send(event.topic, event.model_dump(mode="json")["payload"])

    async def send(self, event_type: str, payload: Dict[str, Any]) -> bool:
        if not self._config.enabled:
            return False

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self._config.url,
                    json={"event_type": event_type, "payload": payload},
                    headers=self._config.headers,
                    timeout=self._config.timeout,
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("webhook_request_failed", url=self._config.url, event_type=event_type, error=str(e))
            return False

        logger.info("webhook_sent_successfully", url=self._config.url, event_type=event_type)
        return True
