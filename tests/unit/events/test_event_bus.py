import asyncio

import pytest

from codemend.core.capabilities import FIX_GENERATOR, CapabilityRegistry
from codemend.core.errors import CodemendError, GeneratorUnavailable
from codemend.core.events import WILDCARD, EventBus


def test_subscribers_receive_events_in_order():
    bus = EventBus()
    received = []

    async def first(event):
        received.append(("first", event.topic))

    async def everything(event):
        received.append(("all", event.topic))

    bus.subscribe("pipeline.completed", first)
    bus.subscribe(WILDCARD, everything)
    delivered = asyncio.run(bus.emit("pipeline.completed", {"pipeline_id": "p1"}))
    assert delivered == 2
    assert received == [("first", "pipeline.completed"), ("all", "pipeline.completed")]


def test_failing_subscriber_is_absorbed():
    bus = EventBus()
    received = []

    async def broken(event):
        raise RuntimeError("boom")

    async def healthy(event):
        received.append(event.payload)

    bus.subscribe("x", broken)
    bus.subscribe("x", healthy)
    assert asyncio.run(bus.emit("x", {"n": 1})) == 1
    assert received == [{"n": 1}]

    bus.unsubscribe("x", healthy)
    assert asyncio.run(bus.emit("x", {})) == 0


def test_capabilities_expose_unavailable_branch():
    registry = CapabilityRegistry()
    registry.register(FIX_GENERATOR, None)
    assert registry.get(FIX_GENERATOR) is None
    assert FIX_GENERATOR not in registry
    with pytest.raises(GeneratorUnavailable):
        registry.require(FIX_GENERATOR, GeneratorUnavailable())

    registry.register("audit", object())
    assert registry.available() == ["audit"]
    with pytest.raises(CodemendError):
        registry.get("audit", str)
