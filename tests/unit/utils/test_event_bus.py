"""Tests for the event bus."""

from __future__ import annotations

import json

import pytest

from trackgate.utils.events import (
    Event,
    EventBus,
    EventHandler,
    EventPriority,
    EventType,
    emit_security_event,
    get_event_bus,
)

pytestmark = [pytest.mark.unit, pytest.mark.observability]


class Recorder(EventHandler):
    def __init__(self, name: str = "recorder"):
        super().__init__(name)
        self.events: list[Event] = []

    async def handle(self, event: Event) -> None:
        self.events.append(event)


class Exploding(EventHandler):
    async def handle(self, event: Event) -> None:
        raise RuntimeError("sink down")


@pytest.mark.asyncio
async def test_handlers_receive_matching_events():
    bus = EventBus()
    specific, wildcard = Recorder(), Recorder("all")
    bus.register_handler(EventType.LOGIN_FAILED.value, specific)
    bus.register_handler("*", wildcard)

    await bus.emit(Event(event_type=EventType.LOGIN_FAILED.value))
    await bus.emit(Event(event_type=EventType.LOGIN_SUCCEEDED.value))

    assert len(specific.events) == 1
    assert len(wildcard.events) == 2

    bus.unregister_handler("*", wildcard)
    await bus.emit(Event(event_type=EventType.LOGIN_FAILED.value))
    assert len(wildcard.events) == 2


@pytest.mark.asyncio
async def test_failing_handler_does_not_break_emit():
    bus = EventBus()
    recorder = Recorder()
    bus.register_handler("*", Exploding("boom"))
    bus.register_handler("*", recorder)

    await bus.emit(Event(event_type="x"))

    assert len(recorder.events) == 1
    assert bus.stats["handler_errors"] == 1
    assert bus.stats["events_processed"] == 1


@pytest.mark.asyncio
async def test_replay_buffer_is_bounded():
    bus = EventBus(max_replay_events=3)
    for i in range(5):
        await bus.emit(Event(event_type="x", data={"i": i}))
    assert [e.data["i"] for e in bus.get_replay_events()] == [2, 3, 4]


@pytest.mark.asyncio
async def test_emit_security_event_uses_global_bus():
    await emit_security_event(
        EventType.ACCOUNT_BANNED, "test", EventPriority.HIGH, account_id=1
    )
    (event,) = get_event_bus().get_replay_events(EventType.ACCOUNT_BANNED.value)
    assert event.source == "test"
    assert json.loads(event.to_json())["data"] == {"account_id": 1}
    assert event.to_dict()["priority"] == EventPriority.HIGH.value
