"""Tests for the event bus."""

import asyncio

import pytest

from warden.plugins.events import Event, EventBus, EventKind


def test_subscribe_and_emit():
    bus = EventBus()
    received = []
    bus.subscribe(EventKind.PLUGIN_LOADED, received.append)

    event = bus.emit(EventKind.PLUGIN_LOADED, "p", load_time_ms=3.0)

    assert received == [event]
    assert event.plugin_id == "p"
    assert event.data == {"load_time_ms": 3.0}


def test_only_matching_kind():
    bus = EventBus()
    received = []
    bus.subscribe(EventKind.PLUGIN_LOADED, received.append)
    bus.emit(EventKind.PLUGIN_ERROR, "p")
    assert received == []


def test_subscription_order():
    bus = EventBus()
    order = []
    bus.subscribe(EventKind.PLUGIN_ACTION, lambda e: order.append("first"))
    bus.subscribe(EventKind.PLUGIN_ACTION, lambda e: order.append("second"))
    bus.emit(EventKind.PLUGIN_ACTION, "p")
    assert order == ["first", "second"]


def test_unsubscribe():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(EventKind.PLUGIN_LOADED, received.append)
    assert bus.subscriber_count(EventKind.PLUGIN_LOADED) == 1

    unsubscribe()
    unsubscribe()
    bus.emit(EventKind.PLUGIN_LOADED, "p")

    assert received == []
    assert bus.subscriber_count(EventKind.PLUGIN_LOADED) == 0


def test_failing_handler_does_not_stop_delivery():
    """Test a raising subscriber is isolated from the others."""
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(EventKind.PLUGIN_ERROR, broken)
    bus.subscribe(EventKind.PLUGIN_ERROR, received.append)
    bus.emit(EventKind.PLUGIN_ERROR, "p")

    assert len(received) == 1


def test_clear():
    bus = EventBus()
    bus.subscribe(EventKind.PLUGIN_LOADED, lambda e: None)
    bus.clear()
    assert bus.subscriber_count(EventKind.PLUGIN_LOADED) == 0


@pytest.mark.asyncio
async def test_async_handler():
    """Test coroutine handlers are scheduled on the loop."""
    bus = EventBus()
    done = asyncio.Event()
    received: list[Event] = []

    async def handler(event):
        received.append(event)
        done.set()

    bus.subscribe(EventKind.PLUGIN_INSTALLED, handler)
    bus.emit(EventKind.PLUGIN_INSTALLED, "p")

    await asyncio.wait_for(done.wait(), timeout=1.0)
    assert received[0].kind == EventKind.PLUGIN_INSTALLED


def test_event_kind_values():
    assert EventKind.PLUGIN_UPDATE_AVAILABLE == "plugin-update-available"
    assert len(EventKind) == 13
