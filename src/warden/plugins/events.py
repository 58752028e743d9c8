"""Typed publish/subscribe channel for plugin runtime events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    """Events emitted by the plugin registry."""

    PLUGIN_LOADED = "plugin-loaded"
    PLUGIN_UNLOADED = "plugin-unloaded"
    PLUGIN_ENABLED = "plugin-enabled"
    PLUGIN_DISABLED = "plugin-disabled"
    PLUGIN_ERROR = "plugin-error"
    PLUGIN_ACTION = "plugin-action"
    PLUGIN_API_CALL = "plugin-api-call"
    PLUGIN_UPDATE_AVAILABLE = "plugin-update-available"
    PLUGIN_INSTALLED = "plugin-installed"
    PLUGIN_EVENT = "plugin-event"
    PLUGIN_NOTIFICATION = "plugin-notification"
    PLUGIN_DIALOG = "plugin-dialog"
    PLUGIN_COMPONENT_REGISTERED = "plugin-component-registered"


@dataclass
class Event:
    """An event and its payload."""

    kind: EventKind
    plugin_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[Event], None] | Callable[[Event], Awaitable[None]]


class EventBus:
    """Subscriber lists keyed by event kind.

    Handlers run in subscription order. A failing handler is logged and does
    not stop delivery to the others. Coroutine handlers are scheduled as tasks
    on the running loop.
    """

    def __init__(self) -> None:
        self._subscribers: dict[EventKind, list[EventHandler]] = {}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, kind: EventKind, handler: EventHandler) -> Callable[[], None]:
        """Register a handler.

        Returns:
            Callable that removes the subscription
        """
        self._subscribers.setdefault(kind, []).append(handler)
        return lambda: self.unsubscribe(kind, handler)

    def unsubscribe(self, kind: EventKind, handler: EventHandler) -> None:
        handlers = self._subscribers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, kind: EventKind) -> int:
        return len(self._subscribers.get(kind, []))

    def publish(self, event: Event) -> None:
        """Deliver an event to every subscriber of its kind."""
        for handler in list(self._subscribers.get(event.kind, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as e:
                logger.error("Event handler for %s failed: %s", event.kind, e)

    def emit(self, kind: EventKind, plugin_id: str, **data: Any) -> Event:
        """Build and publish an event."""
        event = Event(kind=kind, plugin_id=plugin_id, data=data)
        self.publish(event)
        return event

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event handler failed: %s", task.exception())

    def clear(self) -> None:
        """Drop every subscription."""
        self._subscribers.clear()
