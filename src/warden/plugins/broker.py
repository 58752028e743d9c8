"""Request/response correlation across the sandbox boundary.

Every outbound request gets a unique ``request_id`` and a pending future
guarded by a timer. The matching response resolves or rejects the future;
responses nobody is waiting for are dropped. On timeout the pending entry is
removed and the caller gets PluginLoadTimeout / PluginCallTimeout. The
broker does not stop the abandoned work itself; that is the registry's job.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from warden.plugins.errors import (
    PermissionDenied,
    PluginCallTimeout,
    PluginError,
    PluginLoadTimeout,
    SandboxExecutionError,
    StorageQuotaExceeded,
)
from warden.plugins.protocol import Message, MessageType, response

logger = logging.getLogger(__name__)

RequestHandler = Callable[[str, str, list[Any]], Awaitable[Any]]
LogHandler = Callable[[str, str, list[Any]], None]


class Channel(Protocol):
    """Ordered, message-only link to one sandbox."""

    plugin_id: str

    def send(self, message: Message) -> None: ...


@dataclass
class PendingRequest:
    """An outbound request awaiting its response."""

    request_id: str
    plugin_id: str
    message_type: MessageType
    future: asyncio.Future
    timer: asyncio.TimerHandle | None
    timeout: float
    target: str | None = None
    sent_at: float = field(default_factory=time.monotonic)


class MessageBroker:
    """Correlates requests and responses for all sandboxes of one host.

    Args:
        default_timeout: Seconds to wait for a response when the caller
            doesn't pass one
        request_handler: Serves mediated API calls coming from a sandbox,
            ``(plugin_id, method, args) -> result``
        log_handler: Receives sandbox log lines, ``(plugin_id, level, args)``
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        request_handler: RequestHandler | None = None,
        log_handler: LogHandler | None = None,
    ):
        self.default_timeout = default_timeout
        self.request_handler = request_handler
        self.log_handler = log_handler
        self._pending: dict[str, PendingRequest] = {}
        self._tasks: set[asyncio.Task] = set()

    async def request(
        self,
        channel: Channel,
        message_type: MessageType,
        data: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for its response.

        Raises:
            PluginLoadTimeout: ``load`` request not answered in time
            PluginCallTimeout: ``call``/``hook`` request not answered in time
            SandboxExecutionError: The sandbox reported a failure
            PermissionDenied, StorageQuotaExceeded: A mediated call made by
                the plugin was rejected and the plugin didn't handle it
        """
        timeout = self.default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        request_id = uuid.uuid4().hex
        future = loop.create_future()
        pending = PendingRequest(
            request_id=request_id,
            plugin_id=channel.plugin_id,
            message_type=message_type,
            future=future,
            timer=loop.call_later(timeout, self._expire, request_id),
            timeout=timeout,
            target=data.get("method") or data.get("hook"),
        )
        self._pending[request_id] = pending

        try:
            channel.send(
                Message(
                    type=message_type,
                    plugin_id=channel.plugin_id,
                    request_id=request_id,
                    data=data,
                )
            )
            return await future
        finally:
            self._discard(request_id)

    def notify(self, channel: Channel, message_type: MessageType, data: dict[str, Any]) -> None:
        """Send a message that expects no response."""
        channel.send(Message(type=message_type, plugin_id=channel.plugin_id, data=data))

    def broadcast(self, channels: list[Channel], event: str, data: Any = None) -> int:
        """Fan an event out to several sandboxes, best effort.

        Returns:
            Number of channels the event was handed to
        """
        delivered = 0
        for channel in channels:
            try:
                self.notify(channel, MessageType.EVENT, {"event": event, "data": data})
                delivered += 1
            except Exception as e:
                logger.debug("Event %s not delivered to '%s': %s", event, channel.plugin_id, e)
        return delivered

    def handle_incoming(self, channel: Channel, message: Message) -> None:
        """Route a message received from a sandbox."""
        if message.type == MessageType.RESPONSE:
            self.resolve(message)
        elif message.type == MessageType.LOG:
            if self.log_handler is not None:
                self.log_handler(channel.plugin_id, message.level or "info", message.args or [])
        elif message.type == MessageType.CALL:
            task = asyncio.ensure_future(self._serve(channel, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            logger.debug(
                "Ignoring unexpected %s message from plugin '%s'", message.type, channel.plugin_id
            )

    def resolve(self, message: Message) -> bool:
        """Complete the pending request a response belongs to.

        Returns:
            False if no request was waiting for it
        """
        pending = self._pending.pop(message.request_id or "", None)
        if pending is None:
            logger.debug("Discarding response for unknown request %s", message.request_id)
            return False

        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return False

        if message.success:
            pending.future.set_result(message.result)
        else:
            pending.future.set_exception(self._error_from_response(pending, message))
        return True

    def fail_all(self, plugin_id: str, error: PluginError) -> int:
        """Reject every pending request of a plugin.

        Returns:
            Number of requests rejected
        """
        failed = 0
        for request_id in [rid for rid, p in self._pending.items() if p.plugin_id == plugin_id]:
            pending = self._pending.pop(request_id)
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(error)
                failed += 1
        return failed

    def pending_count(self, plugin_id: str | None = None) -> int:
        if plugin_id is None:
            return len(self._pending)
        return sum(1 for p in self._pending.values() if p.plugin_id == plugin_id)

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return

        logger.warning(
            "Request %s (%s) to plugin '%s' timed out after %ss",
            request_id[:8],
            pending.message_type,
            pending.plugin_id,
            pending.timeout,
        )
        if pending.message_type == MessageType.LOAD:
            error: PluginError = PluginLoadTimeout(pending.plugin_id, pending.timeout)
        else:
            error = PluginCallTimeout(pending.plugin_id, pending.timeout, pending.target)
        pending.future.set_exception(error)

    def _discard(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()

    def _error_from_response(self, pending: PendingRequest, message: Message) -> PluginError:
        error = message.error or "Unknown sandbox error"
        if message.error_type == "PermissionDenied" and message.permission:
            return PermissionDenied(message.permission, plugin_id=pending.plugin_id)
        if message.error_type == "StorageQuotaExceeded":
            return StorageQuotaExceeded.from_message(pending.plugin_id, error)
        return SandboxExecutionError(
            error, plugin_id=pending.plugin_id, error_type=message.error_type
        )

    async def _serve(self, channel: Channel, message: Message) -> None:
        """Answer a mediated API call issued by a sandbox."""
        request_id = message.request_id or ""
        data = message.data if isinstance(message.data, dict) else {}
        method = str(data.get("method", ""))
        args = data.get("args") or []

        try:
            if self.request_handler is None:
                raise PluginError("Host API unavailable", channel.plugin_id)
            result = await self.request_handler(channel.plugin_id, method, list(args))
            reply = response(request_id, result=result)
        except Exception as e:
            reply = response(request_id, error=e)

        try:
            channel.send(reply)
        except Exception as e:
            logger.debug("Could not answer %s for plugin '%s': %s", method, channel.plugin_id, e)
