"""Process-based sandboxes for plugin code.

Each plugin runs in its own Python worker process (``worker.py``) and talks
to the host only through newline-delimited JSON on stdin/stdout. The
isolation level decides how much of Python the plugin gets:

- ``none``: full builtins and imports, plain child process
- ``basic``: restricted builtins, import allow-list, new session
- ``strict``: smaller allow-list, ``python -I``, address-space cap and no
  core dumps (POSIX)
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
import os
import sys
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from warden.plugins.broker import MessageBroker
from warden.plugins.errors import SandboxExecutionError
from warden.plugins.manifest import CodeType, HookName, PluginManifest
from warden.plugins.protocol import MAX_LINE_BYTES, Message, MessageType

if os.name == "posix":
    import resource
else:
    resource = None

logger = logging.getLogger(__name__)

WORKER_PATH = Path(__file__).with_name("worker.py")
TERMINATE_GRACE = 2.0


class IsolationLevel(StrEnum):
    """How strongly plugin code is confined."""

    NONE = "none"
    BASIC = "basic"
    STRICT = "strict"


def clamp_timer_delay(requested: float, timeout: float) -> float:
    """Clamp a plugin timer delay to ``[0, timeout]``."""
    return min(max(0.0, requested), timeout)


class SandboxChannel:
    """Ordered outbound link to one worker.

    Messages are queued and written by a single task, so messages to the same
    plugin leave in the order they were sent.
    """

    def __init__(self, plugin_id: str, writer: asyncio.StreamWriter):
        self.plugin_id = plugin_id
        self._writer = writer
        self._queue: asyncio.Queue[Message | None] = asyncio.Queue()
        self._closed = False
        self._task = asyncio.create_task(self._drain())

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: Message) -> None:
        if self._closed:
            raise SandboxExecutionError("Sandbox channel closed", plugin_id=self.plugin_id)
        self._queue.put_nowait(message)

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            if message is None:
                break
            try:
                self._writer.write(message.encode())
                await self._writer.drain()
            except (ConnectionError, RuntimeError) as e:
                logger.debug("Write to sandbox of '%s' failed: %s", self.plugin_id, e)
                self._closed = True
                break

    def abort(self) -> None:
        """Stop accepting messages without waiting for the queue to drain."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def close(self) -> None:
        """Flush queued messages and close the worker's stdin."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)
        with contextlib.suppress(Exception):
            await asyncio.wait_for(self._task, timeout=TERMINATE_GRACE)
        with contextlib.suppress(Exception):
            self._writer.close()


@dataclass
class SandboxHandle:
    """A running sandbox."""

    sandbox_id: str
    plugin_id: str
    isolation_level: IsolationLevel
    process: asyncio.subprocess.Process
    channel: SandboxChannel
    exports: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    terminated: bool = False
    reader_task: asyncio.Task | None = None
    stderr_task: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return not self.terminated and self.process.returncode is None


ExitCallback = Callable[[SandboxHandle], None]


def _resource_limiter(memory_limit_mb: int) -> Callable[[], None]:
    limit = memory_limit_mb * 1024 * 1024

    def apply() -> None:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))

    return apply


class SandboxManager:
    """Creates, drives and tears down plugin worker processes.

    Args:
        broker: Correlates requests and routes inbound messages
        isolation_level: Confinement applied to new sandboxes
        timeout: Seconds allowed for each load, call or hook
        memory_limit_mb: Address-space cap for ``strict`` sandboxes
        python_executable: Interpreter for workers (default: this one)
        on_exit: Called when a worker exits without being terminated
    """

    def __init__(
        self,
        broker: MessageBroker,
        isolation_level: IsolationLevel | str = IsolationLevel.STRICT,
        timeout: float = 30.0,
        memory_limit_mb: int | None = 512,
        python_executable: str | None = None,
        on_exit: ExitCallback | None = None,
    ):
        self.broker = broker
        self.isolation_level = IsolationLevel(isolation_level)
        self.timeout = timeout
        self.memory_limit_mb = memory_limit_mb
        self.python_executable = python_executable or sys.executable
        self.on_exit = on_exit
        self._sandboxes: dict[str, SandboxHandle] = {}

    def _command(self, plugin_id: str) -> list[str]:
        command = [self.python_executable]
        if self.isolation_level == IsolationLevel.STRICT:
            command.append("-I")
        command += [
            str(WORKER_PATH),
            "--plugin-id",
            plugin_id,
            "--isolation",
            str(self.isolation_level),
        ]
        return command

    def _spawn_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if os.name != "posix" or self.isolation_level == IsolationLevel.NONE:
            return options
        options["start_new_session"] = True
        if self.isolation_level == IsolationLevel.STRICT and self.memory_limit_mb:
            options["preexec_fn"] = _resource_limiter(self.memory_limit_mb)
        return options

    async def create_sandbox(self, manifest: PluginManifest) -> SandboxHandle:
        """Start a worker process for a plugin.

        Raises:
            SandboxExecutionError: If the worker can't be started
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command(manifest.id),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=MAX_LINE_BYTES,
                **self._spawn_options(),
            )
        except OSError as e:
            raise SandboxExecutionError(
                f"Failed to start sandbox: {e}", plugin_id=manifest.id
            ) from e

        handle = SandboxHandle(
            sandbox_id=f"sbx-{uuid.uuid4().hex[:12]}",
            plugin_id=manifest.id,
            isolation_level=self.isolation_level,
            process=process,
            channel=SandboxChannel(manifest.id, process.stdin),
        )
        handle.reader_task = asyncio.create_task(self._read_messages(handle))
        handle.stderr_task = asyncio.create_task(self._read_stderr(handle))
        self._sandboxes[handle.sandbox_id] = handle

        logger.info(
            "Created sandbox %s for plugin '%s' (pid=%d, isolation=%s)",
            handle.sandbox_id,
            manifest.id,
            process.pid,
            self.isolation_level,
        )
        return handle

    async def load_code(
        self,
        handle: SandboxHandle,
        source: str | bytes,
        context: dict[str, Any],
        code_type: CodeType = CodeType.SCRIPT,
    ) -> list[str]:
        """Execute plugin code in the sandbox.

        Args:
            handle: Target sandbox
            source: Script text, or marshalled code (raw or base64) for
                ``bytecode``
            context: Serialised context description
            code_type: How ``source`` is encoded

        Returns:
            Names of the functions the plugin exported

        Raises:
            PluginLoadTimeout: If loading takes longer than ``timeout``
            SandboxExecutionError: If the code raises
        """
        self._ensure_alive(handle)
        if isinstance(source, bytes):
            if code_type == CodeType.BYTECODE:
                source = base64.b64encode(source).decode("ascii")
            else:
                source = source.decode("utf-8")

        exports = await self.broker.request(
            handle.channel,
            MessageType.LOAD,
            {"code": source, "codeType": str(code_type), "context": context},
            timeout=self.timeout,
        )
        handle.exports = list(exports or [])
        return handle.exports

    async def call_method(self, handle: SandboxHandle, name: str, args: list[Any]) -> Any:
        """Invoke an exported function.

        Raises:
            PluginCallTimeout: If the call takes longer than ``timeout``
            SandboxExecutionError: If the function raises
        """
        self._ensure_alive(handle)
        return await self.broker.request(
            handle.channel,
            MessageType.CALL,
            {"method": name, "args": list(args)},
            timeout=self.timeout,
        )

    async def call_hook(self, handle: SandboxHandle, hook: HookName | str, args: list[Any]) -> Any:
        """Invoke a lifecycle hook; missing hooks return None."""
        self._ensure_alive(handle)
        return await self.broker.request(
            handle.channel,
            MessageType.HOOK,
            {"hook": str(hook), "args": list(args)},
            timeout=self.timeout,
        )

    def send_event(self, handle: SandboxHandle, event: str, data: Any = None) -> bool:
        """Deliver an event without waiting for it to be handled."""
        if not handle.alive or handle.channel.closed:
            return False
        return self.broker.broadcast([handle.channel], event, data) == 1

    async def terminate(self, handle: SandboxHandle, force: bool = False) -> None:
        """Stop a worker and release its resources. Safe to call twice.

        Args:
            handle: Sandbox to stop
            force: Kill immediately instead of letting the worker drain
        """
        if handle.terminated:
            return
        handle.terminated = True
        self._sandboxes.pop(handle.sandbox_id, None)

        process = handle.process
        if force:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        await handle.channel.close()

        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE)
            except TimeoutError:
                logger.warning("Sandbox %s did not exit, killing it", handle.sandbox_id)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        tasks = [t for t in (handle.reader_task, handle.stderr_task) if t is not None]
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Terminated sandbox %s of plugin '%s'", handle.sandbox_id, handle.plugin_id)

    async def terminate_all(self) -> None:
        for handle in list(self._sandboxes.values()):
            await self.terminate(handle)

    def get(self, sandbox_id: str) -> SandboxHandle | None:
        return self._sandboxes.get(sandbox_id)

    @property
    def active(self) -> list[SandboxHandle]:
        return list(self._sandboxes.values())

    def _ensure_alive(self, handle: SandboxHandle) -> None:
        if not handle.alive:
            raise SandboxExecutionError("Sandbox is not running", plugin_id=handle.plugin_id)

    async def _read_messages(self, handle: SandboxHandle) -> None:
        stream = handle.process.stdout
        try:
            while True:
                try:
                    line = await stream.readline()
                except ValueError as e:
                    # Line longer than MAX_LINE_BYTES; the stream can't recover
                    logger.warning("Sandbox %s sent an oversized message: %s", handle.sandbox_id, e)
                    break
                if not line:
                    break
                try:
                    message = Message.decode(line)
                except ValueError as e:
                    logger.debug("Dropping malformed message from '%s': %s", handle.plugin_id, e)
                    continue
                self.broker.handle_incoming(handle.channel, message)
        finally:
            self._worker_exited(handle)

    async def _read_stderr(self, handle: SandboxHandle) -> None:
        stream = handle.process.stderr
        with contextlib.suppress(ValueError):
            while line := await stream.readline():
                logger.debug(
                    "[%s] %s", handle.plugin_id, line.decode("utf-8", "replace").rstrip()
                )

    def _worker_exited(self, handle: SandboxHandle) -> None:
        error = SandboxExecutionError("Sandbox process exited", plugin_id=handle.plugin_id)
        self.broker.fail_all(handle.plugin_id, error)
        if handle.terminated:
            return

        handle.terminated = True
        self._sandboxes.pop(handle.sandbox_id, None)
        handle.channel.abort()
        with contextlib.suppress(ProcessLookupError):
            handle.process.kill()
        logger.warning(
            "Sandbox %s of plugin '%s' exited unexpectedly", handle.sandbox_id, handle.plugin_id
        )
        if self.on_exit is not None:
            self.on_exit(handle)
