"""Tests for process sandboxes, run against real worker processes."""

import marshal

import pytest

from tests.conftest import wait_for
from warden.plugins.broker import MessageBroker
from warden.plugins.errors import (
    PermissionDenied,
    PluginCallTimeout,
    SandboxExecutionError,
)
from warden.plugins.manifest import CodeType, PluginManifest
from warden.plugins.sandbox import (
    IsolationLevel,
    SandboxManager,
    clamp_timer_delay,
)

CALCULATOR = """
@export
def add(a, b):
    return a + b

@export("greet")
async def say_hello(name):
    return f"hello {name}"

@export
def divide(a, b):
    return a / b

@export
def on_load():
    return "ready"
"""

CONTEXT = {
    "pluginId": "calc",
    "config": {},
    "api": ["emit", "on", "off"],
    "storage": ["get", "set"],
    "ui": None,
    "utils": ["fetch"],
    "plugins": [],
    "fs": [],
    "limits": {"timer": 5.0},
}


@pytest.fixture
def manifest():
    return PluginManifest(id="calc", name="Calculator")


@pytest.fixture
def host_calls():
    return []


@pytest.fixture
def logs():
    return []


@pytest.fixture
def broker(host_calls, logs):
    async def serve(plugin_id, method, args):
        host_calls.append((plugin_id, method, args))
        if method == "storage.get":
            return {"stored": args[0]}
        if method == "utils.fetch":
            raise PermissionDenied("network.fetch", plugin_id=plugin_id, resource=args[0])
        return None

    return MessageBroker(
        default_timeout=5.0,
        request_handler=serve,
        log_handler=lambda *entry: logs.append(entry),
    )


@pytest.fixture
async def manager(broker):
    exited = []
    manager = SandboxManager(broker, IsolationLevel.BASIC, timeout=5.0, on_exit=exited.append)
    manager.exited = exited
    yield manager
    await manager.terminate_all()


@pytest.fixture
async def handle(manager, manifest):
    handle = await manager.create_sandbox(manifest)
    await manager.load_code(handle, CALCULATOR, CONTEXT)
    return handle


def test_clamp_timer_delay():
    assert clamp_timer_delay(-5, 30) == 0
    assert clamp_timer_delay(10, 30) == 10
    assert clamp_timer_delay(120, 30) == 30


def test_command_line():
    """Test strict workers run in isolated interpreter mode."""
    strict = SandboxManager(MessageBroker(), "strict", python_executable="/usr/bin/python3")
    command = strict._command("calc")
    assert command[:2] == ["/usr/bin/python3", "-I"]
    assert command[-4:] == ["--plugin-id", "calc", "--isolation", "strict"]

    basic = SandboxManager(MessageBroker(), "basic")
    assert "-I" not in basic._command("calc")


def test_spawn_options():
    assert SandboxManager(MessageBroker(), "none")._spawn_options() == {}

    strict = SandboxManager(MessageBroker(), "strict", memory_limit_mb=256)._spawn_options()
    assert strict["start_new_session"] is True
    assert callable(strict["preexec_fn"])

    unlimited = SandboxManager(MessageBroker(), "strict", memory_limit_mb=None)._spawn_options()
    assert "preexec_fn" not in unlimited


class TestExecution:
    """Test loading code and calling into it."""

    @pytest.mark.asyncio
    async def test_create_sandbox(self, manager, handle):
        assert handle.sandbox_id.startswith("sbx-")
        assert handle.plugin_id == "calc"
        assert handle.isolation_level == IsolationLevel.BASIC
        assert handle.alive
        assert manager.get(handle.sandbox_id) is handle
        assert manager.active == [handle]

    @pytest.mark.asyncio
    async def test_exports(self, handle):
        assert handle.exports == ["add", "divide", "greet", "on_load"]

    @pytest.mark.asyncio
    async def test_call_method(self, manager, handle):
        assert await manager.call_method(handle, "add", [2, 3]) == 5
        assert await manager.call_method(handle, "greet", ["warden"]) == "hello warden"

    @pytest.mark.asyncio
    async def test_plugin_exception(self, manager, handle):
        with pytest.raises(SandboxExecutionError) as exc_info:
            await manager.call_method(handle, "divide", [1, 0])
        assert exc_info.value.error_type == "ZeroDivisionError"
        assert exc_info.value.plugin_id == "calc"
        # The sandbox survives a failing call
        assert await manager.call_method(handle, "add", [1, 1]) == 2

    @pytest.mark.asyncio
    async def test_unknown_method(self, manager, handle):
        with pytest.raises(SandboxExecutionError, match="Method nope not found"):
            await manager.call_method(handle, "nope", [])

    @pytest.mark.asyncio
    async def test_hooks(self, manager, handle):
        """Test hooks resolve camelCase names to snake_case exports."""
        assert await manager.call_hook(handle, "onLoad", []) == "ready"
        assert await manager.call_hook(handle, "onUnload", []) is None

    @pytest.mark.asyncio
    async def test_load_error(self, manager, manifest):
        handle = await manager.create_sandbox(manifest)
        with pytest.raises(SandboxExecutionError) as exc_info:
            await manager.load_code(handle, "raise ValueError('bad plugin')", CONTEXT)
        assert exc_info.value.error_type == "ValueError"
        assert "bad plugin" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_bytecode(self, manager, manifest):
        code = marshal.dumps(compile(CALCULATOR, "<calc>", "exec"))
        handle = await manager.create_sandbox(manifest)
        exports = await manager.load_code(handle, code, CONTEXT, CodeType.BYTECODE)
        assert "add" in exports
        assert await manager.call_method(handle, "add", [20, 22]) == 42

    @pytest.mark.asyncio
    async def test_print_goes_to_host_log(self, manager, manifest, logs):
        handle = await manager.create_sandbox(manifest)
        await manager.load_code(handle, "print('hello', 42)\nconsole.warn('careful')", CONTEXT)
        assert ("calc", "info", ["hello", 42]) in logs
        assert ("calc", "warn", ["careful"]) in logs


class TestIsolation:
    """Test what plugin code can reach."""

    @pytest.mark.asyncio
    async def test_basic_blocks_os(self, manager, manifest):
        handle = await manager.create_sandbox(manifest)
        with pytest.raises(SandboxExecutionError) as exc_info:
            await manager.load_code(handle, "import os", CONTEXT)
        assert exc_info.value.error_type == "ImportError"

    @pytest.mark.asyncio
    async def test_basic_has_no_open(self, manager, manifest):
        handle = await manager.create_sandbox(manifest)
        with pytest.raises(SandboxExecutionError) as exc_info:
            await manager.load_code(handle, "open('/etc/passwd')", CONTEXT)
        assert exc_info.value.error_type == "NameError"

    @pytest.mark.asyncio
    async def test_strict_allow_list(self, broker, manifest):
        manager = SandboxManager(broker, IsolationLevel.STRICT, timeout=5.0, memory_limit_mb=None)
        try:
            handle = await manager.create_sandbox(manifest)
            source = "import math\n\n@export\ndef root(x):\n    return math.sqrt(x)\n"
            await manager.load_code(handle, source, CONTEXT)
            assert await manager.call_method(handle, "root", [16]) == 4.0

            other = await manager.create_sandbox(manifest)
            with pytest.raises(SandboxExecutionError, match="not allowed"):
                await manager.load_code(other, "import random", CONTEXT)
        finally:
            await manager.terminate_all()

    @pytest.mark.asyncio
    async def test_strict_modules_do_not_leak_os(self, broker, manifest, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("TOP-SECRET")
        manager = SandboxManager(broker, IsolationLevel.STRICT, timeout=5.0, memory_limit_mb=None)
        try:
            for module, route in (
                ("dataclasses", "dataclasses.sys"),
                ("collections", "collections._sys"),
                ("typing", "typing.sys"),
                ("enum", "enum.sys"),
            ):
                handle = await manager.create_sandbox(manifest)
                source = (
                    f"import {module}\n"
                    f"os = {route}.modules['os']\n"
                    f"data = os.read(os.open({str(secret)!r}, os.O_RDONLY), 100)\n"
                )
                with pytest.raises(SandboxExecutionError) as exc_info:
                    await manager.load_code(handle, source, CONTEXT)
                assert exc_info.value.error_type == "AttributeError"
        finally:
            await manager.terminate_all()

    @pytest.mark.asyncio
    async def test_strict_rejects_object_graph_walks(self, broker, manifest):
        manager = SandboxManager(broker, IsolationLevel.STRICT, timeout=5.0, memory_limit_mb=None)
        try:
            handle = await manager.create_sandbox(manifest)
            source = "subclasses = ().__class__.__base__.__subclasses__()\n"
            with pytest.raises(SandboxExecutionError) as exc_info:
                await manager.load_code(handle, source, CONTEXT)
            assert exc_info.value.error_type == "SandboxViolation"
        finally:
            await manager.terminate_all()

    @pytest.mark.asyncio
    async def test_basic_has_no_asyncio(self, manager, manifest):
        handle = await manager.create_sandbox(manifest)
        source = "import asyncio\nshell = asyncio.create_subprocess_shell\n"
        with pytest.raises(SandboxExecutionError) as exc_info:
            await manager.load_code(handle, source, CONTEXT)
        assert exc_info.value.error_type == "ImportError"

    @pytest.mark.asyncio
    async def test_basic_bytecode_is_checked(self, manager, manifest):
        code = marshal.dumps(compile("g = (lambda: 0).__globals__\n", "<escape>", "exec"))
        handle = await manager.create_sandbox(manifest)
        with pytest.raises(SandboxExecutionError) as exc_info:
            await manager.load_code(handle, code, CONTEXT, CodeType.BYTECODE)
        assert exc_info.value.error_type == "SandboxViolation"

    @pytest.mark.asyncio
    async def test_none_allows_everything(self, broker, manifest):
        manager = SandboxManager(broker, IsolationLevel.NONE, timeout=5.0)
        try:
            handle = await manager.create_sandbox(manifest)
            source = "import os\n\n@export\ndef pid():\n    return os.getpid()\n"
            await manager.load_code(handle, source, CONTEXT)
            assert await manager.call_method(handle, "pid", []) == handle.pid
        finally:
            await manager.terminate_all()


class TestHostBoundary:
    """Test mediated context calls and events."""

    @pytest.mark.asyncio
    async def test_context_call(self, manager, manifest, host_calls):
        source = "@export\nasync def read(key):\n    return await context.storage.get(key)\n"
        handle = await manager.create_sandbox(manifest)
        await manager.load_code(handle, source, CONTEXT)

        assert await manager.call_method(handle, "read", ["k"]) == {"stored": "k"}
        assert host_calls == [("calc", "storage.get", ["k"])]

    @pytest.mark.asyncio
    async def test_denied_call_catchable(self, manager, manifest):
        source = (
            "@export\n"
            "async def fetch(url):\n"
            "    try:\n"
            "        await context.utils.fetch(url)\n"
            "    except PermissionDenied as e:\n"
            "        return 'denied: ' + e.permission\n"
        )
        handle = await manager.create_sandbox(manifest)
        await manager.load_code(handle, source, CONTEXT)
        assert await manager.call_method(handle, "fetch", ["https://evil.com"]) == (
            "denied: network.fetch"
        )

    @pytest.mark.asyncio
    async def test_denied_call_propagates(self, manager, manifest):
        source = "@export\nasync def fetch(url):\n    return await context.utils.fetch(url)\n"
        handle = await manager.create_sandbox(manifest)
        await manager.load_code(handle, source, CONTEXT)

        with pytest.raises(PermissionDenied) as exc_info:
            await manager.call_method(handle, "fetch", ["https://evil.com"])
        assert exc_info.value.permission == "network.fetch"

    @pytest.mark.asyncio
    async def test_missing_namespace(self, manager, manifest):
        source = "@export\ndef has_ui():\n    return context.ui is not None\n"
        handle = await manager.create_sandbox(manifest)
        await manager.load_code(handle, source, CONTEXT)
        assert await manager.call_method(handle, "has_ui", []) is False

    @pytest.mark.asyncio
    async def test_events(self, manager, manifest, host_calls, logs):
        source = (
            "async def on_tick(data):\n"
            "    console.log('tick', data)\n"
            "\n"
            "@export\n"
            "async def subscribe():\n"
            "    await context.api.on('tick', on_tick)\n"
        )
        handle = await manager.create_sandbox(manifest)
        await manager.load_code(handle, source, CONTEXT)
        await manager.call_method(handle, "subscribe", [])
        assert ("calc", "api.on", ["tick"]) in host_calls

        assert manager.send_event(handle, "tick", {"n": 1})
        await wait_for(lambda: ("calc", "info", ["tick", {"n": 1}]) in logs)

    @pytest.mark.asyncio
    async def test_set_timeout(self, manager, manifest, logs):
        source = (
            "@export\n"
            "def arm():\n"
            "    return context.utils.set_timeout(lambda: console.log('fired'), 0.01)\n"
        )
        handle = await manager.create_sandbox(manifest)
        await manager.load_code(handle, source, CONTEXT)

        assert await manager.call_method(handle, "arm", []) == 1
        await wait_for(lambda: ("calc", "info", ["fired"]) in logs)


class TestTermination:
    """Test timeouts, crashes and teardown."""

    @pytest.mark.asyncio
    async def test_call_timeout(self, broker, manifest):
        manager = SandboxManager(broker, IsolationLevel.BASIC, timeout=0.5)
        try:
            handle = await manager.create_sandbox(manifest)
            source = "import time\n\n@export\ndef slow():\n    time.sleep(10)\n"
            await manager.load_code(handle, source, CONTEXT)

            with pytest.raises(PluginCallTimeout) as exc_info:
                await manager.call_method(handle, "slow", [])
            assert exc_info.value.method == "slow"

            await manager.terminate(handle, force=True)
            assert not handle.alive
            assert handle.process.returncode is not None
        finally:
            await manager.terminate_all()

    @pytest.mark.asyncio
    async def test_terminate(self, manager, handle):
        await manager.terminate(handle)
        await manager.terminate(handle)

        assert not handle.alive
        assert manager.active == []
        assert manager.get(handle.sandbox_id) is None
        assert manager.send_event(handle, "tick") is False
        assert manager.exited == []
        with pytest.raises(SandboxExecutionError, match="not running"):
            await manager.call_method(handle, "add", [1, 2])

    @pytest.mark.asyncio
    async def test_unexpected_exit(self, broker, manifest):
        """Test a dying worker fails pending requests and is reported."""
        exited = []
        manager = SandboxManager(broker, IsolationLevel.NONE, timeout=5.0, on_exit=exited.append)
        try:
            handle = await manager.create_sandbox(manifest)
            source = "import os\n\n@export\ndef die():\n    os._exit(3)\n"
            await manager.load_code(handle, source, CONTEXT)

            with pytest.raises(SandboxExecutionError, match="exited"):
                await manager.call_method(handle, "die", [])
            assert exited == [handle]
            assert not handle.alive
            assert manager.active == []
        finally:
            await manager.terminate_all()
