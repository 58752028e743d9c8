"""Sandbox worker process.

Runs the code of exactly one plugin and talks to the host over
newline-delimited JSON on stdin/stdout. The host starts this file by path, so
it must only depend on the standard library and never import ``warden``.

Only data and method names cross the boundary. Every host facility the plugin
uses through ``context`` is a ``call`` message answered by the host; the
plugin never holds a reference to a host object.

Plugin code sees these globals:

- ``exports``: dict of callables the host may invoke
- ``export``: decorator adding a function to ``exports``
- ``context``: proxies for the mediated host API
- ``console`` / ``print``: forwarded to the host log
- ``PermissionDenied``, ``StorageQuotaExceeded``, ``HostError``

Below ``none`` isolation, imports return :func:`module_proxy` copies and every
attribute read in plugin source goes through :class:`AttributeGuard`.
"""

from __future__ import annotations

import argparse
import ast
import asyncio
import base64
import builtins
import inspect
import json
import marshal
import os
import re
import sys
import threading
import types
import uuid
from typing import Any

ISOLATION_LEVELS = ("none", "basic", "strict")

SAFE_BUILTINS = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes", "callable",
    "chr", "classmethod", "complex", "dict", "divmod", "enumerate", "filter", "float",
    "format", "frozenset", "getattr", "hasattr", "hash", "hex", "id", "int",
    "isinstance", "issubclass", "iter", "len", "list", "map", "max", "min", "next",
    "object", "oct", "ord", "pow", "property", "range", "repr", "reversed", "round",
    "set", "setattr", "slice", "sorted", "staticmethod", "str", "sum", "super", "tuple",
    "type", "zip", "__build_class__", "NotImplemented", "Ellipsis",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception", "IndexError",
    "KeyError", "LookupError", "NotImplementedError", "OverflowError", "RuntimeError",
    "StopAsyncIteration", "StopIteration", "TimeoutError", "TypeError", "ValueError",
    "ZeroDivisionError",
)  # fmt: skip

STRICT_MODULES = frozenset(
    {
        "collections", "dataclasses", "datetime", "decimal", "enum", "fractions",
        "functools", "itertools", "json", "math", "operator", "re", "statistics",
        "string", "typing",
    }
)  # fmt: skip

BASIC_MODULES = STRICT_MODULES | frozenset(
    {"base64", "hashlib", "random", "textwrap", "time", "uuid"}
)

# Members of allowed modules that reach attributes by name
HIDDEN_MEMBERS = {
    "operator": frozenset({"attrgetter", "methodcaller"}),
    "string": frozenset({"Formatter"}),
    "typing": frozenset({"ForwardRef", "get_type_hints", "evaluate_forward_ref"}),
}

BLOCKED_ATTRIBUTES = frozenset(
    {
        "ag_code", "ag_frame", "cr_code", "cr_frame", "f_back", "f_builtins", "f_code",
        "f_globals", "f_locals", "gi_code", "gi_frame", "gi_yieldfrom", "tb_frame",
        "tb_next",
    }
)  # fmt: skip

SAFE_DUNDERS = frozenset({"__class__", "__doc__", "__init__", "__name__", "__qualname__"})

# Names the compiler stores in class bodies
CLASS_BODY_NAMES = frozenset(
    {
        "__annotations__", "__classcell__", "__classdictcell__", "__firstlineno__",
        "__module__", "__static_attributes__",
    }
)  # fmt: skip

GETATTR_NAME = "_getattr_"

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def clamp_delay(requested: float, limit: float) -> float:
    """Clamp a timer delay to ``[0, limit]``; a non-positive limit means no cap."""
    delay = max(0.0, float(requested))
    if limit > 0:
        return min(delay, limit)
    return delay


def snake_case(name: str) -> str:
    """``onConfigChange`` -> ``on_config_change``."""
    return _CAMEL.sub("_", name).lower()


class HostError(Exception):
    """A mediated call was rejected by the host."""

    def __init__(self, message: str, permission: str | None = None):
        super().__init__(message)
        self.permission = permission


class PermissionDenied(HostError):
    """The plugin lacks the permission a mediated call needs."""


class StorageQuotaExceeded(HostError):
    """A storage write would exceed the plugin's quota."""


class SandboxViolation(Exception):
    """Plugin code reaches for something the isolation level forbids."""


_HOST_ERRORS: dict[str, type[HostError]] = {
    "PermissionDenied": PermissionDenied,
    "StorageQuotaExceeded": StorageQuotaExceeded,
}


def _loggable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return repr(value)


class Connection:
    """Message link to the host."""

    def __init__(self, out: Any):
        self._out = out
        self._pending: dict[str, asyncio.Future] = {}

    def send(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, separators=(",", ":"))
        self._out.write(line.encode() + b"\n")
        self._out.flush()

    async def request(self, method: str, args: list[Any]) -> Any:
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            self.send(
                {
                    "type": "call",
                    "requestId": request_id,
                    "data": {"method": method, "args": args},
                }
            )
            return await future
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, message: dict[str, Any]) -> None:
        future = self._pending.pop(message.get("requestId") or "", None)
        if future is None or future.done():
            return
        if message.get("success"):
            future.set_result(message.get("result"))
            return
        error_cls = _HOST_ERRORS.get(message.get("errorType") or "", HostError)
        future.set_exception(
            error_cls(message.get("error") or "Host error", message.get("permission"))
        )

    def log(self, level: str, *args: Any) -> None:
        self.send({"type": "log", "level": level, "args": [_loggable(a) for a in args]})


class Console:
    """``console.log`` style logging forwarded to the host."""

    def __init__(self, connection: Connection):
        self._connection = connection

    def log(self, *args: Any) -> None:
        self._connection.log("info", *args)

    info = log

    def debug(self, *args: Any) -> None:
        self._connection.log("debug", *args)

    def warn(self, *args: Any) -> None:
        self._connection.log("warn", *args)

    warning = warn

    def error(self, *args: Any) -> None:
        self._connection.log("error", *args)


class Namespace:
    """Proxy for one group of host methods (``context.storage`` ...)."""

    def __init__(self, connection: Connection, name: str, methods: list[str]):
        self._name = name
        for method in methods:
            setattr(self, method, self._remote(connection, f"{name}.{method}"))

    @staticmethod
    def _remote(connection: Connection, qualified: str) -> Any:
        async def call(*args: Any) -> Any:
            return await connection.request(qualified, list(args))

        call.__name__ = qualified.rpartition(".")[2]
        return call

    def __repr__(self) -> str:
        return f"<context.{self._name}>"


class Context:
    """What plugin code sees as ``context``."""

    def __init__(self, worker: Worker, description: dict[str, Any]):
        connection = worker.connection
        self.plugin_id = description.get("pluginId")
        self.config = description.get("config") or {}

        for name in ("api", "storage", "ui", "utils", "plugins", "fs"):
            methods = description.get(name)
            setattr(self, name, None if methods is None else Namespace(connection, name, methods))

        timer_limit = float((description.get("limits") or {}).get("timer", 0) or 0)
        if self.api is not None:
            remote_on = getattr(self.api, "on", None)
            remote_off = getattr(self.api, "off", None)

            async def on(event: str, handler: Any) -> None:
                if remote_on is not None:
                    await remote_on(event)
                worker.handlers.setdefault(event, []).append(handler)

            async def off(event: str, handler: Any = None) -> None:
                handlers = worker.handlers.get(event, [])
                if handler is None:
                    handlers.clear()
                elif handler in handlers:
                    handlers.remove(handler)
                if remote_off is not None:
                    await remote_off(event)

            self.api.on = on
            self.api.off = off

        if self.utils is None:
            self.utils = Namespace(connection, "utils", [])

        def set_timeout(fn: Any, delay: float = 0) -> int:
            return worker.schedule(fn, clamp_delay(delay, timer_limit))

        async def sleep(seconds: float) -> None:
            await asyncio.sleep(clamp_delay(seconds, timer_limit))

        self.utils.set_timeout = set_timeout
        self.utils.clear_timeout = worker.cancel_timer
        self.utils.sleep = sleep


class Worker:
    """Executes plugin code and serves host requests."""

    def __init__(self, connection: Connection, plugin_id: str, isolation: str):
        self.connection = connection
        self.plugin_id = plugin_id
        self.isolation = isolation
        self.exports: dict[str, Any] = {}
        self.handlers: dict[str, list[Any]] = {}
        self._timers: dict[int, asyncio.TimerHandle] = {}
        self._next_timer = 1
        self._tasks: set[asyncio.Task] = set()

    # -- plugin environment -------------------------------------------------

    @property
    def module_name(self) -> str:
        return f"plugin_{self.plugin_id}"

    def _builtins(self) -> dict[str, Any]:
        if self.isolation == "none":
            env = dict(vars(builtins))
        else:
            env = {
                name: getattr(builtins, name) for name in SAFE_BUILTINS if hasattr(builtins, name)
            }
            allowed = STRICT_MODULES if self.isolation == "strict" else BASIC_MODULES
            env["__import__"] = _guarded_import(allowed)
            guard = AttributeGuard(self.module_name)
            env.update(getattr=guard.get, hasattr=guard.has, setattr=guard.set)
            env[GETATTR_NAME] = guard.get
        env["print"] = lambda *args, **_: self.connection.log("info", *args)
        return env

    def _globals(self, context: Context) -> dict[str, Any]:
        exports = self.exports

        def export(target: Any = None) -> Any:
            if callable(target):
                exports[target.__name__] = target
                return target

            def register(fn: Any) -> Any:
                exports[target or fn.__name__] = fn
                return fn

            return register

        return {
            "__name__": self.module_name,
            "__builtins__": self._builtins(),
            "exports": exports,
            "export": export,
            "context": context,
            "console": Console(self.connection),
            "HostError": HostError,
            "PermissionDenied": PermissionDenied,
            "StorageQuotaExceeded": StorageQuotaExceeded,
        }

    # -- requests -----------------------------------------------------------

    async def load(self, data: dict[str, Any]) -> list[str]:
        source = data.get("code") or ""
        filename = f"<plugin:{self.plugin_id}>"
        if data.get("codeType") == "bytecode":
            code = marshal.loads(base64.b64decode(source))
            if self.isolation != "none":
                check_bytecode(code)
        elif self.isolation == "none":
            code = compile(source, filename, "exec")
        else:
            code = compile_restricted(source, filename)

        self.exports.clear()
        context = Context(self, data.get("context") or {})
        exec(code, self._globals(context))  # noqa: S102
        return sorted(name for name, value in self.exports.items() if callable(value))

    async def call(self, data: dict[str, Any]) -> Any:
        name = data.get("method") or ""
        method = self.exports.get(name)
        if not callable(method):
            raise AttributeError(f"Method {name} not found")
        return await _maybe_await(method(*(data.get("args") or [])))

    async def hook(self, data: dict[str, Any]) -> Any:
        name = data.get("hook") or ""
        hook = self.exports.get(name) or self.exports.get(snake_case(name))
        if not callable(hook):
            return None
        return await _maybe_await(hook(*(data.get("args") or [])))

    def event(self, data: dict[str, Any]) -> None:
        name = data.get("event")
        payload = data.get("data")
        for handler in list(self.handlers.get(name, [])):
            self.spawn(self._run_handler(handler, payload))
        for handler in list(self.handlers.get("*", [])):
            self.spawn(self._run_handler(handler, name, payload))

    async def _run_handler(self, handler: Any, *args: Any) -> None:
        try:
            await _maybe_await(handler(*args))
        except Exception as e:
            self.connection.log("error", f"Event handler failed: {type(e).__name__}: {e}")

    # -- timers -------------------------------------------------------------

    def schedule(self, fn: Any, delay: float) -> int:
        timer_id = self._next_timer
        self._next_timer += 1

        def fire() -> None:
            self._timers.pop(timer_id, None)
            self.spawn(self._run_handler(fn))

        self._timers[timer_id] = asyncio.get_running_loop().call_later(delay, fire)
        return timer_id

    def cancel_timer(self, timer_id: int) -> None:
        handle = self._timers.pop(timer_id, None)
        if handle is not None:
            handle.cancel()

    # -- dispatch -----------------------------------------------------------

    def spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def dispatch(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "response":
            self.connection.resolve(message)
        elif kind == "event":
            self.event(message.get("data") or {})
        elif kind in ("load", "call", "hook"):
            self.spawn(self._serve(kind, message))
        else:
            self.connection.log("warn", f"Unknown message type: {kind}")

    async def _serve(self, kind: str, message: dict[str, Any]) -> None:
        request_id = message.get("requestId")
        handler = {"load": self.load, "call": self.call, "hook": self.hook}[kind]
        try:
            result = await handler(message.get("data") or {})
            self.connection.send(
                {"type": "response", "requestId": request_id, "success": True, "result": result}
            )
        except Exception as e:
            self.connection.send(
                {
                    "type": "response",
                    "requestId": request_id,
                    "success": False,
                    "error": str(e) or type(e).__name__,
                    "errorType": type(e).__name__,
                    "permission": getattr(e, "permission", None),
                }
            )

    async def shutdown(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)


def _is_dunder(name: str) -> bool:
    return len(name) > 4 and name.startswith("__") and name.endswith("__")


def module_proxy(module: types.ModuleType) -> types.ModuleType:
    """Copy the public members of a module, minus modules it merely imports.

    Submodules of the package are proxied in turn; ``dataclasses.sys`` and the
    like are dropped.
    """
    proxy = types.ModuleType(module.__name__, module.__doc__)
    prefix = f"{module.__name__}."
    hidden = HIDDEN_MEMBERS.get(module.__name__, frozenset())
    for name, value in vars(module).items():
        if name.startswith("_") or name in hidden:
            continue
        if isinstance(value, types.ModuleType):
            if not value.__name__.startswith(prefix):
                continue
            value = module_proxy(value)
        setattr(proxy, name, value)
    return proxy


class AttributeGuard:
    """Attribute access for restricted plugin code.

    Private names are only reachable on classes the plugin defined itself,
    recognised by their ``__module__``.
    """

    def __init__(self, module_name: str):
        self.module_name = module_name

    def allowed(self, obj: Any, name: str) -> bool:
        if name in BLOCKED_ATTRIBUTES:
            return False
        if name in ("format", "format_map") and (isinstance(obj, str) or obj is str):
            return False
        if _is_dunder(name):
            return name in SAFE_DUNDERS
        if name.startswith("_"):
            owner = obj if isinstance(obj, type) else type(obj)
            return getattr(owner, "__module__", None) == self.module_name
        return True

    def get(self, obj: Any, name: str, *default: Any) -> Any:
        if isinstance(name, str) and not self.allowed(obj, name):
            if default:
                return default[0]
            raise AttributeError(f"Attribute '{name}' is not accessible in the sandbox")
        return getattr(obj, name, *default)

    def has(self, obj: Any, name: str) -> bool:
        return self.allowed(obj, name) and hasattr(obj, name)

    def set(self, obj: Any, name: str, value: Any) -> None:
        if not self.allowed(obj, name):
            raise AttributeError(f"Attribute '{name}' is not writable in the sandbox")
        setattr(obj, name, value)


class RestrictedSource(ast.NodeTransformer):
    """Rejects internals in plugin source and routes attribute reads through
    the :class:`AttributeGuard`."""

    def visit_Name(self, node: ast.Name) -> ast.Name:
        if node.id == GETATTR_NAME or (_is_dunder(node.id) and node.id != "__name__"):
            raise SandboxViolation(f"Name '{node.id}' is not allowed in the sandbox")
        return node

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        self.generic_visit(node)
        attr = node.attr
        if attr in BLOCKED_ATTRIBUTES or (_is_dunder(attr) and attr not in SAFE_DUNDERS):
            raise SandboxViolation(f"Attribute '{attr}' is not allowed in the sandbox")
        # __private names are mangled by the compiler, leave them to it
        if not isinstance(node.ctx, ast.Load) or (attr.startswith("__") and not _is_dunder(attr)):
            return node
        call = ast.Call(
            func=ast.Name(id=GETATTR_NAME, ctx=ast.Load()),
            args=[node.value, ast.Constant(attr)],
            keywords=[],
        )
        return ast.copy_location(call, node)


def compile_restricted(source: str, filename: str) -> types.CodeType:
    tree = RestrictedSource().visit(ast.parse(source, filename, "exec"))
    return compile(ast.fix_missing_locations(tree), filename, "exec")


def check_bytecode(code: types.CodeType) -> None:
    """Reject precompiled code that names internals; nested code included."""
    for name in code.co_names:
        if (
            name in BLOCKED_ATTRIBUTES
            or name in ("format", "format_map")
            or (name.startswith("_") and name not in SAFE_DUNDERS | CLASS_BODY_NAMES)
        ):
            raise SandboxViolation(f"Bytecode references '{name}', which is not allowed")
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            check_bytecode(const)


def _guarded_import(allowed: frozenset[str]) -> Any:
    real_import = builtins.__import__

    def guarded(
        name: str,
        globals: Any = None,
        locals: Any = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        if level != 0 or name.partition(".")[0] not in allowed:
            raise ImportError(f"Import of '{name}' is not allowed in the sandbox")
        return module_proxy(real_import(name, globals, locals, fromlist, level))

    return guarded


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _read_stdin(loop: asyncio.AbstractEventLoop, inbox: asyncio.Queue) -> None:
    stream = sys.stdin.buffer
    while True:
        line = stream.readline()
        if not line:
            break
        loop.call_soon_threadsafe(inbox.put_nowait, line)
    loop.call_soon_threadsafe(inbox.put_nowait, None)


async def serve(plugin_id: str, isolation: str, out: Any) -> None:
    """Process host messages until stdin closes."""
    loop = asyncio.get_running_loop()
    inbox: asyncio.Queue = asyncio.Queue()
    worker = Worker(Connection(out), plugin_id, isolation)
    threading.Thread(target=_read_stdin, args=(loop, inbox), daemon=True).start()

    while True:
        line = await inbox.get()
        if line is None:
            break
        try:
            message = json.loads(line)
        except ValueError:
            continue
        if isinstance(message, dict):
            worker.dispatch(message)

    await worker.shutdown()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="warden plugin sandbox worker")
    parser.add_argument("--plugin-id", required=True)
    parser.add_argument("--isolation", choices=ISOLATION_LEVELS, default="strict")
    args = parser.parse_args(argv)

    # Keep the protocol stream private: anything else written to fd 1
    # (plugin prints, C extensions) lands on stderr instead.
    out = os.fdopen(os.dup(1), "wb")
    os.dup2(2, 1)

    asyncio.run(serve(args.plugin_id, args.isolation, out))
    return 0


if __name__ == "__main__":
    sys.exit(main())
