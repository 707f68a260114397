"""Per-invocation execution context and sandbox scope.

An ``ExecutionContext`` is built fresh for every execute call: a request view
over the caller's payload, a response builder the function may write to, and
the fixed capability set the wrapped source runs against. Everything here is
plain data so a context can be handed to a child process.
"""

import asyncio
import builtins
import importlib
import inspect
import json
import logging
import sys
from dataclasses import dataclass, field
from types import ModuleType, SimpleNamespace
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import EntryPointNotCallableError, ModuleNotAllowedError, NoEntryPointFoundError
from .models import FUNCTION_URL_PREFIX
from .transformer import RESERVED_NAMES, RUNTIME_HELPER

# Configure logging to stderr only (never stdout - corrupts MCP JSON-RPC)
logging.basicConfig(stream=sys.stderr, level=logging.INFO)
logger = logging.getLogger("supabase-mcp.context")

# Utility namespaces only: no networking, filesystem or process control.
ALLOWED_MODULES = frozenset({
    "base64", "collections", "datetime", "decimal", "functools",
    "hashlib", "hmac", "itertools", "json", "math", "random", "re",
    "secrets", "string", "time", "urllib.parse", "uuid",
})

# Members that reach getattr or eval on objects the caller controls.
EXCLUDED_MEMBERS = {
    "functools": frozenset({"update_wrapper", "wraps", "singledispatch", "singledispatchmethod"}),
    "string": frozenset({"Formatter"}),
}

BLOCKED_BUILTINS = frozenset({
    "open", "exec", "eval", "compile", "input", "breakpoint",
    "exit", "quit", "help", "globals", "locals", "vars", "__import__",
    "getattr", "setattr", "delattr", "type",
})


class RequestView:
    """Read-only view of the incoming request handed to the entry point.

    Besides ``method``, ``url``, ``headers`` and ``body``, keys of a mapping
    body are reachable as attributes and items: ``req.name`` and
    ``req["name"]`` both read ``body["name"]``.
    """

    def __init__(self, method: str, url: str, headers: Dict[str, str], body: Any):
        self.method = method
        self.url = url
        self.headers = headers
        self.body = body

    @property
    def path(self) -> str:
        return self.url

    def json(self) -> Any:
        return self.body

    def text(self) -> str:
        return self.body if isinstance(self.body, str) else json.dumps(self.body, default=str)

    def get(self, key: str, default: Any = None) -> Any:
        body = self.__dict__.get("body")
        if isinstance(body, Mapping):
            return body.get(key, default)
        return default

    def clone(self) -> "RequestView":
        return RequestView(self.method, self.url, dict(self.headers), self.body)

    def __getitem__(self, key: str) -> Any:
        body = self.__dict__.get("body")
        if isinstance(body, Mapping):
            return body[key]
        raise KeyError(key)

    def __getattr__(self, name: str) -> Any:
        # Only reached for names that are not real attributes.
        if name.startswith("_"):
            raise AttributeError(name)
        body = self.__dict__.get("body")
        if isinstance(body, Mapping) and name in body:
            return body[name]
        raise AttributeError(f"Request has no attribute or body field '{name}'")

    def __repr__(self) -> str:
        return f"RequestView(method={self.method!r}, url={self.url!r})"


class Response:
    """Response object a function may return explicitly."""

    def __init__(self, body: Any = None, status: int = 200, headers: Optional[Dict[str, str]] = None):
        self.body = body
        self.status = status
        self.headers = dict(headers or {})

    def json(self) -> Any:
        return json.loads(self.body) if isinstance(self.body, str) else self.body

    def text(self) -> str:
        return self.body if isinstance(self.body, str) else json.dumps(self.body, default=str)

    def __repr__(self) -> str:
        return f"Response(status={self.status!r})"


@dataclass
class ResponseState:
    """Snapshot of what a function wrote to its response builder."""

    written: bool = False
    touched: bool = False
    data: Any = None
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


class ResponseBuilder:
    """Side-channel response accumulator exposed as ``res``/``response``.

    Methods return the builder so calls can be chained:
    ``res.status(201).json({"id": 1})``.
    """

    def __init__(self):
        self._state = ResponseState()

    def json(self, data: Any) -> "ResponseBuilder":
        self._state.data = data
        self._state.written = self._state.touched = True
        self._state.headers["content-type"] = "application/json"
        return self

    def text(self, data: str) -> "ResponseBuilder":
        self._state.data = data
        self._state.written = self._state.touched = True
        self._state.headers["content-type"] = "text/plain"
        return self

    def status(self, code: int) -> "ResponseBuilder":
        self._state.status = int(code)
        self._state.touched = True
        return self

    def set_header(self, name: str, value: str) -> "ResponseBuilder":
        self._state.headers[name.lower()] = str(value)
        self._state.touched = True
        return self

    def get_headers(self) -> Dict[str, str]:
        return dict(self._state.headers)

    def get_data(self) -> Any:
        return self._state.data

    def get_status_code(self) -> int:
        return self._state.status

    def snapshot(self) -> ResponseState:
        return ResponseState(
            written=self._state.written,
            touched=self._state.touched,
            data=self._state.data,
            status=self._state.status,
            headers=dict(self._state.headers),
        )


@dataclass
class ExecutionContext:
    """Request view, response builder and identity for one invocation."""

    function_name: str
    request: RequestView
    response: ResponseBuilder

    @classmethod
    def create(
        cls,
        function_name: str,
        payload: Any = None,
        headers: Optional[Dict[str, str]] = None
    ) -> "ExecutionContext":
        request_headers = {"content-type": "application/json"}
        for name, value in (headers or {}).items():
            request_headers[str(name).lower()] = str(value)

        request = RequestView(
            method="POST",
            url=f"{FUNCTION_URL_PREFIX}/{function_name}",
            headers=request_headers,
            body={} if payload is None else payload,
        )
        return cls(function_name=function_name, request=request, response=ResponseBuilder())


def module_view(module: ModuleType, excluded: Iterable[str] = ()) -> SimpleNamespace:
    """Expose only the public, non-module attributes of an allowed module."""
    excluded = frozenset(excluded)
    public = {
        name: value
        for name, value in vars(module).items()
        if not name.startswith("_") and not isinstance(value, ModuleType) and name not in excluded
    }
    return SimpleNamespace(**public)


def require(module_name: str) -> SimpleNamespace:
    """Load an allow-listed module for function code.

    Raises:
        ModuleNotAllowedError: If the module is not on the allow-list
    """
    if module_name not in ALLOWED_MODULES:
        raise ModuleNotAllowedError(module_name)
    return module_view(importlib.import_module(module_name), EXCLUDED_MEMBERS.get(module_name, ()))


def restricted_import(
    name: str,
    globals: Optional[Dict[str, Any]] = None,
    locals: Optional[Dict[str, Any]] = None,
    fromlist: Iterable[str] = (),
    level: int = 0
) -> Any:
    """``__import__`` replacement routing import statements through the allow-list."""
    if level:
        raise ModuleNotAllowedError("." * level + name)

    # Compiler directives still execute an import at run time
    if name == "__future__":
        return module_view(importlib.import_module(name))

    fromlist = tuple(fromlist or ())
    if fromlist:
        if name in ALLOWED_MODULES:
            return require(name)
        # from urllib import parse
        submodules = {item: f"{name}.{item}" for item in fromlist}
        if all(full in ALLOWED_MODULES for full in submodules.values()):
            return SimpleNamespace(**{item: require(full) for item, full in submodules.items()})
        raise ModuleNotAllowedError(name)

    if name not in ALLOWED_MODULES:
        raise ModuleNotAllowedError(name)

    # import urllib.parse binds the top-level name
    head, *rest = name.split(".")
    if not rest:
        return require(name)
    root = SimpleNamespace()
    node = root
    for part in rest[:-1]:
        setattr(node, part, SimpleNamespace())
        node = getattr(node, part)
    setattr(node, rest[-1], require(name))
    return root


def _restricted_builtins() -> Dict[str, Any]:
    scope_builtins = {
        name: value
        for name, value in vars(builtins).items()
        if name not in BLOCKED_BUILTINS
    }
    scope_builtins["__import__"] = restricted_import
    return scope_builtins


class FunctionLogger:
    """Logging methods for function code without exposing the logger tree."""

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(name)

    def debug(self, msg: str, *args: Any) -> None:
        self._logger.debug(msg, *args)

    def info(self, msg: str, *args: Any) -> None:
        self._logger.info(msg, *args)

    def warning(self, msg: str, *args: Any) -> None:
        self._logger.warning(msg, *args)

    def error(self, msg: str, *args: Any) -> None:
        self._logger.error(msg, *args)

    def exception(self, msg: str, *args: Any) -> None:
        self._logger.exception(msg, *args)


class ScopeRuntime:
    """Helpers the generated wrapper uses to locate the entry point."""

    EntryPointNotCallableError = EntryPointNotCallableError
    NoEntryPointFoundError = NoEntryPointFoundError

    def __init__(self, scope: Dict[str, Any]):
        self._scope = scope

    @staticmethod
    def new_module() -> SimpleNamespace:
        return SimpleNamespace(exports=SimpleNamespace())

    @staticmethod
    def export_member(exported: Any, name: str) -> Any:
        if isinstance(exported, Mapping):
            return exported.get(name)
        return getattr(exported, name, None)

    @staticmethod
    def isawaitable(value: Any) -> bool:
        return inspect.isawaitable(value)

    def resolve(self, reference: str) -> Any:
        """Look up a possibly dotted name in the scope, None when missing."""
        head, *rest = reference.split(".")
        value = self._scope.get(head)
        for part in rest:
            if value is None:
                break
            value = getattr(value, part, None)
        return value

    def scope_callables(self) -> List[str]:
        return sorted(
            name for name, value in self._scope.items()
            if not name.startswith("__") and name not in RESERVED_NAMES and callable(value)
        )


def build_scope(context: ExecutionContext) -> Dict[str, Any]:
    """Build the global scope the wrapped source executes in."""
    scope: Dict[str, Any] = {
        "__name__": f"edge_function_{context.function_name.replace('-', '_')}",
        "__builtins__": _restricted_builtins(),
        "request": context.request,
        "req": context.request,
        "response": context.response,
        "res": context.response,
        "Response": Response,
        "require": require,
        "json": require("json"),
        "math": require("math"),
        "time": require("time"),
        "datetime": require("datetime"),
        "base64": require("base64"),
        "sleep": asyncio.sleep,
        "logger": FunctionLogger(f"supabase-mcp.functions.{context.function_name}"),
    }
    scope[RUNTIME_HELPER] = ScopeRuntime(scope)
    return scope
