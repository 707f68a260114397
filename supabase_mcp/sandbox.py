"""Sandboxed execution of wrapped edge function source.

``Sandbox`` is the abstract capability the registry depends on:
``run(wrapped_source, context, timeout_seconds) -> RawResult``. The default
``ProcessSandbox`` runs every invocation in its own child process against the
restricted scope from ``context.build_scope`` and kills the child when the
wall-clock budget runs out, so a runaway function can neither block the event
loop nor outlive its timeout.
"""

import asyncio
import inspect
import logging
import multiprocessing
import pickle
import sys
from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple

from .context import ExecutionContext, Response, build_scope
from .errors import EdgeFunctionError, ExecutionTimeoutError, RuntimeFaultError, error_from_kind
from .normalizer import RawResult
from .transformer import ENTRY_FUNCTION

# Configure logging to stderr only (never stdout - corrupts MCP JSON-RPC)
logging.basicConfig(stream=sys.stderr, level=logging.INFO)
logger = logging.getLogger("supabase-mcp.sandbox")

DEFAULT_TIMEOUT_SECONDS = 30.0


class Sandbox(ABC):
    """Abstract runner for wrapped function source."""

    @abstractmethod
    async def run(
        self,
        wrapped_source: str,
        context: ExecutionContext,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        filename: Optional[str] = None
    ) -> RawResult:
        """Execute wrapped source and return its raw result.

        Args:
            wrapped_source: Output of the code transformer
            context: Fresh per-invocation execution context
            timeout_seconds: Wall-clock budget for the whole run
            filename: Name used in tracebacks

        Returns:
            RawResult with the entry point's return value and builder state

        Raises:
            EdgeFunctionError: Tagged failure (timeout, sandbox violation, fault)
        """
        pass


def _portable(value: Any) -> Any:
    """Make a value safe to send back over the process pipe."""
    try:
        pickle.dumps(value)
        return value
    except Exception:
        pass

    body = getattr(value, "body", None)
    status = getattr(value, "status", None)
    if body is not None and status is not None and not callable(status):
        headers = getattr(value, "headers", None)
        return Response(
            body=_portable(body),
            status=status,
            headers=headers if isinstance(headers, dict) else None,
        )
    return repr(value)


async def _execute(wrapped_source: str, filename: str, context: ExecutionContext) -> RawResult:
    scope = build_scope(context)
    code = compile(wrapped_source, filename, "exec", dont_inherit=True)
    exec(code, scope)

    result = scope[ENTRY_FUNCTION](context.request)
    if inspect.isawaitable(result):
        result = await result

    if result is context.response:
        # res.status(...).json(...) chains return the builder itself
        result = None

    state = context.response.snapshot()
    state.data = _portable(state.data)
    return RawResult(value=_portable(result), response=state)


def _child_main(wrapped_source: str, filename: str, context: ExecutionContext, conn) -> None:
    """Entry point of the sandbox child process."""
    # stdout belongs to the MCP transport in the parent
    sys.stdout = sys.stderr
    try:
        raw = asyncio.run(_execute(wrapped_source, filename, context))
        message: Tuple[Any, ...] = ("ok", raw)
    except EdgeFunctionError as e:
        message = ("error", e.kind, str(e), e.details)
    except BaseException as e:
        message = (
            "error",
            RuntimeFaultError.kind,
            f"Function execution failed: {e.__class__.__name__}: {e}",
            {"exception_type": e.__class__.__name__},
        )

    try:
        conn.send(message)
    except Exception as e:
        conn.send(("error", RuntimeFaultError.kind, f"Could not return function result: {e}", {}))
    finally:
        conn.close()


class ProcessSandbox(Sandbox):
    """Runs each invocation in a dedicated child process.

    On timeout the child is killed; nothing keeps running in the background.
    """

    def __init__(self, start_method: Optional[str] = None):
        """Initialize process sandbox.

        Args:
            start_method: multiprocessing start method. Defaults to "forkserver"
                where available (with this module preloaded), otherwise the
                platform default.
        """
        if start_method is None and "forkserver" in multiprocessing.get_all_start_methods():
            start_method = "forkserver"
        self._mp_context = multiprocessing.get_context(start_method)
        if start_method == "forkserver":
            self._mp_context.set_forkserver_preload([__name__])

    async def run(
        self,
        wrapped_source: str,
        context: ExecutionContext,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        filename: Optional[str] = None
    ) -> RawResult:
        filename = filename or f"<edge-function:{context.function_name}>"
        # The blocking wait happens on a worker thread; the event loop keeps serving other calls.
        message = await asyncio.to_thread(
            self._run_blocking, wrapped_source, filename, context, timeout_seconds
        )

        if message[0] == "ok":
            return message[1]

        _, kind, error_message, details = message
        raise error_from_kind(kind, error_message, details, context.function_name)

    def _run_blocking(
        self,
        wrapped_source: str,
        filename: str,
        context: ExecutionContext,
        timeout_seconds: float
    ) -> Tuple[Any, ...]:
        parent_conn, child_conn = self._mp_context.Pipe(duplex=False)
        process = self._mp_context.Process(
            target=_child_main,
            args=(wrapped_source, filename, context, child_conn),
            name=f"edge-function-{context.function_name}",
            daemon=True,
        )

        try:
            process.start()
            child_conn.close()

            if not parent_conn.poll(timeout_seconds):
                logger.warning(
                    f"Function '{context.function_name}' exceeded {timeout_seconds:g}s, terminating"
                )
                raise ExecutionTimeoutError(timeout_seconds)

            try:
                return parent_conn.recv()
            except EOFError:
                process.join(1)
                raise RuntimeFaultError(
                    f"Function process exited unexpectedly (exit code {process.exitcode})",
                    context.function_name,
                )
        finally:
            if process.is_alive():
                process.kill()
            if process.pid is not None:
                process.join()
                process.close()
            parent_conn.close()
            child_conn.close()
