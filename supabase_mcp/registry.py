"""In-memory registry of deployed edge functions.

``FunctionRegistry`` is the single source of truth for which functions exist.
It validates and transforms submissions on deploy, runs them through a
``Sandbox`` on execute, and cleans up their scratch artifacts on remove.
Entries live only as long as the process; functions must be redeployed after
a restart.

Tool calls run on one event loop and registry mutations contain no await, so
no lock is taken around the name index.
"""

import json
import logging
import shutil
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .context import ExecutionContext
from .errors import (
    DeployValidationError,
    EdgeFunctionError,
    FunctionNotFoundError,
    RuntimeFaultError,
)
from .models import (
    DEFAULT_MAX_CODE_SIZE,
    RUNTIME_NAME,
    DeployedFunction,
    DeploymentResult,
    ExecutionResult,
    FunctionDeployRequest,
    FunctionSummary,
)
from .normalizer import normalize
from .sandbox import DEFAULT_TIMEOUT_SECONDS, ProcessSandbox, Sandbox
from .transformer import find_restricted_access, wrap_function_code

# Configure logging to stderr only (never stdout - corrupts MCP JSON-RPC)
logging.basicConfig(stream=sys.stderr, level=logging.INFO)
logger = logging.getLogger("supabase-mcp.registry")

DEFAULT_SCRATCH_DIR = Path(tempfile.gettempdir()) / "mcp-python-functions"

# Patterns worth a warning at deploy time; the sandbox blocks them at run time.
UNSAFE_PATTERNS = [
    "import os",
    "import sys",
    "import subprocess",
    "__import__",
    "eval(",
    "exec(",
    "open(",
    "sys.exit",
]


def _format_validation_error(error: ValidationError) -> str:
    messages = []
    for err in error.errors():
        message = err.get("msg", "Invalid value")
        messages.append(message.removeprefix("Value error, "))
    return "; ".join(messages)


class FunctionRegistry:
    """Deploys, executes, lists and removes edge functions."""

    def __init__(
        self,
        sandbox: Optional[Sandbox] = None,
        scratch_dir: Optional[Union[str, Path]] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_code_size: int = DEFAULT_MAX_CODE_SIZE
    ):
        """Initialize function registry.

        Args:
            sandbox: Sandbox used to run functions (ProcessSandbox if None)
            scratch_dir: Directory for per-function artifacts
            timeout_seconds: Wall-clock budget per execution
            max_code_size: Maximum accepted source length in characters
        """
        self.sandbox = sandbox or ProcessSandbox()
        self.scratch_dir = Path(scratch_dir) if scratch_dir else DEFAULT_SCRATCH_DIR
        self.timeout_seconds = timeout_seconds
        self.max_code_size = max_code_size
        self._functions: Dict[str, DeployedFunction] = {}

    def __contains__(self, function_name: str) -> bool:
        return function_name in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    def names(self) -> List[str]:
        return list(self._functions.keys())

    def _validate(self, function_name: str, function_code: str, import_map: Any) -> FunctionDeployRequest:
        try:
            request = FunctionDeployRequest(
                function_name=function_name,
                function_code=function_code,
                import_map=import_map
            )
        except ValidationError as e:
            raise DeployValidationError(_format_validation_error(e), function_name)

        if len(request.function_code) > self.max_code_size:
            raise DeployValidationError(
                f"Function code too large (max {self.max_code_size} characters)",
                function_name,
                {"max_code_size": self.max_code_size, "code_length": len(request.function_code)}
            )
        return request

    def _write_artifacts(self, deployed: DeployedFunction) -> None:
        directory = deployed.directory
        if directory.exists():
            shutil.rmtree(directory)
        directory.mkdir(parents=True)
        (directory / "index.py").write_text(deployed.wrapped_source, encoding="utf-8")
        (directory / "source.py").write_text(deployed.original_source, encoding="utf-8")
        if deployed.import_map:
            (directory / "import-map.json").write_text(
                json.dumps(deployed.import_map, indent=2, default=str), encoding="utf-8"
            )

    def deploy(
        self,
        function_name: str,
        function_code: str,
        import_map: Optional[Dict[str, Any]] = None
    ) -> DeploymentResult:
        """Validate, transform and store a function, replacing any previous version.

        Args:
            function_name: Lowercase letters, digits and hyphens, 1-50 characters
            function_code: Python source of the function
            import_map: Advisory dependency map, stored with the function

        Returns:
            DeploymentResult; on failure no entry and no artifacts are left behind
        """
        try:
            request = self._validate(function_name, function_code, {} if import_map is None else import_map)

            violations = find_restricted_access(request.function_code)
            if violations:
                raise DeployValidationError(
                    f"Function code uses restricted access: {', '.join(violations)}",
                    function_name,
                    {"violations": violations}
                )

            warnings = [p for p in UNSAFE_PATTERNS if p in request.function_code]
            for pattern in warnings:
                logger.warning(f"Function '{function_name}' contains potentially unsafe pattern: {pattern}")

            wrapped = wrap_function_code(request.function_code)
            directory = self.scratch_dir / function_name
            try:
                compile(wrapped.source, str(directory / "index.py"), "exec", dont_inherit=True)
            except SyntaxError as e:
                raise DeployValidationError(
                    f"Function code failed to compile: {e.msg} (line {e.lineno})",
                    function_name
                )

            deployed = DeployedFunction(
                name=function_name,
                original_source=request.function_code,
                wrapped_source=wrapped.source,
                import_map=request.import_map,
                convention=wrapped.convention,
                entry_point=wrapped.entry_point,
                directory=directory,
            )

            try:
                self._write_artifacts(deployed)
            except OSError as e:
                shutil.rmtree(directory, ignore_errors=True)
                raise DeployValidationError(f"Could not write function files: {e}", function_name)

        except EdgeFunctionError as e:
            logger.error(f"Deployment of '{function_name}' failed: {e}")
            return DeploymentResult(
                success=False,
                function_name=function_name,
                error=str(e),
                error_type=e.kind,
            )

        replaced = function_name in self._functions
        self._functions[function_name] = deployed
        logger.info(
            f"Deployed function '{function_name}' ({deployed.convention} convention"
            f"{', replacing previous version' if replaced else ''})"
        )

        return DeploymentResult(
            success=True,
            function_name=function_name,
            message=f"Function '{function_name}' deployed successfully to Python serverless handler",
            deployed_at=deployed.deployed_at,
            function_url=deployed.function_url,
            code_length=deployed.code_length,
            runtime=RUNTIME_NAME,
            warnings=warnings or None,
        )

    async def execute(
        self,
        function_name: str,
        payload: Any = None,
        headers: Optional[Dict[str, str]] = None
    ) -> ExecutionResult:
        """Run a deployed function against a payload.

        Args:
            function_name: Name of a deployed function
            payload: Request body handed to the function
            headers: Extra request headers

        Returns:
            ExecutionResult; failures are reported, never raised
        """
        deployed = self._functions.get(function_name)
        if deployed is None:
            error = FunctionNotFoundError(function_name, self.names())
            logger.warning(str(error))
            return ExecutionResult(
                success=False,
                function_name=function_name,
                error=str(error),
                error_type=error.kind,
                available_functions=error.details["available_functions"],
            )

        context = ExecutionContext.create(function_name, payload, headers)
        filename = str(deployed.directory / "index.py") if deployed.directory else None
        start_time = time.perf_counter()

        try:
            raw = await self.sandbox.run(deployed.wrapped_source, context, self.timeout_seconds, filename)
            outcome = normalize(raw)
        except EdgeFunctionError as e:
            return self._failure(function_name, e, start_time)
        except Exception as e:
            logger.exception(f"Sandbox failure while running '{function_name}'")
            return self._failure(function_name, RuntimeFaultError(str(e), function_name), start_time)

        execution_time_ms = (time.perf_counter() - start_time) * 1000
        logger.info(f"Function '{function_name}' completed in {execution_time_ms:.1f}ms")

        return ExecutionResult(
            success=True,
            function_name=function_name,
            data=outcome.data,
            status_code=outcome.status,
            headers=outcome.headers,
            execution_time_ms=execution_time_ms,
        )

    def _failure(self, function_name: str, error: EdgeFunctionError, start_time: float) -> ExecutionResult:
        execution_time_ms = (time.perf_counter() - start_time) * 1000
        logger.warning(f"Function '{function_name}' failed ({error.kind}): {error}")
        return ExecutionResult(
            success=False,
            function_name=function_name,
            error=str(error),
            error_type=error.kind,
            execution_time_ms=execution_time_ms,
        )

    def list(self) -> List[FunctionSummary]:
        """Summaries of all deployed functions in deployment order."""
        return [deployed.summary() for deployed in self._functions.values()]

    def get_details(self, function_name: str) -> Optional[DeployedFunction]:
        return self._functions.get(function_name)

    def remove(self, function_name: str) -> bool:
        """Remove a function and its scratch artifacts.

        Returns:
            True if the function existed. Artifact cleanup failures are logged
            and never keep the entry alive.
        """
        deployed = self._functions.pop(function_name, None)
        if deployed is None:
            return False

        if deployed.directory is not None:
            try:
                shutil.rmtree(deployed.directory)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove function files for '{function_name}': {e}")

        logger.info(f"Removed function '{function_name}'")
        return True

    def close(self) -> None:
        """Drop every function and its artifacts (process shutdown)."""
        for function_name in self.names():
            self.remove(function_name)
