"""Error taxonomy for the embedded edge function runtime.

Every failure the runtime can report is an ``EdgeFunctionError`` subclass tagged
with a stable ``kind`` string. The registry turns these into structured
``success: false`` results; they never escape the public interface.
"""

from typing import Any, Dict, List, Optional, Type


class EdgeFunctionError(Exception):
    """Base exception for edge function deployment and execution errors."""

    kind = "edge_function_error"

    def __init__(
        self,
        message: str,
        function_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Initialize edge function error.

        Args:
            message: Human-readable error message
            function_name: Function the error relates to, if known
            details: Additional diagnostic context
        """
        super().__init__(message)
        self.function_name = function_name
        self.details = details or {}

    @classmethod
    def _rebuild(cls, message, function_name, details):
        error = cls.__new__(cls)
        EdgeFunctionError.__init__(error, message, function_name, details)
        return error


class DeployValidationError(EdgeFunctionError):
    """Raised when a function name or function code fails validation."""

    kind = "validation_error"


class FunctionNotFoundError(EdgeFunctionError):
    """Raised when executing a function that is not deployed."""

    kind = "not_found"

    def __init__(self, function_name: str, available_functions: List[str]):
        super().__init__(
            f"Function '{function_name}' not found. Deploy it first using edge_deploy_function.",
            function_name,
            {"available_functions": list(available_functions)}
        )


class EntryPointNotCallableError(EdgeFunctionError):
    """Raised when the bare-name entry point does not resolve to a callable."""

    kind = "entry_point_not_callable"

    def __init__(self, entry_point: str):
        super().__init__(
            f"Function {entry_point} is not defined or not a function",
            details={"entry_point": entry_point}
        )


class NoEntryPointFoundError(EdgeFunctionError):
    """Raised when no callable entry point can be discovered in the source."""

    kind = "no_entry_point_found"

    def __init__(self, available_functions: List[str], last_line: str = ""):
        available = ", ".join(available_functions) or "none"
        super().__init__(
            f"No handler function found. Available functions: {available}. Last line: {last_line}",
            details={"available_functions": list(available_functions), "last_line": last_line}
        )


class ModuleNotAllowedError(EdgeFunctionError, ImportError):
    """Raised when function code imports a module outside the allow-list."""

    kind = "module_not_allowed"

    def __init__(self, module_name: str):
        EdgeFunctionError.__init__(
            self,
            f"Module '{module_name}' is not allowed in serverless functions",
            details={"module": module_name}
        )


class ExecutionTimeoutError(EdgeFunctionError):
    """Raised when function execution exceeds the wall-clock budget."""

    kind = "timeout"

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Function execution timed out after {timeout_seconds:g} seconds",
            details={"timeout_seconds": timeout_seconds}
        )


class RuntimeFaultError(EdgeFunctionError):
    """Raised for any other failure while running function code."""

    kind = "runtime_fault"


ERROR_KINDS: Dict[str, Type[EdgeFunctionError]] = {
    cls.kind: cls
    for cls in (
        DeployValidationError,
        FunctionNotFoundError,
        EntryPointNotCallableError,
        NoEntryPointFoundError,
        ModuleNotAllowedError,
        ExecutionTimeoutError,
        RuntimeFaultError,
    )
}


def error_from_kind(
    kind: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    function_name: Optional[str] = None
) -> EdgeFunctionError:
    """Rebuild a tagged error from its kind, message and details.

    Unknown kinds are reported as runtime faults.
    """
    error_cls = ERROR_KINDS.get(kind, RuntimeFaultError)
    return error_cls._rebuild(message, function_name, details or {})
