"""Records and validation models for deployed edge functions.

Pydantic models describe everything that crosses the tool boundary
(deployment, execution and listing results); ``DeployedFunction`` is the
registry's internal, immutable record of one accepted submission.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

FUNCTION_NAME_PATTERN = re.compile(r'^[a-z0-9-]{1,50}$')
DEFAULT_MAX_CODE_SIZE = 100_000
FUNCTION_URL_PREFIX = "/functions/v1"
RUNTIME_NAME = "python"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_function_name(function_name: str) -> Dict[str, Any]:
    """Validate a function name for format compliance.

    Args:
        function_name: The function name to validate

    Returns:
        Dict with 'is_valid' boolean and optional 'error' message
    """
    if not function_name or not function_name.strip():
        return {"is_valid": False, "error": "Function name cannot be empty"}

    if len(function_name) > 50:
        return {"is_valid": False, "error": "Function name too long (max 50 characters)"}

    if not FUNCTION_NAME_PATTERN.match(function_name):
        return {
            "is_valid": False,
            "error": "Invalid function name. Use only lowercase letters, numbers, and hyphens."
        }

    return {"is_valid": True}


class FunctionDeployRequest(BaseModel):
    """Request model for function deployment."""

    function_name: str = Field(..., description="Name of the function to deploy")
    function_code: str = Field(..., description="Python source code for the function")
    import_map: Dict[str, Any] = Field(default_factory=dict, description="Import map for dependencies (advisory)")

    @field_validator('function_name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate function name format."""
        validation = validate_function_name(v)
        if not validation["is_valid"]:
            raise ValueError(validation["error"])
        return v

    @field_validator('function_code')
    @classmethod
    def validate_code_not_empty(cls, v: str) -> str:
        """Validate that function code is not blank."""
        if not v.strip():
            raise ValueError("Function code cannot be empty")
        return v


@dataclass(frozen=True)
class DeployedFunction:
    """One accepted function submission, owned by the registry."""

    name: str
    original_source: str
    wrapped_source: str
    import_map: Dict[str, Any] = field(default_factory=dict)
    deployed_at: datetime = field(default_factory=utc_now)
    status: Literal["deployed", "error"] = "deployed"
    convention: Literal["bare_name", "general"] = "general"
    entry_point: Optional[str] = None
    directory: Optional[Path] = None

    @property
    def function_url(self) -> str:
        return f"{FUNCTION_URL_PREFIX}/{self.name}"

    @property
    def code_length(self) -> int:
        return len(self.original_source)

    def summary(self) -> "FunctionSummary":
        return FunctionSummary(
            name=self.name,
            deployed_at=self.deployed_at,
            status=self.status,
            has_import_map=bool(self.import_map),
            code_length=self.code_length,
        )


class DeploymentResult(BaseModel):
    """Outcome of a deploy request."""

    success: bool
    function_name: str
    message: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    deployed_at: Optional[datetime] = None
    function_url: Optional[str] = None
    code_length: Optional[int] = None
    runtime: Optional[str] = None
    warnings: Optional[List[str]] = None


class ExecutionResult(BaseModel):
    """Outcome of an execute request."""

    success: bool
    function_name: str
    data: Optional[Any] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    status_code: Optional[int] = None
    execution_time_ms: Optional[float] = None
    headers: Optional[Dict[str, str]] = None
    available_functions: Optional[List[str]] = None
    runtime: str = RUNTIME_NAME
    timestamp: datetime = Field(default_factory=utc_now)


class FunctionSummary(BaseModel):
    """Listing entry for a deployed function."""

    name: str
    deployed_at: datetime
    status: str
    has_import_map: bool
    code_length: int
    runtime: str = RUNTIME_NAME


def to_payload(model: BaseModel) -> Dict[str, Any]:
    """Dump a result model to a dict, dropping unset optional fields.

    Function data is left as returned; callers serialize it with a ``default``
    hook since user code may return values pydantic cannot encode.
    """
    payload = model.model_dump(exclude_none=True)
    # A function may legitimately return None; keep the key on success.
    if isinstance(model, ExecutionResult) and model.success:
        payload.setdefault("data", None)
    return payload
