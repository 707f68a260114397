"""Reduce the shapes a function can produce to one canonical outcome.

Shapes are matched in a fixed order, first match wins:

A. the function returned a response-like value (``body`` and ``status``)
B. the function wrote to the response builder (``res.json(...)`` etc.)
C. anything else: the return value itself is the data

An explicit response return therefore beats builder writes, and builder
writes beat a plain return value.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .context import ResponseState

_MISSING = object()


@dataclass
class RawResult:
    """What the sandbox hands back: the entry point's return value and builder state."""

    value: Any = None
    response: ResponseState = field(default_factory=ResponseState)


@dataclass
class ExecutionOutcome:
    data: Any = None
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


def _field(value: Any, name: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(name, _MISSING)
    return getattr(value, name, _MISSING)


def _coerce_headers(headers: Any) -> Dict[str, str]:
    if isinstance(headers, Mapping):
        return {str(k): str(v) for k, v in headers.items()}
    return {}


def match_response_object(raw: RawResult) -> Optional[ExecutionOutcome]:
    """Shape A: a returned value exposing ``body`` and ``status``."""
    value = raw.value
    if value is None:
        return None

    body = _field(value, "body")
    status = _field(value, "status")
    if body is _MISSING or status is _MISSING or callable(status):
        return None

    try:
        status_code = int(status)
    except (TypeError, ValueError):
        return None

    headers = _field(value, "headers")
    return ExecutionOutcome(
        data=body,
        status=status_code,
        headers=_coerce_headers(headers) if headers is not _MISSING else {},
    )


def match_response_builder(raw: RawResult) -> Optional[ExecutionOutcome]:
    """Shape B: state accumulated through the response builder.

    A body write always counts. Status or header calls alone count only when
    the function returned nothing, otherwise its return value is the data.
    """
    state = raw.response
    if state.written or (state.touched and raw.value is None):
        return ExecutionOutcome(data=state.data, status=state.status, headers=dict(state.headers))
    return None


def match_plain_value(raw: RawResult) -> Optional[ExecutionOutcome]:
    """Shape C: the bare return value with default status and headers."""
    return ExecutionOutcome(data=raw.value)


SHAPE_MATCHERS: Tuple[Callable[[RawResult], Optional[ExecutionOutcome]], ...] = (
    match_response_object,
    match_response_builder,
    match_plain_value,
)


def normalize(raw: RawResult) -> ExecutionOutcome:
    """Apply the shape matchers in precedence order."""
    for matcher in SHAPE_MATCHERS:
        outcome = matcher(raw)
        if outcome is not None:
            return outcome
    return ExecutionOutcome(data=raw.value)
