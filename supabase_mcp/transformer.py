"""Code transformer for submitted edge functions.

Turns caller-supplied Python source into a wrapped module that defines a
uniform entry point, ``__edge_entry__(request)``. Two conventions are
recognised, first match wins:

1. Bare-name: the last non-blank line is an unindented identifier naming the
   handler (``def add(req): ...`` followed by ``add``).
2. General: the source may populate ``exports.default`` / ``module.exports``,
   end with a reference to its handler, or simply declare one. Candidates are
   tried in that order at call time and the first callable wins.

Nothing is executed here; the sandbox runs the produced text.
"""

import ast
import keyword
import re
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple

ENTRY_FUNCTION = "__edge_entry__"
RUNTIME_HELPER = "__edge_runtime__"

# Names the sandbox scope provides; never treated as handler candidates.
RESERVED_NAMES = frozenset({
    "module", "exports", "require",
    "request", "req", "response", "res", "Response",
    "json", "math", "time", "datetime", "base64", "sleep", "logger",
    ENTRY_FUNCTION, RUNTIME_HELPER,
})

_ENTRY_REFERENCE = re.compile(r'^([A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)\s*;?$')

# Builtins that reach arbitrary attributes or the interpreter by name.
RESTRICTED_NAMES = frozenset({
    "getattr", "setattr", "delattr", "type", "vars", "globals", "locals",
    "eval", "exec", "compile", "open", "breakpoint",
})

# Frame and code attributes lead back to real module globals.
RESTRICTED_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code",
    "f_back", "f_globals", "f_locals", "f_builtins", "f_code",
    "tb_frame", "tb_next",
})

_DUNDER_TEXT = re.compile(r'__\w+__')

_BARE_NAME_TEMPLATE = '''{source}

# --- generated entry point (bare-name convention) ---
def {entry}(request):
    handler = {runtime}.resolve({name!r})
    if not callable(handler):
        raise {runtime}.EntryPointNotCallableError({name!r})
    return handler(request)
'''

_GENERAL_TEMPLATE = '''{prelude}# --- generated module environment ---
module = {runtime}.new_module()
exports = module.exports

{source}

# --- generated entry point (general convention) ---
async def {entry}(request):
    handler = {runtime}.export_member(module.exports, "default")
    if not callable(handler):
        handler = module.exports
    if not callable(handler) and {reference!r}:
        handler = {runtime}.resolve({reference!r})
    if not callable(handler):
        for candidate in {candidates!r}:
            handler = {runtime}.resolve(candidate)
            if callable(handler):
                break
    if not callable(handler):
        raise {runtime}.NoEntryPointFoundError({runtime}.scope_callables(), {last_line!r})
    result = handler(request)
    if {runtime}.isawaitable(result):
        result = await result
    return result
'''


@dataclass(frozen=True)
class WrappedFunction:
    """Executable text produced from submitted source."""

    source: str
    convention: Literal["bare_name", "general"]
    entry_point: Optional[str] = None
    candidates: List[str] = field(default_factory=list)


def _last_line(source: str) -> str:
    lines = source.strip().splitlines()
    return lines[-1] if lines else ""


def detect_bare_entry_name(source: str) -> Optional[str]:
    """Return the handler name when the source ends with a bare identifier.

    The final non-blank line must start at column zero and be a plain
    identifier that is not a keyword.
    """
    raw_line = source.rstrip().splitlines()[-1] if source.strip() else ""
    if not raw_line or raw_line[0].isspace():
        return None

    name = raw_line.strip()
    if name.isidentifier() and not keyword.iskeyword(name):
        return name
    return None


def detect_entry_reference(source: str) -> Optional[str]:
    """Return a looser last-line handler reference for the deferred check.

    Accepts dotted names and a trailing semicolon, e.g. ``handlers.main;``.
    """
    match = _ENTRY_REFERENCE.match(_last_line(source).strip())
    if not match:
        return None
    reference = match.group(1)
    if any(keyword.iskeyword(part) for part in reference.split(".")):
        return None
    return reference


def extract_declaration_names(source: str) -> List[str]:
    """Collect top-level declaration names in source order.

    Covers ``def``, ``async def``, plain and annotated assignments. Reserved
    scope names and duplicates are skipped. Source that does not parse yields
    no candidates; compilation reports the syntax error instead.
    """
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return []

    names: List[str] = []

    def add(name: str) -> None:
        if name not in RESERVED_NAMES and not name.startswith("__") and name not in names:
            names.append(name)

    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            add(node.name)
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                if isinstance(target, ast.Name):
                    add(target.id)
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            add(node.target.id)

    return names


def find_restricted_access(source: str) -> List[str]:
    """List constructs that would let function code step outside its scope.

    Rejected: attributes starting with ``_`` or naming frame internals, names
    starting with ``__``, introspection builtins such as ``getattr`` and
    ``type``, private names in ``from`` imports, and string literals holding
    dunder names. Source that does not parse yields no findings.
    """
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return []

    findings: List[str] = []

    def report(what: str, node: ast.AST) -> None:
        finding = f"{what} (line {getattr(node, 'lineno', '?')})"
        if finding not in findings:
            findings.append(finding)

    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_") or node.attr in RESTRICTED_ATTRIBUTES:
                report(f"attribute '{node.attr}'", node)
        elif isinstance(node, ast.Name):
            if node.id.startswith("__") or node.id in RESTRICTED_NAMES:
                report(f"name '{node.id}'", node)
        elif isinstance(node, ast.ImportFrom):
            for alias in node.names:
                if alias.name.startswith("_"):
                    report(f"import of '{alias.name}'", node)
        elif isinstance(node, ast.MatchClass):
            for attr in node.kwd_attrs:
                if attr.startswith("_") or attr in RESTRICTED_ATTRIBUTES:
                    report(f"pattern attribute '{attr}'", node)
        elif isinstance(node, ast.Constant) and isinstance(node.value, str):
            match = _DUNDER_TEXT.search(node.value)
            if match:
                report(f"string '{match.group(0)}'", node)

    return findings


def _split_future_imports(source: str) -> Tuple[str, str]:
    """Split off a leading docstring and ``from __future__`` imports.

    Those must stay at the very top of the module, ahead of the generated
    environment header.
    """
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return "", source

    end_line = 0
    for index, node in enumerate(tree.body):
        is_docstring = (
            index == 0
            and isinstance(node, ast.Expr)
            and isinstance(node.value, ast.Constant)
            and isinstance(node.value.value, str)
        )
        if is_docstring or (isinstance(node, ast.ImportFrom) and node.module == "__future__"):
            end_line = node.end_lineno
        else:
            break

    if not any(isinstance(n, ast.ImportFrom) and n.module == "__future__" for n in tree.body):
        return "", source

    lines = source.splitlines(keepends=True)
    prelude = "".join(lines[:end_line])
    if not prelude.endswith("\n"):
        prelude += "\n"
    return prelude, "".join(lines[end_line:])


def _strip_last_line(source: str) -> str:
    lines = source.rstrip().splitlines()
    return "\n".join(lines[:-1])


def wrap_function_code(source: str) -> WrappedFunction:
    """Wrap submitted source so it exposes ``__edge_entry__(request)``.

    Args:
        source: Function code exactly as submitted

    Returns:
        WrappedFunction with the executable text and the detected convention
    """
    entry_name = detect_bare_entry_name(source)
    if entry_name is not None:
        # The trailing name is only a marker; evaluating it early would turn a
        # missing handler into a NameError instead of a clear entry point error.
        wrapped = _BARE_NAME_TEMPLATE.format(
            source=_strip_last_line(source),
            entry=ENTRY_FUNCTION,
            runtime=RUNTIME_HELPER,
            name=entry_name,
        )
        return WrappedFunction(source=wrapped, convention="bare_name", entry_point=entry_name)

    candidates = extract_declaration_names(source)
    prelude, body = _split_future_imports(source)
    wrapped = _GENERAL_TEMPLATE.format(
        prelude=prelude,
        source=body,
        entry=ENTRY_FUNCTION,
        runtime=RUNTIME_HELPER,
        reference=detect_entry_reference(source) or "",
        candidates=tuple(candidates),
        last_line=_last_line(source).strip(),
    )
    return WrappedFunction(source=wrapped, convention="general", candidates=candidates)
