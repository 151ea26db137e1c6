"""
Expression Resolver - binds node inputs against the variable store.

Two modes:

1. Path substitution. ``{{dotted.path}}`` markers are looked up in the
   variable store and substituted with their string form::

       resolve("Hi {{lead.name}}", {"lead": {"name": "Ada"}})  # -> "Hi Ada"

   A template that is exactly one marker yields the native value, so a
   number or object bound as a whole-field input is not stringified::

       resolve("{{lead}}", {"lead": {"score": 80}})  # -> {"score": 80}

2. Boolean/comparison expressions for condition nodes. Markers and bare
   dotted names are both accepted::

       evaluate_condition("{{lead.score}} > 50", variables)
       evaluate_condition("score >= 50 and tier == 'warm'", variables)

   Comparisons against missing or mismatched operands raise
   ``ResolutionError(TypeMismatch)``.

Everything here is a pure function of its arguments, so parallel branches
may call it concurrently.
"""

import json
import re
from collections import ChainMap
from collections.abc import Mapping, Sequence
from typing import Any

from axiomflow.graph.errors import ResolutionError, ResolutionErrorKind
from axiomflow.graph.safe_eval import (
    MissingOperand,
    OperandTypeError,
    SafeEvalError,
    check_syntax,
    safe_eval,
)

MARKER_PATTERN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
_PATH_SEGMENT = re.compile(r"[^.\[\]]+|\[(-?\d+)\]")
_VALID_PATH = re.compile(r"^[A-Za-z_$][\w$-]*(\.[\w$-]+|\[-?\d+\])*$")

# Root segment that addresses the message history when no variable shadows it
HISTORY_ROOT = "history"


def _split_path(path: str) -> list[str]:
    segments = []
    for match in _PATH_SEGMENT.finditer(path):
        segments.append(match.group(1) if match.group(1) is not None else match.group(0))
    return segments


def _plain(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


def lookup_path(
    path: str,
    variables: Mapping[str, Any],
    history: Sequence[Any] | None = None,
) -> Any:
    """
    Look up a dotted path in the variable store.

    Segments index into nested mappings by key and into sequences by integer
    position (``leads.0.email`` or ``leads[0].email``; negative indexes count
    from the end).

    Raises:
        ResolutionError: kind UnknownPath if any segment is missing.
    """
    segments = _split_path(path.strip())
    if not segments:
        raise ResolutionError(ResolutionErrorKind.UNKNOWN_PATH, path, "empty path")

    root = segments[0]
    if root in variables:
        current = variables[root]
    elif root == HISTORY_ROOT and history is not None:
        current = [_plain(entry) for entry in history]
    else:
        raise ResolutionError(ResolutionErrorKind.UNKNOWN_PATH, path)

    for segment in segments[1:]:
        current = _plain(current)
        if isinstance(current, Mapping):
            if segment not in current:
                raise ResolutionError(ResolutionErrorKind.UNKNOWN_PATH, path)
            current = current[segment]
        elif isinstance(current, Sequence) and not isinstance(current, str | bytes):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError) as e:
                raise ResolutionError(ResolutionErrorKind.UNKNOWN_PATH, path) from e
        else:
            raise ResolutionError(ResolutionErrorKind.UNKNOWN_PATH, path)

    return current


def stringify(value: Any) -> str:
    """String form used when a value is substituted inside a larger template."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    return json.dumps(_plain(value), default=str)


def resolve(
    template: Any,
    variables: Mapping[str, Any],
    history: Sequence[Any] | None = None,
) -> Any:
    """
    Resolve a template against the variable store.

    Non-string values pass through unchanged so literal inputs such as
    ``batchSize: 10`` survive input mapping.
    """
    if not isinstance(template, str):
        return template

    whole = MARKER_PATTERN.fullmatch(template.strip())
    if whole:
        return lookup_path(whole.group(1), variables, history)

    return MARKER_PATTERN.sub(
        lambda m: stringify(lookup_path(m.group(1), variables, history)), template
    )


def resolve_value(
    value: Any,
    variables: Mapping[str, Any],
    history: Sequence[Any] | None = None,
) -> Any:
    """Resolve every template inside a (possibly nested) mapping or list."""
    if isinstance(value, Mapping):
        return {k: resolve_value(v, variables, history) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, variables, history) for v in value]
    return resolve(value, variables, history)


def _bind_markers(
    expression: str,
    variables: Mapping[str, Any],
    history: Sequence[Any] | None,
) -> tuple[str, dict[str, Any]]:
    bindings: dict[str, Any] = {}

    def _replace(match: re.Match) -> str:
        name = f"__ref{len(bindings)}"
        try:
            bindings[name] = lookup_path(match.group(1), variables, history)
        except ResolutionError as e:
            raise ResolutionError(
                ResolutionErrorKind.TYPE_MISMATCH,
                match.group(1),
                f"missing operand '{match.group(1)}'",
            ) from e
        return name

    return MARKER_PATTERN.sub(_replace, expression), bindings


def evaluate(
    expression: str,
    variables: Mapping[str, Any],
    history: Sequence[Any] | None = None,
) -> Any:
    """
    Evaluate a comparison/value expression in strict mode.

    Raises:
        ResolutionError: TypeMismatch for missing or mismatched operands,
            SyntaxError for unparseable or disallowed expressions.
    """
    rewritten, bindings = _bind_markers(expression, variables, history)
    extra: dict[str, Any] = {}
    if HISTORY_ROOT not in variables and history is not None:
        extra[HISTORY_ROOT] = [_plain(entry) for entry in history]
    context = ChainMap(bindings, dict(variables), extra)

    try:
        return safe_eval(rewritten, context, strict=True)
    except MissingOperand as e:
        raise ResolutionError(
            ResolutionErrorKind.TYPE_MISMATCH, e.path, f"missing operand '{e.path}'"
        ) from e
    except OperandTypeError as e:
        raise ResolutionError(ResolutionErrorKind.TYPE_MISMATCH, None, str(e)) from e
    except SafeEvalError as e:
        raise ResolutionError(ResolutionErrorKind.SYNTAX_ERROR, None, str(e)) from e


def evaluate_condition(
    expression: str,
    variables: Mapping[str, Any],
    history: Sequence[Any] | None = None,
) -> bool:
    """Evaluate an expression that must produce a boolean."""
    value = evaluate(expression, variables, history)
    if not isinstance(value, bool):
        raise ResolutionError(
            ResolutionErrorKind.TYPE_MISMATCH,
            None,
            f"expression {expression!r} produced {type(value).__name__}, expected bool",
        )
    return value


def template_problems(template: str) -> list[str]:
    """Static checks for a template: balanced braces and well-formed paths."""
    problems = []
    if template.count("{{") != template.count("}}"):
        problems.append(f"unbalanced template markers in {template!r}")
    for match in MARKER_PATTERN.finditer(template):
        path = match.group(1)
        if not _VALID_PATH.match(path):
            problems.append(f"invalid path {path!r} in {template!r}")
    return problems


def expression_problems(expression: str) -> list[str]:
    """Static checks for a condition expression."""
    problems = template_problems(expression)
    if problems:
        return problems
    rewritten = MARKER_PATTERN.sub("__ref", expression)
    error = check_syntax(rewritten)
    if error:
        problems.append(f"invalid expression {expression!r}: {error}")
    return problems
