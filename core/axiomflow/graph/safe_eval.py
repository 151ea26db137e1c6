"""Safe expression evaluator used by condition and transform nodes.

Supports a constrained Python expression subset with no arbitrary code
execution: literals, names, attribute/subscript access into mappings and
sequences, boolean logic, arithmetic, comparisons, conditional expressions,
comprehensions and a small whitelist of pure builtins.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Mapping
from typing import Any


class SafeEvalError(ValueError):
    """Raised when an expression contains unsupported/unsafe constructs."""


class MissingOperand(LookupError):
    """Raised when a name or key referenced by the expression does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(path)


class OperandTypeError(TypeError):
    """Raised when operands cannot be compared or combined."""


SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "sorted": sorted,
    "list": list,
    "dict": dict,
    "any": any,
    "all": all,
}

_LITERAL_NAMES = {
    "True": True,
    "False": False,
    "None": None,
    "true": True,
    "false": False,
    "null": None,
}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_ORDERING_OPS = {
    ast.Gt: operator.gt,
    ast.Lt: operator.lt,
    ast.GtE: operator.ge,
    ast.LtE: operator.le,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _equality_comparable(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return True
    if _is_number(left) and _is_number(right):
        return True
    return type(left) is type(right)


def _ordering_comparable(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return True
    return isinstance(left, str) and isinstance(right, str)


class SafeEvaluator:
    """
    Evaluate an expression against a read-only context.

    With ``strict=True`` comparisons refuse mismatched operand types
    (``"80" > 50``) instead of deferring to Python's rules; condition nodes
    use strict mode, transforms do not.
    """

    def __init__(self, context: Mapping[str, Any], strict: bool = False):
        self.context = context
        self.strict = strict

    def eval(self, expression: str) -> Any:
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise SafeEvalError(f"Invalid expression syntax: {expression!r}") from e
        return self._eval(tree, {})

    def _eval(self, node: ast.AST, scope: dict[str, Any]) -> Any:
        if isinstance(node, ast.Expression):
            return self._eval(node.body, scope)

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in scope:
                return scope[node.id]
            if node.id in self.context:
                return self.context[node.id]
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            raise MissingOperand(node.id)

        if isinstance(node, ast.Attribute):
            value = self._eval(node.value, scope)
            if isinstance(value, Mapping) and node.attr in value:
                return value[node.attr]
            raise MissingOperand(_dotted(node))

        if isinstance(node, ast.Subscript):
            value = self._eval(node.value, scope)
            index = self._eval(node.slice, scope)
            try:
                return value[index]
            except (KeyError, IndexError, TypeError) as e:
                raise MissingOperand(_dotted(node)) from e

        if isinstance(node, ast.List):
            return [self._eval(item, scope) for item in node.elts]

        if isinstance(node, ast.Tuple):
            return tuple(self._eval(item, scope) for item in node.elts)

        if isinstance(node, ast.Dict):
            result: dict[Any, Any] = {}
            for key, value in zip(node.keys, node.values, strict=True):
                if key is None:
                    # {**other}
                    result.update(self._eval(value, scope))
                else:
                    result[self._eval(key, scope)] = self._eval(value, scope)
            return result

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for value in node.values:
                    result = self._eval(value, scope)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval(value, scope)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, scope)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub | ast.UAdd):
                if not _is_number(operand):
                    raise OperandTypeError(f"Unary operator on non-number: {operand!r}")
                return -operand if isinstance(node.op, ast.USub) else operand
            raise SafeEvalError(f"Unsupported unary operator: {type(node.op).__name__}")

        if isinstance(node, ast.BinOp):
            op = _BIN_OPS.get(type(node.op))
            if op is None:
                raise SafeEvalError(f"Unsupported operator: {type(node.op).__name__}")
            left = self._eval(node.left, scope)
            right = self._eval(node.right, scope)
            try:
                return op(left, right)
            except (TypeError, ArithmeticError) as e:
                raise OperandTypeError(f"{type(e).__name__}: {e}") from e

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, scope)
            for op_node, comparator in zip(node.ops, node.comparators, strict=True):
                right = self._eval(comparator, scope)
                if not self._compare(op_node, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, scope):
                return self._eval(node.body, scope)
            return self._eval(node.orelse, scope)

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
                raise SafeEvalError(f"Function call not allowed: {ast.unparse(node.func)}")
            args = [self._eval(arg, scope) for arg in node.args]
            kwargs = {}
            for kw in node.keywords:
                if kw.arg is None:
                    kwargs.update(self._eval(kw.value, scope))
                else:
                    kwargs[kw.arg] = self._eval(kw.value, scope)
            try:
                return SAFE_FUNCTIONS[node.func.id](*args, **kwargs)
            except (TypeError, ValueError) as e:
                raise OperandTypeError(str(e)) from e

        if isinstance(node, ast.ListComp | ast.GeneratorExp):
            return list(self._comprehend(node.generators, scope, lambda s: self._eval(node.elt, s)))

        if isinstance(node, ast.DictComp):
            pairs = self._comprehend(
                node.generators,
                scope,
                lambda s: (self._eval(node.key, s), self._eval(node.value, s)),
            )
            return dict(pairs)

        raise SafeEvalError(f"Unsupported expression element: {type(node).__name__}")

    def _comprehend(self, generators: list[ast.comprehension], scope: dict[str, Any], emit):
        if len(generators) != 1:
            raise SafeEvalError("Only single-generator comprehensions are supported")
        gen = generators[0]
        if not isinstance(gen.target, ast.Name) or gen.is_async:
            raise SafeEvalError("Comprehension target must be a simple name")
        iterable = self._eval(gen.iter, scope)
        try:
            items = list(iterable)
        except TypeError as e:
            raise OperandTypeError(f"Not iterable: {iterable!r}") from e
        for item in items:
            inner = {**scope, gen.target.id: item}
            if all(self._eval(cond, inner) for cond in gen.ifs):
                yield emit(inner)

    def _compare(self, op_node: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op_node, ast.Eq | ast.NotEq):
            if self.strict and not _equality_comparable(left, right):
                raise OperandTypeError(
                    f"Cannot compare {type(left).__name__} with {type(right).__name__}"
                )
            equal = left == right
            return equal if isinstance(op_node, ast.Eq) else not equal

        if isinstance(op_node, ast.In | ast.NotIn):
            try:
                contained = left in right
            except TypeError as e:
                raise OperandTypeError(str(e)) from e
            return contained if isinstance(op_node, ast.In) else not contained

        op = _ORDERING_OPS.get(type(op_node))
        if op is None:
            raise SafeEvalError(f"Unsupported comparison: {type(op_node).__name__}")
        if self.strict and not _ordering_comparable(left, right):
            raise OperandTypeError(
                f"Cannot order {type(left).__name__} against {type(right).__name__}"
            )
        try:
            return op(left, right)
        except TypeError as e:
            raise OperandTypeError(str(e)) from e


def _dotted(node: ast.AST) -> str:
    """Best-effort dotted path for error messages (``lead.score``, ``items[0]``)."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_dotted(node.value)}.{node.attr}"
    if isinstance(node, ast.Subscript):
        return f"{_dotted(node.value)}[{ast.unparse(node.slice)}]"
    return ast.unparse(node)


def safe_eval(expression: str, context: Mapping[str, Any], strict: bool = False) -> Any:
    """Evaluate ``expression`` against ``context`` using the safe subset."""
    return SafeEvaluator(context, strict=strict).eval(expression)


def check_syntax(expression: str) -> str | None:
    """Return an error message if the expression cannot be parsed, else None."""
    try:
        ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        return f"{e.msg} at offset {e.offset}"
    return None
