"""Sandboxed expression language for record filters and value rewrites.

Expressions use Python syntax restricted to literals, record field names,
comparisons, boolean and arithmetic operators, conditional expressions and
calls of registered functions. Attribute access, comprehensions, lambdas and
anything else that could reach the interpreter are rejected at compile time.

SQL-style operators are accepted as well, so filters such as
``Status = 'Active' AND NOT IsDeleted`` or ``Amount <> NULL`` work.
"""

import ast
import logging
import operator
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from dateutil import parser as date_parser

from ..errors import ExpressionError

logger = logging.getLogger(__name__)

_QUOTED_PATTERN = re.compile(r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\"")

_SQL_REPLACEMENTS = [
    (re.compile(r"<>"), "!="),
    (re.compile(r"(?<![=!<>])=(?!=)"), "=="),
    (re.compile(r"\bAND\b", re.IGNORECASE), "and"),
    (re.compile(r"\bOR\b", re.IGNORECASE), "or"),
    (re.compile(r"\bNOT\b", re.IGNORECASE), "not"),
    (re.compile(r"\bIN\b"), "in"),
    (re.compile(r"\bNULL\b", re.IGNORECASE), "None"),
    (re.compile(r"\bTRUE\b"), "True"),
    (re.compile(r"\bFALSE\b"), "False"),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
]

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPERATORS = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_COMPARE_OPERATORS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def _like(value: Any, pattern: str) -> bool:
    """SQL LIKE with % and _ wildcards, case-insensitive."""
    if value is None:
        return False
    regex = "^" + re.escape(str(pattern)).replace("%", ".*").replace("_", ".") + "$"
    return re.match(regex, str(value), re.IGNORECASE | re.DOTALL) is not None


def _substr(value: Any, start: int, length: Optional[int] = None) -> str:
    text = "" if value is None else str(value)
    if length is None:
        return text[start:]
    return text[start:start + length]


def _format_date(value: Any, fmt: str = "%Y-%m-%d") -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime(fmt)
    return date_parser.parse(str(value)).strftime(fmt)


def _register_builtin_functions() -> Dict[str, Callable]:
    """Functions callable from expressions."""
    return {
        "len": lambda v: len(v) if v is not None else 0,
        "str": lambda v: "" if v is None else str(v),
        "int": int,
        "float": float,
        "bool": bool,
        "abs": abs,
        "round": round,
        "min": min,
        "max": max,
        "lower": lambda v: str(v).lower() if v is not None else None,
        "upper": lambda v: str(v).upper() if v is not None else None,
        "strip": lambda v: str(v).strip() if v is not None else None,
        "replace": lambda v, old, new: str(v).replace(old, new) if v is not None else None,
        "concat": lambda *parts: "".join("" if p is None else str(p) for p in parts),
        "substr": _substr,
        "startswith": lambda v, p: v is not None and str(v).startswith(p),
        "endswith": lambda v, p: v is not None and str(v).endswith(p),
        "contains": lambda v, p: v is not None and p in str(v),
        "like": _like,
        "matches": lambda v, p: v is not None and re.search(p, str(v)) is not None,
        "coalesce": lambda *values: next((v for v in values if v not in (None, "")), None),
        "iif": lambda cond, a, b: a if cond else b,
        "is_empty": lambda v: v is None or v == "",
        "today": lambda: date.today().isoformat(),
        "now": lambda: datetime.utcnow().isoformat(),
        "format_date": _format_date,
    }


def translate_sql_operators(expression: str) -> str:
    """Rewrite SQL-style operators outside of string literals into Python ones."""
    parts = []
    last = 0
    for match in _QUOTED_PATTERN.finditer(expression):
        parts.append(_translate_segment(expression[last:match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(_translate_segment(expression[last:]))
    return "".join(parts)


def _translate_segment(segment: str) -> str:
    for pattern, replacement in _SQL_REPLACEMENTS:
        segment = pattern.sub(replacement, segment)
    return segment


def _dotted_name(node: ast.AST) -> Optional[str]:
    """Return 'A.B.C' for a chain of attribute accesses on a plain name."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        parent = _dotted_name(node.value)
        if parent is not None:
            return f"{parent}.{node.attr}"
    return None


class CompiledExpression:
    """A validated expression ready to be evaluated many times."""

    def __init__(self, source: str, tree: ast.Expression, functions: Dict[str, Callable]):
        self.source = source
        self._tree = tree
        self._functions = functions

    def evaluate(self, variables: Optional[Dict[str, Any]] = None) -> Any:
        """Evaluate against a mapping of variable names to values."""
        try:
            return self._eval(self._tree.body, variables or {})
        except ExpressionError:
            raise
        except Exception as e:
            raise ExpressionError(f"Failed to evaluate '{self.source}': {e}") from e

    def _eval(self, node: ast.AST, variables: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, (ast.Name, ast.Attribute)):
            name = _dotted_name(node)
            if name in ("None", "True", "False"):
                return {"None": None, "True": True, "False": False}[name]
            return variables.get(name)

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for value in node.values:
                    result = self._eval(value, variables)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval(value, variables)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPERATORS[type(node.op)](self._eval(node.operand, variables))

        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, variables)
            right = self._eval(node.right, variables)
            if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
                return f"{'' if left is None else left}{'' if right is None else right}"
            return _BINARY_OPERATORS[type(node.op)](left, right)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, variables)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, variables)
                if not self._compare(op, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, variables):
                return self._eval(node.body, variables)
            return self._eval(node.orelse, variables)

        if isinstance(node, (ast.Tuple, ast.List)):
            return [self._eval(elt, variables) for elt in node.elts]

        if isinstance(node, ast.Subscript):
            container = self._eval(node.value, variables)
            index = self._eval(node.slice, variables)
            return container[index]

        if isinstance(node, ast.Call):
            func = self._functions[node.func.id]
            args = [self._eval(arg, variables) for arg in node.args]
            return func(*args)

        raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")

    @staticmethod
    def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
        func = _COMPARE_OPERATORS[type(op)]
        if isinstance(op, (ast.Lt, ast.LtE, ast.Gt, ast.GtE)) and (left is None or right is None):
            return False
        return func(left, right)


class ExpressionEvaluator:
    """
    Compiles and evaluates sandboxed expressions.

    Compiled expressions are cached by source text.
    """

    _ALLOWED_NODES = (
        ast.Expression, ast.Constant, ast.Name, ast.Load, ast.Attribute,
        ast.BoolOp, ast.And, ast.Or,
        ast.UnaryOp, ast.USub, ast.UAdd, ast.Not,
        ast.BinOp, ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod,
        ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
        ast.In, ast.NotIn, ast.Is, ast.IsNot,
        ast.IfExp, ast.Tuple, ast.List, ast.Subscript, ast.Call,
    )

    def __init__(self, functions: Optional[Dict[str, Callable]] = None):
        self._functions = _register_builtin_functions()
        if functions:
            self._functions.update(functions)
        self._cache: Dict[str, CompiledExpression] = {}

    def register_function(self, name: str, func: Callable) -> None:
        """Register a custom function."""
        self._functions[name] = func
        self._cache.clear()

    def compile(self, expression: str) -> CompiledExpression:
        """
        Parse and validate an expression.

        Raises:
            ExpressionError: When the expression has a syntax error or uses
                anything outside the allowed subset
        """
        cached = self._cache.get(expression)
        if cached:
            return cached

        source = translate_sql_operators(expression.strip())
        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            raise ExpressionError(f"Invalid expression '{expression}': {e.msg}") from e

        for node in ast.walk(tree):
            if not isinstance(node, self._ALLOWED_NODES):
                raise ExpressionError(
                    f"Expression element not allowed in '{expression}': {type(node).__name__}"
                )
            if isinstance(node, ast.Call):
                if not isinstance(node.func, ast.Name) or node.func.id not in self._functions:
                    raise ExpressionError(f"Unknown function in '{expression}'")
                if node.keywords:
                    raise ExpressionError(f"Keyword arguments are not supported in '{expression}'")
            if isinstance(node, ast.Attribute) and _dotted_name(node) is None:
                raise ExpressionError(f"Attribute access is not allowed in '{expression}'")

        if source != expression.strip():
            logger.debug(f"Expression '{expression}' translated to '{source}'")
        compiled = CompiledExpression(expression, tree, self._functions)
        self._cache[expression] = compiled
        return compiled

    def evaluate(self, expression: str, variables: Optional[Dict[str, Any]] = None) -> Any:
        """Compile (cached) and evaluate an expression."""
        return self.compile(expression).evaluate(variables)
