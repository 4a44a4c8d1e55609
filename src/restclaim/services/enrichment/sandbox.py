"""Sandboxed query-expression evaluation.

An endpoint's query string is built by a small expression such as::

    "?user=" + quote(username) + "&mail=" + quote(email)

Only the expression text is ever parsed. Each declared variable is then bound
by replacing its name with a literal constant node, so a value containing
quotes, newlines or expression syntax stays an opaque string and can never
change the structure of the expression. The resulting tree is walked by a
whitelist interpreter: no attribute access, subscripts, comprehensions,
lambdas or arbitrary calls, and no access to the network, filesystem or
environment.

evaluate() is total: any failure yields "" and a warning log.
"""

from __future__ import annotations

import ast
import keyword
import logging
import urllib.parse
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any, Final

from restclaim.services.enrichment.errors import ScriptEvaluationError

logger = logging.getLogger(__name__)

MAX_EXPRESSION_LENGTH: Final[int] = 4096
MAX_NODE_COUNT: Final[int] = 512
MAX_STRING_LENGTH: Final[int] = 8192
MAX_INT_BITS: Final[int] = 128

_ALLOWED_NODES: Final[frozenset[type[ast.AST]]] = frozenset(
    {
        ast.Expression,
        ast.Constant,
        ast.Name,
        ast.Load,
        ast.BinOp,
        ast.UnaryOp,
        ast.BoolOp,
        ast.Compare,
        ast.IfExp,
        ast.Call,
        ast.JoinedStr,
        ast.FormattedValue,
        ast.Add,
        ast.Sub,
        ast.Mult,
        ast.Div,
        ast.FloorDiv,
        ast.Mod,
        ast.USub,
        ast.UAdd,
        ast.Not,
        ast.And,
        ast.Or,
        ast.Eq,
        ast.NotEq,
        ast.Lt,
        ast.LtE,
        ast.Gt,
        ast.GtE,
        ast.In,
        ast.NotIn,
    }
)

_CONSTANT_TYPES: Final[tuple[type, ...]] = (str, int, float, bool, type(None))


def to_text(value: Any) -> str:
    """Coerce a value to text the way string concatenation does in the
    expression language (booleans lower-case, null for None, integral floats
    without a fraction).
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _quote(value: Any) -> str:
    return urllib.parse.quote(to_text(value), safe="")


def _length(value: Any) -> int:
    return len(to_text(value))


def _lower(value: Any) -> str:
    return to_text(value).lower()


def _upper(value: Any) -> str:
    return to_text(value).upper()


def _trim(value: Any) -> str:
    return to_text(value).strip()


FUNCTIONS: Final[Mapping[str, Callable[[Any], Any]]] = MappingProxyType(
    {
        "quote": _quote,
        "encodeURIComponent": _quote,
        "str": to_text,
        "String": to_text,
        "len": _length,
        "lower": _lower,
        "upper": _upper,
        "trim": _trim,
    }
)


class _LiteralBinder(ast.NodeTransformer):
    """Replaces every bound variable name with a literal constant node."""

    def __init__(self, bindings: Mapping[str, str]) -> None:
        self._bindings = bindings

    def visit_Call(self, node: ast.Call) -> ast.AST:
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            raise ScriptEvaluationError("only built-in helper functions may be called")
        if node.keywords or len(node.args) != 1:
            raise ScriptEvaluationError(f"{node.func.id}() takes exactly one positional argument")
        node.args = [self.visit(arg) for arg in node.args]
        return node

    def visit_Name(self, node: ast.Name) -> ast.AST:
        if node.id not in self._bindings:
            raise ScriptEvaluationError(f"undefined variable: {node.id}")
        return ast.copy_location(ast.Constant(value=self._bindings[node.id]), node)


class SafeExpressionSandbox:
    """Whitelist interpreter for query expressions.

    Implements the ExpressionEvaluator protocol.
    """

    def evaluate(self, expression: str | None, variables: Mapping[str, str]) -> str:
        """Evaluate an expression against explicitly declared variables.

        Args:
            expression: Expression text; blank means "no query string".
            variables: Variable name to string value. Values are bound as
                literals and are never parsed.

        Returns:
            The expression result as text, or "" on any failure.
        """
        if expression is None or not expression.strip():
            return ""

        try:
            tree = self.compile(expression)
            bound = _LiteralBinder(self._declare(variables)).visit(tree)
            return self._check_length(to_text(self._eval(bound.body)))
        except ScriptEvaluationError as exc:
            logger.warning("Query expression evaluation failed: %s", exc)
            return ""
        except (ArithmeticError, TypeError, ValueError, RecursionError) as exc:
            logger.warning("Query expression evaluation failed: %s", type(exc).__name__)
            return ""
        except Exception:
            logger.warning("Unexpected error evaluating query expression", exc_info=True)
            return ""

    def compile(self, expression: str) -> ast.Expression:
        """Parse and validate an expression without binding any variable.

        Raises:
            ScriptEvaluationError: On syntax errors, disallowed constructs or
                oversized expressions.
        """
        if len(expression) > MAX_EXPRESSION_LENGTH:
            raise ScriptEvaluationError(
                f"expression longer than {MAX_EXPRESSION_LENGTH} characters"
            )
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as exc:
            raise ScriptEvaluationError(f"syntax error: {exc.msg}") from exc

        node_count = 0
        for node in ast.walk(tree):
            node_count += 1
            if type(node) not in _ALLOWED_NODES:
                raise ScriptEvaluationError(f"disallowed syntax: {type(node).__name__}")
            if isinstance(node, ast.Constant) and not isinstance(node.value, _CONSTANT_TYPES):
                raise ScriptEvaluationError(f"disallowed literal: {type(node.value).__name__}")
            if isinstance(node, ast.FormattedValue) and (
                node.conversion != -1 or node.format_spec is not None
            ):
                raise ScriptEvaluationError("format specifiers are not supported")
        if node_count > MAX_NODE_COUNT:
            raise ScriptEvaluationError(f"expression has more than {MAX_NODE_COUNT} nodes")
        return tree

    @staticmethod
    def _declare(variables: Mapping[str, str]) -> Mapping[str, str]:
        bindings: dict[str, str] = {}
        for name, value in variables.items():
            if not isinstance(name, str) or not name.isidentifier() or keyword.iskeyword(name):
                logger.warning("Ignoring query variable with invalid name %r", name)
                continue
            bindings[name] = "" if value is None else str(value)
        return MappingProxyType(bindings)

    def _eval(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.JoinedStr):
            parts = [to_text(self._eval(part)) for part in node.values]
            return self._check_length("".join(parts))
        if isinstance(node, ast.FormattedValue):
            return self._eval(node.value)
        if isinstance(node, ast.BinOp):
            return self._eval_binop(node.op, self._eval(node.left), self._eval(node.right))
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            self._require_number(operand)
            return -operand if isinstance(node.op, ast.USub) else +operand
        if isinstance(node, ast.BoolOp):
            result: Any = None
            for value_node in node.values:
                result = self._eval(value_node)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result
        if isinstance(node, ast.Compare):
            return self._eval_compare(node)
        if isinstance(node, ast.IfExp):
            return self._eval(node.body if self._eval(node.test) else node.orelse)
        if isinstance(node, ast.Call):
            assert isinstance(node.func, ast.Name)
            return FUNCTIONS[node.func.id](self._eval(node.args[0]))
        raise ScriptEvaluationError(f"unsupported expression: {type(node).__name__}")

    def _eval_binop(self, op: ast.operator, left: Any, right: Any) -> Any:
        if isinstance(op, ast.Add):
            if isinstance(left, str) or isinstance(right, str):
                return self._check_length(to_text(left) + to_text(right))
            self._require_number(left, right)
            return self._check_int(left + right)
        if isinstance(op, ast.Mult):
            if isinstance(left, str) or isinstance(right, str):
                text, times = (left, right) if isinstance(left, str) else (right, left)
                if not isinstance(times, int) or isinstance(times, bool):
                    raise ScriptEvaluationError("strings can only be repeated by an integer")
                if len(text) * max(times, 0) > MAX_STRING_LENGTH:
                    raise ScriptEvaluationError(f"string result longer than {MAX_STRING_LENGTH}")
                return text * times
            self._require_number(left, right)
            return self._check_int(left * right)

        self._require_number(left, right)
        if isinstance(op, ast.Sub):
            return self._check_int(left - right)
        if isinstance(op, ast.Div):
            return left / right
        if isinstance(op, ast.FloorDiv):
            return left // right
        if isinstance(op, ast.Mod):
            return left % right
        raise ScriptEvaluationError(f"unsupported operator: {type(op).__name__}")

    def _eval_compare(self, node: ast.Compare) -> bool:
        left = self._eval(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self._eval(comparator)
            if isinstance(op, (ast.In, ast.NotIn)):
                if not isinstance(left, str) or not isinstance(right, str):
                    raise ScriptEvaluationError("'in' is only supported between strings")
                ok = (left in right) if isinstance(op, ast.In) else (left not in right)
            elif isinstance(op, ast.Eq):
                ok = left == right
            elif isinstance(op, ast.NotEq):
                ok = left != right
            elif isinstance(op, ast.Lt):
                ok = left < right
            elif isinstance(op, ast.LtE):
                ok = left <= right
            elif isinstance(op, ast.Gt):
                ok = left > right
            else:
                ok = left >= right
            if not ok:
                return False
            left = right
        return True

    @staticmethod
    def _require_number(*values: Any) -> None:
        for value in values:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ScriptEvaluationError("arithmetic requires numeric operands")

    @staticmethod
    def _check_int(value: Any) -> Any:
        if isinstance(value, int) and value.bit_length() > MAX_INT_BITS:
            raise ScriptEvaluationError("integer result out of range")
        return value

    @staticmethod
    def _check_length(value: str) -> str:
        if len(value) > MAX_STRING_LENGTH:
            raise ScriptEvaluationError(f"string result longer than {MAX_STRING_LENGTH}")
        return value
