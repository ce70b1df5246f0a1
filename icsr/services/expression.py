"""
Restricted expression language for validation rules.

Rule conditions and checks are short boolean expressions written in a
Python-flavoured syntax.  They are parsed with ``ast.parse(mode="eval")``,
checked against a fixed node whitelist, and interpreted directly by walking
the tree.  Nothing is ever handed to ``eval`` / ``exec`` / ``compile``.

Allowed:
  - Literals: numbers, strings, True/False/None (also true/false/null)
  - Field references: bare names, looked up in the case context;
    a name missing from the context evaluates to None
  - Comparisons: ==, !=, <, <=, >, >=, in, not in, is, is not
  - Logical: and, or, not
  - Arithmetic: + - * / and unary minus
  - Conditional: ternary (a if b else c)
  - List / tuple literals (for ``in``)
  - Calls to the helper library only:
      calculateAgeFromDOB(dob, reference_date=None), isEmpty(value),
      matchesPattern(value, pattern), isValidDate(value),
      toDate(value), today(), abs(value), len(value)

Rejected:
  - attribute access, subscripts, lambdas, comprehensions, f-strings,
    keyword arguments, star arguments, walrus, any other call

Null handling:
  - Arithmetic with None yields None.
  - Ordering comparisons (< <= > >=) with None are False.
  - Comparing a date with a string parses the string as a date.
"""

import ast
import re
from dataclasses import dataclass
from datetime import date, timedelta
from functools import lru_cache

from icsr.utils.helpers import parse_date

LITERAL_NAMES = {
    "True": True,
    "False": False,
    "None": None,
    "true": True,
    "false": False,
    "null": None,
}

_COMPARE_OPS = (
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot,
)
_ARITH_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div)
_UNARY_OPS = (ast.Not, ast.USub, ast.UAdd)

MAX_EXPRESSION_LENGTH = 4000
# Longest string or list an expression may build with ``+``.
MAX_SEQUENCE_LENGTH = 10_000


class ExpressionError(Exception):
    """Raised when an expression is rejected or fails to evaluate."""

    def __init__(self, message: str, expression: str | None = None):
        self.expression = expression
        super().__init__(message)


@dataclass(frozen=True)
class ExpressionIssue:
    """A problem found while checking an expression against the whitelist."""

    expression: str
    message: str
    node_type: str = ""
    col_offset: int = 0


# ── Helper library ───────────────────────────────────────────────────────────

def calculate_age_from_dob(dob, reference_date=None):
    """Whole years between *dob* and *reference_date* (default: today)."""
    birth = parse_date(dob)
    if birth is None:
        return None
    ref = parse_date(reference_date) or date.today()
    age = ref.year - birth.year
    if (ref.month, ref.day) < (birth.month, birth.day):
        age -= 1
    return age


def is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def matches_pattern(value, pattern) -> bool:
    if value is None or pattern is None:
        return False
    try:
        return re.search(str(pattern), str(value)) is not None
    except re.error as exc:
        raise ExpressionError(f"Invalid pattern {pattern!r}: {exc}") from exc


def is_valid_date(value) -> bool:
    return parse_date(value) is not None


def _abs(value):
    return None if value is None else abs(value)


def _len(value):
    return 0 if value is None else len(value)


HELPERS = {
    "calculateAgeFromDOB": calculate_age_from_dob,
    "isEmpty": is_empty,
    "matchesPattern": matches_pattern,
    "isValidDate": is_valid_date,
    "toDate": parse_date,
    "today": date.today,
    "abs": _abs,
    "len": _len,
}

ALLOWED_FUNCTIONS: frozenset[str] = frozenset(HELPERS)


# ── Whitelist check ──────────────────────────────────────────────────────────

def validate_expression(expression: str) -> list[ExpressionIssue]:
    """Check *expression* against the grammar.

    Returns a list of issues.  Empty list means the expression is valid.
    """
    if not isinstance(expression, str) or not expression.strip():
        return [ExpressionIssue(expression=str(expression), message="Expression is empty")]

    if len(expression) > MAX_EXPRESSION_LENGTH:
        return [ExpressionIssue(expression=expression[:80],
                                message=f"Expression is longer than {MAX_EXPRESSION_LENGTH} characters")]

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        return [ExpressionIssue(
            expression=expression,
            message=f"Syntax error: {e.msg}",
            col_offset=e.offset or 0,
        )]
    except (RecursionError, MemoryError, ValueError) as e:
        return [ExpressionIssue(expression=expression, message=f"Expression cannot be parsed: {type(e).__name__}")]

    issues: list[ExpressionIssue] = []
    try:
        _check_node(tree.body, expression, issues)
    except RecursionError:
        return [ExpressionIssue(expression=expression, message="Expression is nested too deeply")]
    return issues


def _reject(node, expression, issues, message):
    issues.append(ExpressionIssue(
        expression=expression,
        message=message,
        node_type=type(node).__name__,
        col_offset=getattr(node, "col_offset", 0),
    ))


def _check_node(node: ast.AST, expression: str, issues: list[ExpressionIssue]) -> None:
    """Recursively check an AST node."""
    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _check_node(value, expression, issues)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, _UNARY_OPS):
            _reject(node, expression, issues, f"Disallowed unary operator: {type(node.op).__name__}")
        _check_node(node.operand, expression, issues)

    elif isinstance(node, ast.Compare):
        for op in node.ops:
            if not isinstance(op, _COMPARE_OPS):
                _reject(node, expression, issues, f"Disallowed comparison: {type(op).__name__}")
        _check_node(node.left, expression, issues)
        for comparator in node.comparators:
            _check_node(comparator, expression, issues)

    elif isinstance(node, ast.BinOp):
        if not isinstance(node.op, _ARITH_OPS):
            _reject(node, expression, issues, f"Disallowed binary operator: {type(node.op).__name__}")
        _check_node(node.left, expression, issues)
        _check_node(node.right, expression, issues)

    elif isinstance(node, ast.Call):
        if not (isinstance(node.func, ast.Name) and node.func.id in ALLOWED_FUNCTIONS):
            _reject(node, expression, issues, f"Disallowed function call: {_describe(node.func)}")
            return
        if node.keywords:
            _reject(node, expression, issues, "Keyword arguments are not allowed")
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                _reject(arg, expression, issues, "Star arguments are not allowed")
            else:
                _check_node(arg, expression, issues)

    elif isinstance(node, ast.Name):
        if node.id.startswith("_"):
            _reject(node, expression, issues, f"Disallowed name: {node.id}")
        elif node.id in ALLOWED_FUNCTIONS:
            _reject(node, expression, issues, f"Helper {node.id} must be called")

    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (int, float, str, bool, type(None))):
            _reject(node, expression, issues, f"Disallowed constant type: {type(node.value).__name__}")

    elif isinstance(node, (ast.List, ast.Tuple)):
        for elt in node.elts:
            if isinstance(elt, ast.Starred):
                _reject(elt, expression, issues, "Star expressions are not allowed")
            else:
                _check_node(elt, expression, issues)

    elif isinstance(node, ast.IfExp):
        _check_node(node.test, expression, issues)
        _check_node(node.body, expression, issues)
        _check_node(node.orelse, expression, issues)

    elif isinstance(node, ast.Attribute):
        _reject(node, expression, issues, f"Attribute access is not allowed: {_describe(node)}")

    elif isinstance(node, ast.Subscript):
        _reject(node, expression, issues, "Subscripts are not allowed")

    elif isinstance(node, ast.Lambda):
        _reject(node, expression, issues, "Lambda expressions are not allowed")

    else:
        _reject(node, expression, issues, f"Disallowed expression type: {type(node).__name__}")


def _describe(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_describe(node.value)}.{node.attr}"
    return type(node).__name__


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    """Parse and whitelist-check *expression*.

    Raises ExpressionError listing every issue found.
    """
    issues = validate_expression(expression)
    if issues:
        raise ExpressionError("; ".join(i.message for i in issues), expression)
    return ast.parse(expression.strip(), mode="eval")


# ── Interpreter ──────────────────────────────────────────────────────────────

def evaluate(expression: str, context: dict):
    """Evaluate *expression* against *context* and return the raw value."""
    tree = compile_expression(expression)
    try:
        return _eval(tree.body, context or {})
    except (ArithmeticError, MemoryError, RecursionError, ValueError) as exc:
        raise ExpressionError(f"Evaluation failed: {type(exc).__name__}: {exc}", expression) from exc


def evaluate_bool(expression: str, context: dict) -> bool:
    return bool(evaluate(expression, context))


def is_always_true(expression: str | None) -> bool:
    """True for an absent / empty / ``"true"`` condition."""
    return expression is None or expression.strip() in ("", "true", "True")


def _eval(node, ctx):
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in LITERAL_NAMES:
            return LITERAL_NAMES[node.id]
        return ctx.get(node.id)

    if isinstance(node, ast.BoolOp):
        is_and = isinstance(node.op, ast.And)
        result = None
        for value in node.values:
            result = _eval(value, ctx)
            if is_and and not result:
                return result
            if not is_and and result:
                return result
        return result

    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, ctx)
        if isinstance(node.op, ast.Not):
            return not operand
        if operand is None:
            return None
        try:
            return -operand if isinstance(node.op, ast.USub) else +operand
        except TypeError as exc:
            raise ExpressionError(f"Bad operand for unary operator: {exc}") from exc

    if isinstance(node, ast.BinOp):
        return _arith(node.op, _eval(node.left, ctx), _eval(node.right, ctx))

    if isinstance(node, ast.Compare):
        left = _eval(node.left, ctx)
        for op, comparator in zip(node.ops, node.comparators):
            right = _eval(comparator, ctx)
            if not _compare(op, left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.Call):
        name = node.func.id
        args = [_eval(arg, ctx) for arg in node.args]
        try:
            return HELPERS[name](*args)
        except TypeError as exc:
            raise ExpressionError(f"{name}(): {exc}") from exc

    if isinstance(node, (ast.List, ast.Tuple)):
        return tuple(_eval(elt, ctx) for elt in node.elts)

    if isinstance(node, ast.IfExp):
        return _eval(node.body, ctx) if _eval(node.test, ctx) else _eval(node.orelse, ctx)

    # compile_expression rejects everything else
    raise ExpressionError(f"Unsupported expression node: {type(node).__name__}")


def _coerce_dates(left, right):
    if isinstance(left, date) or isinstance(right, date):
        return parse_date(left), parse_date(right)
    return left, right


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _arith(op, left, right):
    if left is None or right is None:
        return None
    try:
        if isinstance(left, date) and isinstance(right, date) and isinstance(op, ast.Sub):
            return (parse_date(left) - parse_date(right)).days
        if isinstance(left, date) and isinstance(right, int) and isinstance(op, (ast.Add, ast.Sub)):
            delta = timedelta(days=right)
            return left + delta if isinstance(op, ast.Add) else left - delta
        if isinstance(op, ast.Add):
            if isinstance(left, (str, tuple)) and isinstance(right, (str, tuple)) \
                    and len(left) + len(right) > MAX_SEQUENCE_LENGTH:
                raise ExpressionError(f"Result longer than {MAX_SEQUENCE_LENGTH} items")
            return left + right
        if isinstance(op, ast.Sub):
            return left - right
        if isinstance(op, ast.Mult):
            if not (_is_number(left) and _is_number(right)):
                raise ExpressionError(
                    f"Multiplication needs numbers, got {type(left).__name__} and {type(right).__name__}")
            return left * right
        return left / right
    except ZeroDivisionError as exc:
        raise ExpressionError("Division by zero") from exc
    except TypeError as exc:
        raise ExpressionError(f"Unsupported operand types: {exc}") from exc


def _compare(op, left, right) -> bool:
    if isinstance(op, (ast.Is, ast.IsNot)):
        same = left is right if (right is None or isinstance(right, bool)) else left == right
        return same if isinstance(op, ast.Is) else not same

    if isinstance(op, (ast.In, ast.NotIn)):
        if right is None:
            found = False
        else:
            try:
                found = left in right
            except TypeError as exc:
                raise ExpressionError(f"Unsupported membership test: {exc}") from exc
        return found if isinstance(op, ast.In) else not found

    left, right = _coerce_dates(left, right)

    if isinstance(op, ast.Eq):
        return left == right
    if isinstance(op, ast.NotEq):
        return left != right

    if left is None or right is None:
        return False
    try:
        if isinstance(op, ast.Lt):
            return left < right
        if isinstance(op, ast.LtE):
            return left <= right
        if isinstance(op, ast.Gt):
            return left > right
        return left >= right
    except TypeError as exc:
        raise ExpressionError(f"Cannot compare {type(left).__name__} with {type(right).__name__}") from exc
