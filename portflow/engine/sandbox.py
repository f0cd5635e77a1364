"""
Restricted Expression Evaluator.

User-authored plugins describe each output port as a Python expression
over ``inputs`` (the node's input map) and ``data`` (the node's merged
configuration). Expressions are parsed once and checked against a
whitelist of syntax; they are then interpreted node by node. Nothing is
ever passed to ``eval`` or ``exec``.

Allowed: literals, arithmetic, comparisons, boolean logic, conditional
expressions, subscripts and slices, f-strings, calls to a small set of
builtins and a small set of str/dict/list methods.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional
import ast
import operator
import re

from portflow.config import settings


class SandboxError(ValueError):
    """An expression is not allowed, or failed while being evaluated."""


MAX_SEQUENCE_LENGTH = 100_000
MAX_EXPONENT = 100
MAX_INTEGER_BITS = 10_000

SAFE_FUNCTIONS: Dict[str, Callable] = {
    "abs": abs,
    "bool": bool,
    "dict": dict,
    "float": float,
    "int": int,
    "len": len,
    "list": list,
    "max": max,
    "min": min,
    "round": round,
    "sorted": sorted,
    "str": str,
    "sum": sum,
}

SAFE_METHODS = {
    dict: {"get", "keys", "values", "items"},
    str: {"upper", "lower", "strip", "title", "split", "replace", "startswith", "endswith", "join"},
    list: {"index", "count"},
}

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS = {
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

_ALLOWED_NODES = (
    ast.Expression, ast.Constant, ast.Name, ast.Load,
    ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp,
    ast.Subscript, ast.Slice, ast.Attribute, ast.Call,
    ast.List, ast.Tuple, ast.Dict, ast.Set,
    ast.JoinedStr, ast.FormattedValue,
    ast.And, ast.Or, ast.keyword,
    *_BINARY_OPS, *_UNARY_OPS, *_COMPARE_OPS,
)


class SafeExpression:
    """A parsed and validated expression, ready to be evaluated repeatedly."""

    def __init__(self, source: str, tree: ast.Expression):
        self.source = source
        self._tree = tree

    def evaluate(self, names: Mapping[str, Any]) -> Any:
        """
        Evaluate against the given variables.

        Raises:
            SandboxError: If evaluation fails for any reason
        """
        try:
            return _Evaluator(names).visit(self._tree.body)
        except SandboxError:
            raise
        except Exception as e:
            raise SandboxError(
                f"Error evaluating '{self.source}': {type(e).__name__}: {e}"
            ) from e

    def __repr__(self) -> str:
        return f"SafeExpression({self.source!r})"


def compile_expression(source: str, max_length: Optional[int] = None) -> SafeExpression:
    """
    Parse and validate an expression.

    Args:
        source: Python expression source
        max_length: Source length limit (defaults to SCRIPT_MAX_LENGTH)

    Raises:
        SandboxError: If the source is too long, not an expression, or uses
            disallowed syntax
    """
    limit = max_length or settings.SCRIPT_MAX_LENGTH
    if len(source) > limit:
        raise SandboxError(f"Expression is longer than {limit} characters")

    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise SandboxError(f"Syntax error in expression: {e.msg}") from None

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise SandboxError(f"'{type(node).__name__}' is not allowed in expressions")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise SandboxError(f"Name '{node.id}' is not allowed")
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise SandboxError(f"Attribute '{node.attr}' is not allowed")
        if isinstance(node, ast.Call):
            if isinstance(node.func, ast.Name) and node.func.id not in SAFE_FUNCTIONS:
                raise SandboxError(f"Function '{node.func.id}' is not allowed")
            if node.keywords and any(k.arg is None for k in node.keywords):
                raise SandboxError("'**' arguments are not allowed")

    # Attributes are only valid as the callee of a method call
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and not _is_method_callee(tree, node):
            raise SandboxError(f"Attribute access '.{node.attr}' is only allowed for method calls")

    return SafeExpression(source, tree)


def _is_method_callee(tree: ast.AST, attribute: ast.Attribute) -> bool:
    return any(
        isinstance(node, ast.Call) and node.func is attribute
        for node in ast.walk(tree)
    )


class _Evaluator(ast.NodeVisitor):
    """Interprets a validated expression tree."""

    def __init__(self, names: Mapping[str, Any]):
        self.names = names

    def generic_visit(self, node: ast.AST) -> Any:
        raise SandboxError(f"'{type(node).__name__}' is not allowed in expressions")

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.names:
            return self.names[node.id]
        if node.id in SAFE_FUNCTIONS:
            return SAFE_FUNCTIONS[node.id]
        raise SandboxError(f"Unknown name '{node.id}'")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Pow):
            _check_power(left, right)
        if isinstance(node.op, ast.Mult):
            _check_repeat(left, right)
            _check_repeat(right, left)
            if _is_integer(left) and _is_integer(right):
                _check_bits(abs(left).bit_length() + abs(right).bit_length())
        if isinstance(node.op, ast.Mod) and isinstance(left, str):
            _check_format_spec(left)
        return _check_size(_BINARY_OPS[type(node.op)](left, right))

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        return _UNARY_OPS[type(node.op)](self.visit(node.operand))

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        value = None
        for operand in node.values:
            value = self.visit(operand)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        return self.visit(node.value)[self.visit(node.slice)]

    def visit_Slice(self, node: ast.Slice) -> slice:
        return slice(
            self.visit(node.lower) if node.lower else None,
            self.visit(node.upper) if node.upper else None,
            self.visit(node.step) if node.step else None,
        )

    def visit_Call(self, node: ast.Call) -> Any:
        if isinstance(node.func, ast.Attribute):
            func = self._method(node.func)
        else:
            func = self.visit(node.func)
            if not any(func is allowed for allowed in SAFE_FUNCTIONS.values()):
                raise SandboxError("Only whitelisted functions can be called")
        args = [self.visit(a) for a in node.args]
        kwargs = {k.arg: self.visit(k.value) for k in node.keywords}
        _check_call(func, args, kwargs)
        return _check_size(func(*args, **kwargs))

    def _method(self, node: ast.Attribute) -> Callable:
        target = self.visit(node.value)
        for kind, methods in SAFE_METHODS.items():
            if isinstance(target, kind) and node.attr in methods:
                return getattr(target, node.attr)
        raise SandboxError(
            f"Method '{node.attr}' is not allowed on {type(target).__name__}"
        )

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(e) for e in node.elts)

    def visit_Set(self, node: ast.Set) -> set:
        return {self.visit(e) for e in node.elts}

    def visit_Dict(self, node: ast.Dict) -> dict:
        if any(k is None for k in node.keys):
            raise SandboxError("'**' unpacking is not allowed")
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def visit_JoinedStr(self, node: ast.JoinedStr) -> str:
        return _check_size("".join(str(self.visit(part)) for part in node.values))

    def visit_FormattedValue(self, node: ast.FormattedValue) -> str:
        value = self.visit(node.value)
        if node.conversion == ord("r"):
            value = repr(value)
        elif node.conversion == ord("a"):
            value = ascii(value)
        elif node.conversion == ord("s"):
            value = str(value)
        spec = self.visit(node.format_spec) if node.format_spec else ""
        _check_widths(re.findall(r"\d+", spec))
        return _check_size(format(value, spec))


# %-style conversion: flags, then optional width and precision
_PERCENT_FIELD = re.compile(r"%(?:\([^)]*\))?[-#0 +]*(\*|\d+)?(?:\.(\*|\d+))?")


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_size(value: Any) -> Any:
    """Reject oversized results; returns ``value`` unchanged otherwise."""
    if isinstance(value, (str, list, tuple, dict, set)) and len(value) > MAX_SEQUENCE_LENGTH:
        raise SandboxError("Result is too large")
    if _is_integer(value):
        _check_bits(value.bit_length())
    return value


def _check_bits(bits: int) -> None:
    if bits > MAX_INTEGER_BITS:
        raise SandboxError(f"Integer result larger than {MAX_INTEGER_BITS} bits")


def _check_length(length: int) -> None:
    if length > MAX_SEQUENCE_LENGTH:
        raise SandboxError("Result is too large")


def _check_repeat(sequence: Any, count: Any) -> None:
    if isinstance(sequence, (str, list, tuple)) and isinstance(count, int):
        _check_length(len(sequence) * count)


def _check_power(base: Any, exponent: Any) -> None:
    if isinstance(exponent, (int, float)) and abs(exponent) > MAX_EXPONENT:
        raise SandboxError(f"Exponent larger than {MAX_EXPONENT}")
    if _is_integer(base) and _is_integer(exponent) and exponent > 0:
        _check_bits(abs(base).bit_length() * exponent)


def _check_widths(numbers: List[str]) -> None:
    for number in numbers:
        if number == "*":
            raise SandboxError("Starred format widths are not allowed")
        if number and int(number) > MAX_SEQUENCE_LENGTH:
            raise SandboxError("Format width too large")


def _check_format_spec(template: str) -> None:
    for width, precision in _PERCENT_FIELD.findall(template):
        _check_widths([width, precision])


def _check_call(func: Callable, args: List[Any], kwargs: Dict[str, Any]) -> None:
    """
    Estimate the size of a call's result before making it.

    Only the whitelisted callables that can grow their output beyond the
    size of their arguments need an estimate: ``str.replace``,
    ``str.join`` and ``sum`` with a sequence start value. Iterables are
    materialized into ``args`` so they are consumed only once.
    """
    owner = getattr(func, "__self__", None)
    name = getattr(func, "__name__", "")

    if isinstance(owner, str) and name == "replace" and len(args) >= 2:
        old, new = args[0], args[1]
        if isinstance(old, str) and isinstance(new, str):
            count = args[2] if len(args) > 2 else kwargs.get("count", -1)
            hits = owner.count(old) if old else len(owner) + 1
            if _is_integer(count) and count >= 0:
                hits = min(hits, count)
            _check_length(len(owner) + hits * (len(new) - len(old)))

    elif isinstance(owner, str) and name == "join" and args:
        items = list(args[0])
        _check_length(len(items))
        args[0] = items
        total = len(owner) * max(len(items) - 1, 0)
        total += sum(len(item) for item in items if isinstance(item, str))
        _check_length(total)

    elif func is sum and args:
        start = args[1] if len(args) > 1 else kwargs.get("start", 0)
        if isinstance(start, (str, list, tuple)):
            items = list(args[0])
            _check_length(len(items))
            args[0] = items
            total = len(start)
            total += sum(len(item) for item in items if isinstance(item, (str, list, tuple)))
            _check_length(total)
