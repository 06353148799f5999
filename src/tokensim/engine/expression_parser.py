"""Safe expression parser for guards, conditions, and formulas.

Uses Python's ast module to parse and evaluate expressions in a restricted
subset of Python. This is NOT eval() - it's a whitelist-based parser.

The parser operates in two phases:
1. Parse-time validation: Reject forbidden constructs at construction
2. Evaluation: Execute the validated AST against a context mapping

Expressions see a fixed set of context ROOT names chosen by the caller
(e.g. ``variables``, ``message``, ``event``). Mapping-valued data can be
navigated with attribute syntax (``message.payload.value``), subscripts
(``variables['count']``) or ``.get()``. Attribute syntax on a missing key
yields None; subscripts on a missing key are evaluation errors.

A small set of pure builtins is callable: abs, bool, float, int, len,
max, min, round, str, sum.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Callable, Iterable, Mapping
from typing import Any


class ExpressionError(Exception):
    """Base class for expression failures."""


class ExpressionSecurityError(ExpressionError):
    """Raised when expression contains forbidden constructs."""


class ExpressionSyntaxError(ExpressionError):
    """Raised when expression is not valid Python syntax."""


class ExpressionEvaluationError(ExpressionError):
    """Raised when expression evaluation fails at runtime.

    Wraps operational errors (KeyError, ZeroDivisionError, TypeError) raised
    while evaluating a valid expression against context data. The original
    exception is chained via __cause__.
    """


_COMPARISON_OPS: dict[type[ast.cmpop], Any] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_BINARY_OPS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type[ast.unaryop], Any] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

SAFE_FUNCTIONS: Mapping[str, Callable[..., Any]] = {
    "abs": abs,
    "bool": bool,
    "float": float,
    "int": int,
    "len": len,
    "max": max,
    "min": min,
    "round": round,
    "str": str,
    "sum": sum,
}

_LITERAL_NAMES = frozenset({"True", "False", "None"})

# Largest exponent accepted by **
_MAX_EXPONENT = 1000


# Rejected outright wherever they appear
_FORBIDDEN_NODES: Mapping[type[ast.AST], str] = {
    ast.Lambda: "Lambda expressions",
    ast.ListComp: "List comprehensions",
    ast.DictComp: "Dict comprehensions",
    ast.SetComp: "Set comprehensions",
    ast.GeneratorExp: "Generator expressions",
    ast.Await: "Await expressions",
    ast.Yield: "Yield expressions",
    ast.YieldFrom: "Yield from expressions",
    ast.NamedExpr: "Assignment expressions (:=)",
    ast.JoinedStr: "F-strings",
    ast.Starred: "Starred expressions",
    ast.Slice: "Slice syntax",
}


class _ExpressionValidator(ast.NodeVisitor):
    """Collects every violation in an expression tree so one error lists them all."""

    def __init__(self, allowed_names: frozenset[str]) -> None:
        self.errors: list[str] = []
        self._allowed_names = allowed_names

    def visit(self, node: ast.AST) -> None:
        construct = _FORBIDDEN_NODES.get(type(node))
        if construct is not None:
            self.errors.append(f"Forbidden construct: {construct}")
            return
        super().visit(node)

    def _is_context_derived(self, node: ast.expr) -> bool:
        """Check node is a context root or navigated from one.

        Handles: variables, variables['x'], message.payload.x, event.get('x')['y']
        """
        if isinstance(node, ast.Name):
            return node.id in self._allowed_names
        if isinstance(node, ast.Subscript | ast.Attribute):
            return self._is_context_derived(node.value)
        return (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Attribute)
            and node.func.attr == "get"
            and self._is_context_derived(node.func.value)
        )

    def visit_Name(self, node: ast.Name) -> None:
        if node.id not in self._allowed_names and node.id not in _LITERAL_NAMES:
            self.errors.append(f"Forbidden name: {node.id!r}")

    def visit_Subscript(self, node: ast.Subscript) -> None:
        if not self._is_context_derived(node.value):
            self.errors.append("Subscript access is only allowed on context data")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        """Attribute syntax is key navigation on context data only."""
        if node.attr.startswith("_"):
            self.errors.append(f"Forbidden attribute access: {node.attr!r}")
        elif not self._is_context_derived(node.value):
            self.errors.append(f"Attribute access is only allowed on context data; got {node.attr!r}")
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        """Allow .get() on context data and whitelisted builtins."""
        if node.keywords:
            self.errors.append("Keyword arguments are forbidden")
        func = node.func
        if isinstance(func, ast.Attribute) and func.attr == "get" and self._is_context_derived(func.value):
            if not 1 <= len(node.args) <= 2:
                self.errors.append(f".get() takes a key and an optional default, got {len(node.args)} arguments")
            self.visit(func.value)
        elif not (isinstance(func, ast.Name) and func.id in SAFE_FUNCTIONS):
            self.errors.append(f"Forbidden function call: {ast.unparse(func)}")
            return
        for arg in node.args:
            self.visit(arg)

    def visit_Compare(self, node: ast.Compare) -> None:
        operands = [node.left, *node.comparators]
        for left, op, right in zip(operands, node.ops, operands[1:], strict=False):
            if type(op) not in _COMPARISON_OPS:
                self.errors.append(f"Forbidden comparison operator: {type(op).__name__}")
            elif isinstance(op, ast.Is | ast.IsNot) and not (_is_none(left) or _is_none(right)):
                self.errors.append("'is' and 'is not' operators are only allowed for None checks")
        self.generic_visit(node)

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if type(node.op) not in _BINARY_OPS:
            self.errors.append(f"Forbidden binary operator: {type(node.op).__name__}")
        self.generic_visit(node)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if type(node.op) not in _UNARY_OPS:
            self.errors.append(f"Forbidden unary operator: {type(node.op).__name__}")
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if node.value is not None and not isinstance(node.value, str | int | float | bool):
            self.errors.append(f"Forbidden constant type: {type(node.value).__name__}")

    def visit_Dict(self, node: ast.Dict) -> None:
        if any(key is None for key in node.keys):
            self.errors.append("Dict spread (**) is forbidden")
        self.generic_visit(node)


def _is_none(node: ast.expr) -> bool:
    return (isinstance(node, ast.Constant) and node.value is None) or (isinstance(node, ast.Name) and node.id == "None")


class _ExpressionEvaluator(ast.NodeVisitor):
    """AST visitor that evaluates validated expressions."""

    def __init__(self, context: Mapping[str, Any]) -> None:
        self._context = context

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id == "True":
            return True
        if node.id == "False":
            return False
        if node.id == "None":
            return None
        # Roots the caller declared but did not supply evaluate to None
        return self._context.get(node.id)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if value is None:
            return None
        if isinstance(value, Mapping):
            return value.get(node.attr)
        msg = f"Cannot read '{node.attr}' from {type(value).__name__}; attribute syntax only navigates mappings"
        raise ExpressionEvaluationError(msg)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return value[key]
        except KeyError as e:
            if isinstance(value, Mapping):
                msg = f"Field '{key}' not found. Available fields: {list(value.keys())}"
            else:
                msg = f"Key '{key}' not found in {type(value).__name__}"
            raise ExpressionEvaluationError(msg) from e
        except IndexError as e:
            msg = f"Index {key} out of range for {type(value).__name__} of length {len(value)}"
            raise ExpressionEvaluationError(msg) from e
        except TypeError as e:
            msg = f"Cannot access '{key}' on {type(value).__name__}: {e}"
            raise ExpressionEvaluationError(msg) from e

    def visit_Call(self, node: ast.Call) -> Any:
        args = [self.visit(arg) for arg in node.args]
        func = node.func
        if isinstance(func, ast.Attribute):
            target = self.visit(func.value)
            if target is None:
                return args[1] if len(args) > 1 else None
            if not isinstance(target, Mapping):
                msg = f".get() requires a mapping, got {type(target).__name__}"
                raise ExpressionEvaluationError(msg)
            try:
                return target.get(*args)
            except TypeError as e:
                msg = f"invalid argument to .get(): {e}"
                raise ExpressionEvaluationError(msg) from e
        assert isinstance(func, ast.Name)
        try:
            return SAFE_FUNCTIONS[func.id](*args)
        except (TypeError, ValueError) as e:
            msg = f"{func.id}() failed: {e}"
            raise ExpressionEvaluationError(msg) from e

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.visit(comparator)
            try:
                if not _COMPARISON_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                msg = (
                    f"type error in comparison ({type(op).__name__}): "
                    f"cannot compare {type(left).__name__} and {type(right).__name__}"
                )
                raise ExpressionEvaluationError(msg) from e
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        if isinstance(node.op, ast.And):
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Pow) and isinstance(right, int | float) and abs(right) > _MAX_EXPONENT:
            raise ExpressionEvaluationError(f"exponent {right} exceeds limit {_MAX_EXPONENT}")
        try:
            return _BINARY_OPS[type(node.op)](left, right)
        except ZeroDivisionError as e:
            raise ExpressionEvaluationError(f"division by zero in {type(node.op).__name__} operation") from e
        except TypeError as e:
            msg = f"type error in {type(node.op).__name__}: cannot apply to {type(left).__name__} and {type(right).__name__}"
            raise ExpressionEvaluationError(msg) from e

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        try:
            return _UNARY_OPS[type(node.op)](operand)
        except TypeError as e:
            msg = f"type error in unary {type(node.op).__name__}: cannot apply to {type(operand).__name__}"
            raise ExpressionEvaluationError(msg) from e

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Set(self, node: ast.Set) -> Any:
        try:
            return {self.visit(elt) for elt in node.elts}
        except TypeError as e:
            raise ExpressionEvaluationError(f"cannot create set literal: {e}") from e

    def visit_Dict(self, node: ast.Dict) -> Any:
        try:
            return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values, strict=True) if k is not None}
        except TypeError as e:
            raise ExpressionEvaluationError(f"cannot create dict literal: {e}") from e

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)


class ExpressionParser:
    """Safe expression parser over named context roots.

    Allowed operations:
    - Context navigation: variables.count, message.payload['x'], event.get('k', 0)
    - Comparisons, boolean operators, membership, None identity checks
    - Arithmetic: +, -, *, /, //, %, ** (bounded exponent)
    - Literals, list/tuple/set/dict displays, ternaries
    - Calls to abs, bool, float, int, len, max, min, round, str, sum

    Forbidden: any other call, lambdas, comprehensions, walrus, await/yield,
    f-strings, names outside the declared roots, underscore attributes.

    Example:
        parser = ExpressionParser("variables.count >= 3", names=("variables",))
        parser.evaluate({"variables": {"count": 4}})  # True
    """

    def __init__(self, expression: str, names: Iterable[str]) -> None:
        """Parse and validate expression at construction time.

        Args:
            expression: The expression string to parse
            names: Context root names the expression may reference

        Raises:
            ExpressionSecurityError: If expression contains forbidden constructs
            ExpressionSyntaxError: If expression is not valid Python syntax
        """
        self._expression = expression
        self._names = frozenset(names)

        try:
            self._ast = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise ExpressionSyntaxError(f"Invalid syntax: {e.msg}") from e

        validator = _ExpressionValidator(self._names)
        validator.visit(self._ast)
        if validator.errors:
            raise ExpressionSecurityError("; ".join(validator.errors))

    @property
    def expression(self) -> str:
        return self._expression

    @property
    def names(self) -> frozenset[str]:
        return self._names

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        """Evaluate expression against context data.

        Raises:
            ExpressionEvaluationError: If evaluation fails on the given data
        """
        return _ExpressionEvaluator(context).visit(self._ast)

    def __repr__(self) -> str:
        return f"ExpressionParser({self._expression!r})"


class ExpressionCache:
    """Compiled parsers keyed by expression text, for one set of root names.

    Owned by the component that evaluates the expressions; there is no
    process-wide cache.
    """

    def __init__(self, names: Iterable[str]) -> None:
        self._names = frozenset(names)
        self._parsers: dict[str, ExpressionParser] = {}

    def get(self, expression: str) -> ExpressionParser:
        """Return the parser for expression, compiling it on first use.

        Raises:
            ExpressionSecurityError: If expression contains forbidden constructs
            ExpressionSyntaxError: If expression is not valid Python syntax
        """
        parser = self._parsers.get(expression)
        if parser is None:
            parser = ExpressionParser(expression, self._names)
            self._parsers[expression] = parser
        return parser

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        return self.get(expression).evaluate(context)
