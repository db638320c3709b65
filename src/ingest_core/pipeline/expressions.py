from __future__ import annotations

import ast
import operator
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping

from ..errors import ExpressionError


_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_CMP_OPS: Dict[type, Callable[[Any, Any], bool]] = {
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


def _coalesce(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "bool": bool,
    "coalesce": _coalesce,
    "concat": lambda *parts: "".join("" if p is None else str(p) for p in parts),
    "float": float,
    "int": int,
    "len": len,
    "lower": lambda s: str(s).lower(),
    "max": max,
    "min": min,
    "round": round,
    "str": str,
    "trim": lambda s: str(s).strip(),
    "upper": lambda s: str(s).upper(),
}

MAX_EXPONENT = 64


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression {expression!r}: {e.msg}") from e
    _Checker().visit(tree)
    return tree


class _Checker(ast.NodeVisitor):
    """Rejects every node the evaluator does not know how to run."""

    allowed = (
        ast.Expression, ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp,
        ast.Name, ast.Load, ast.Constant, ast.Call, ast.Subscript, ast.List, ast.Tuple,
        ast.And, ast.Or,
    ) + tuple(_BIN_OPS) + tuple(_UNARY_OPS) + tuple(_CMP_OPS)

    def generic_visit(self, node: ast.AST) -> None:
        if not isinstance(node, self.allowed):
            raise ExpressionError(f"Unsupported syntax in expression: {type(node).__name__}")
        super().generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            raise ExpressionError("Only whitelisted functions may be called")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported")
        for arg in node.args:
            self.visit(arg)


def evaluate(expression: str, context: Mapping[str, Any]) -> Any:
    """Evaluate a side-effect-free expression against a record.

    Names resolve to record fields; ``record["field name"]`` reaches fields
    that are not identifiers.
    """
    tree = compile_expression(expression)
    return _Eval(context).visit(tree.body)


class _Eval:
    def __init__(self, context: Mapping[str, Any]) -> None:
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax in expression: {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id == "record":
            return self.context
        if node.id in self.context:
            return self.context[node.id]
        raise ExpressionError(f"Unknown field: {node.id}")

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(e) for e in node.elts)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        target = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return target[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Cannot index {key!r}") from e

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Pow) and isinstance(right, (int, float)) and abs(right) > MAX_EXPONENT:
            raise ExpressionError("Exponent too large")
        try:
            return _BIN_OPS[type(node.op)](left, right)
        except (TypeError, ZeroDivisionError, OverflowError) as e:
            raise ExpressionError(str(e)) from e

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        try:
            return _UNARY_OPS[type(node.op)](self.visit(node.operand))
        except TypeError as e:
            raise ExpressionError(str(e)) from e

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for v in node.values:
                result = self.visit(v)
                if not result:
                    return result
            return result
        result = False
        for v in node.values:
            result = self.visit(v)
            if result:
                return result
        return result

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comp in zip(node.ops, node.comparators):
            right = self.visit(comp)
            try:
                if not _CMP_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(str(e)) from e
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        fn = FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
        args = [self.visit(a) for a in node.args]
        try:
            return fn(*args)
        except (TypeError, ValueError) as e:
            raise ExpressionError(str(e)) from e
