"""
Safe expression evaluation for CONDITIONAL edges.

Only a small AST whitelist is accepted: literals, names from the supplied
context, boolean/comparison/arithmetic operators, subscripts, and attribute
access on non-dunder names. No calls, no comprehensions, no lambdas.
"""

import ast
import operator
from typing import Any

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_CMP_OPS = {
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


class UnsafeExpressionError(ValueError):
    """The expression uses syntax outside the whitelist."""


def expression_names(expr: str) -> set[str]:
    """Return the free names an expression reads."""
    tree = ast.parse(expr, mode="eval")
    return {node.id for node in ast.walk(tree) if isinstance(node, ast.Name)}


def safe_eval(expr: str, context: dict[str, Any]) -> Any:
    """
    Evaluate ``expr`` against ``context``.

    Raises:
        UnsafeExpressionError: Disallowed syntax
        NameError: Unknown name
    """
    tree = ast.parse(expr, mode="eval")
    return _eval(tree.body, context)


def _eval(node: ast.AST, ctx: dict[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id not in ctx:
            raise NameError(f"Name '{node.id}' is not defined")
        return ctx[node.id]

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _eval(value, ctx)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _eval(value, ctx)
            if result:
                return result
        return result

    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval(node.operand, ctx))

    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        return _BIN_OPS[type(node.op)](_eval(node.left, ctx), _eval(node.right, ctx))

    if isinstance(node, ast.Compare):
        left = _eval(node.left, ctx)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            if type(op) not in _CMP_OPS:
                raise UnsafeExpressionError(f"Operator {type(op).__name__} not allowed")
            right = _eval(comparator, ctx)
            if not _CMP_OPS[type(op)](left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        return _eval(node.body, ctx) if _eval(node.test, ctx) else _eval(node.orelse, ctx)

    if isinstance(node, ast.Subscript):
        return _eval(node.value, ctx)[_eval(node.slice, ctx)]

    if isinstance(node, ast.Attribute):
        if node.attr.startswith("_"):
            raise UnsafeExpressionError(f"Access to '{node.attr}' not allowed")
        target = _eval(node.value, ctx)
        if isinstance(target, dict):
            return target[node.attr]
        return getattr(target, node.attr)

    if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
        items = [_eval(elt, ctx) for elt in node.elts]
        if isinstance(node, ast.Tuple):
            return tuple(items)
        if isinstance(node, ast.Set):
            return set(items)
        return items

    raise UnsafeExpressionError(f"Expression element {type(node).__name__} not allowed")
