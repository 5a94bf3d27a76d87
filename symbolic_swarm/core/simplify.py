"""
symbolic_swarm/core/simplify.py

Algebraic clean-up applied to surviving candidates between generations.

- simplify_tree folds operator subtrees whose leaves are all constants
- combine_operators merges nested constants across associative + and *

Both return new trees and never change the value a tree computes
(up to floating point rounding).
"""

from __future__ import annotations

import numpy as np

from .expression import Expression, NodeKind
from .operators import Operator, OperatorSet


def _apply(op: Operator, *values) -> float | complex | None:
    out = op(*[np.array([v]) for v in values])[0]
    if not np.isfinite(out):
        return None
    return out.item() if isinstance(out, np.generic) else out


def _is_constant(tree: Expression) -> bool:
    return tree.nodes[tree.root].kind == NodeKind.CONSTANT


def _constant_value(tree: Expression):
    return tree.nodes[tree.root].value


def simplify_tree(tree: Expression, operators: OperatorSet) -> Expression:
    """Fold every all-constant operator subtree into a single constant."""
    return _fold(tree, tree.root, operators)


def _fold(tree: Expression, index: int, operators: OperatorSet) -> Expression:
    node = tree.nodes[index]

    if node.kind == NodeKind.UNARY:
        child = _fold(tree, node.left, operators)
        if _is_constant(child):
            value = _apply(operators.unary[node.op], _constant_value(child))
            if value is not None:
                return Expression.constant(value)
        return Expression.unary(node.op, child)

    if node.kind == NodeKind.BINARY:
        left = _fold(tree, node.left, operators)
        right = _fold(tree, node.right, operators)
        if _is_constant(left) and _is_constant(right):
            value = _apply(
                operators.binary[node.op],
                _constant_value(left),
                _constant_value(right),
            )
            if value is not None:
                return Expression.constant(value)
        return Expression.binary(node.op, left, right)

    return tree.subtree(index)


def combine_operators(tree: Expression, operators: OperatorSet) -> Expression:
    """
    Merge constants across nested associative operators.

    c1 + (c2 + e) and c1 + (e + c2) both become (c1 + c2) + e, in either
    child order of the outer node; the same holds for multiplication.
    """
    associative = {
        i for i, op in enumerate(operators.binary)
        if op in (Operator.ADD, Operator.MUL)
    }
    return _combine(tree, tree.root, operators, associative)


def _combine(
    tree: Expression,
    index: int,
    operators: OperatorSet,
    associative: set[int],
) -> Expression:
    node = tree.nodes[index]

    if node.kind == NodeKind.UNARY:
        return Expression.unary(node.op, _combine(tree, node.left, operators, associative))

    if node.kind != NodeKind.BINARY:
        return tree.subtree(index)

    left = _combine(tree, node.left, operators, associative)
    right = _combine(tree, node.right, operators, associative)

    if node.op in associative:
        if _is_constant(left) and not _is_constant(right):
            merged = _merge_constant(node.op, left, right, operators)
        elif _is_constant(right) and not _is_constant(left):
            merged = _merge_constant(node.op, right, left, operators)
        else:
            merged = None
        if merged is not None:
            return merged

    return Expression.binary(node.op, left, right)


def _merge_constant(
    op: int,
    const: Expression,
    other: Expression,
    operators: OperatorSet,
) -> Expression | None:
    inner = other.nodes[other.root]
    if inner.kind != NodeKind.BINARY or inner.op != op:
        return None

    inner_left = other.subtree(inner.left)
    inner_right = other.subtree(inner.right)
    if _is_constant(inner_left):
        rest = inner_right
        value = _apply(operators.binary[op], _constant_value(const), _constant_value(inner_left))
    elif _is_constant(inner_right):
        rest = inner_left
        value = _apply(operators.binary[op], _constant_value(const), _constant_value(inner_right))
    else:
        return None

    if value is None:
        return None
    return Expression.binary(op, Expression.constant(value), rest)
