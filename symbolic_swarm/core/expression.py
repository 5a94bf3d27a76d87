"""
symbolic_swarm/core/expression.py

Arena-backed expression trees.

An Expression owns a flat list of Node records. Operator nodes refer to
their children by integer index into that list, so subtrees and constant
leaves are addressed by position rather than by object identity:
- Edits (replace, subtree) always return a new, compact arena
- Constants are read and written in preorder via get/set_constants
- Trees never share nodes, so copying is a plain list copy

Operators are referenced by their index inside an OperatorSet's binary or
unary list, which keeps nodes free of callables.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Sequence

import numpy as np

from .operators import OperatorSet


class NodeKind(IntEnum):
    """Kind of an arena node."""
    CONSTANT = 0
    VARIABLE = 1
    UNARY = 2
    BINARY = 3


@dataclass
class Node:
    """One arena record. Children are indices into the owning arena."""
    kind: NodeKind
    value: Any = 0.0  # constant value (float or complex)
    feature: int = 0  # column index for variables
    op: int = 0  # index into OperatorSet.unary / OperatorSet.binary
    left: int = -1
    right: int = -1

    @property
    def degree(self) -> int:
        if self.kind == NodeKind.BINARY:
            return 2
        if self.kind == NodeKind.UNARY:
            return 1
        return 0

    @property
    def is_constant(self) -> bool:
        return self.kind == NodeKind.CONSTANT


class Expression:
    """Expression tree stored as an arena of nodes."""

    def __init__(self, nodes: list[Node], root: int = 0):
        self.nodes = nodes
        self.root = root

    # ---- builders ----

    @classmethod
    def constant(cls, value: float | complex) -> "Expression":
        return cls([Node(NodeKind.CONSTANT, value=value)])

    @classmethod
    def variable(cls, feature: int) -> "Expression":
        return cls([Node(NodeKind.VARIABLE, feature=int(feature))])

    @classmethod
    def unary(cls, op: int, child: "Expression") -> "Expression":
        nodes = [Node(NodeKind.UNARY, op=int(op))]
        nodes[0].left = child._copy_into(nodes, child.root)
        return cls(nodes)

    @classmethod
    def binary(cls, op: int, left: "Expression", right: "Expression") -> "Expression":
        nodes = [Node(NodeKind.BINARY, op=int(op))]
        nodes[0].left = left._copy_into(nodes, left.root)
        nodes[0].right = right._copy_into(nodes, right.root)
        return cls(nodes)

    def _copy_into(
        self,
        dst: list[Node],
        index: int,
        substitute: dict[int, "Expression"] | None = None,
    ) -> int:
        """Copy the subtree at index into dst (preorder); return its new index."""
        if substitute is not None and index in substitute:
            other = substitute[index]
            return other._copy_into(dst, other.root)

        node = self.nodes[index]
        new_index = len(dst)
        dst.append(dataclasses.replace(node))
        if node.kind == NodeKind.BINARY:
            left = self._copy_into(dst, node.left, substitute)
            right = self._copy_into(dst, node.right, substitute)
            dst[new_index].left = left
            dst[new_index].right = right
        elif node.kind == NodeKind.UNARY:
            dst[new_index].left = self._copy_into(dst, node.left, substitute)
        return new_index

    # ---- structure ----

    def __getitem__(self, index: int) -> Node:
        return self.nodes[index]

    def __len__(self) -> int:
        return self.count_nodes()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Expression):
            return NotImplemented
        return self.to_tuple() == other.to_tuple()

    __hash__ = None

    def __repr__(self) -> str:
        return f"Expression({self.to_tuple()!r})"

    def copy(self) -> "Expression":
        nodes: list[Node] = []
        self._copy_into(nodes, self.root)
        return Expression(nodes)

    def preorder(self, index: int | None = None) -> list[int]:
        """Arena indices of the subtree at index (root by default), in preorder."""
        order: list[int] = []
        stack = [self.root if index is None else index]
        while stack:
            i = stack.pop()
            order.append(i)
            node = self.nodes[i]
            if node.kind == NodeKind.BINARY:
                stack.append(node.right)
                stack.append(node.left)
            elif node.kind == NodeKind.UNARY:
                stack.append(node.left)
        return order

    def count_nodes(self) -> int:
        return len(self.preorder())

    def depth(self, index: int | None = None) -> int:
        node = self.nodes[self.root if index is None else index]
        if node.kind == NodeKind.BINARY:
            return 1 + max(self.depth(node.left), self.depth(node.right))
        if node.kind == NodeKind.UNARY:
            return 1 + self.depth(node.left)
        return 1

    def subtree(self, index: int) -> "Expression":
        nodes: list[Node] = []
        self._copy_into(nodes, index)
        return Expression(nodes)

    def replace(self, index: int, other: "Expression") -> "Expression":
        """Return a new tree with the subtree at index swapped for other."""
        nodes: list[Node] = []
        self._copy_into(nodes, self.root, substitute={index: other})
        return Expression(nodes)

    def to_tuple(self, index: int | None = None) -> tuple:
        """Nested tuple form, used for structural comparison."""
        node = self.nodes[self.root if index is None else index]
        if node.kind == NodeKind.CONSTANT:
            return ("const", node.value)
        if node.kind == NodeKind.VARIABLE:
            return ("var", node.feature)
        if node.kind == NodeKind.UNARY:
            return ("unary", node.op, self.to_tuple(node.left))
        return ("binary", node.op, self.to_tuple(node.left), self.to_tuple(node.right))

    # ---- constants ----

    def constant_indices(self) -> list[int]:
        return [i for i in self.preorder() if self.nodes[i].is_constant]

    def has_constants(self) -> bool:
        return any(self.nodes[i].is_constant for i in self.preorder())

    def has_operators(self) -> bool:
        return self.nodes[self.root].degree > 0

    def get_constants(self) -> np.ndarray:
        values = [self.nodes[i].value for i in self.constant_indices()]
        if any(isinstance(v, complex) for v in values):
            return np.array(values, dtype=complex)
        return np.array(values, dtype=float)

    def set_constants(self, values: Sequence[float | complex]) -> None:
        indices = self.constant_indices()
        if len(values) != len(indices):
            raise ValueError(
                f"Expected {len(indices)} constants, got {len(values)}"
            )
        for i, value in zip(indices, values):
            self.nodes[i].value = value.item() if isinstance(value, np.generic) else value


def eval_tree_array(
    tree: Expression,
    X: np.ndarray,
    operators: OperatorSet,
) -> tuple[np.ndarray, bool]:
    """
    Evaluate a tree on every row of X.

    Args:
        tree: Expression to evaluate
        X: Feature matrix of shape (n_rows, n_features)
        operators: Operator set the tree was built against

    Returns:
        (predictions, ok) where ok is False as soon as any intermediate
        result contains a NaN or infinite value
    """
    return _eval(tree, tree.root, X, operators)


def _eval(
    tree: Expression,
    index: int,
    X: np.ndarray,
    operators: OperatorSet,
) -> tuple[np.ndarray, bool]:
    node = tree.nodes[index]

    if node.kind == NodeKind.CONSTANT:
        out = np.full(X.shape[0], node.value)
        return out, bool(np.all(np.isfinite(out)))

    if node.kind == NodeKind.VARIABLE:
        return X[:, node.feature], True

    left, ok = _eval(tree, node.left, X, operators)
    if not ok:
        return left, False

    if node.kind == NodeKind.UNARY:
        out = operators.unary[node.op](left)
    else:
        right, ok = _eval(tree, node.right, X, operators)
        if not ok:
            return right, False
        out = operators.binary[node.op](left, right)

    return out, bool(np.all(np.isfinite(out)))


def _format_constant(value: float | complex) -> str:
    if isinstance(value, complex):
        return f"({value.real:.6g}{value.imag:+.6g}im)"
    return f"{value:.6g}"


def string_tree(
    tree: Expression,
    operators: OperatorSet,
    variable_names: Sequence[str] | None = None,
    index: int | None = None,
) -> str:
    """Human-readable infix rendering of a tree."""
    node = tree.nodes[tree.root if index is None else index]

    if node.kind == NodeKind.CONSTANT:
        return _format_constant(node.value)

    if node.kind == NodeKind.VARIABLE:
        if variable_names is not None:
            return variable_names[node.feature]
        return f"x{node.feature + 1}"

    if node.kind == NodeKind.UNARY:
        op = operators.unary[node.op]
        return f"{op.symbol}({string_tree(tree, operators, variable_names, node.left)})"

    op = operators.binary[node.op]
    left = string_tree(tree, operators, variable_names, node.left)
    right = string_tree(tree, operators, variable_names, node.right)
    if op.infix:
        return f"({left} {op.symbol} {right})"
    return f"{op.symbol}({left}, {right})"
