"""
symbolic_swarm/core/complexity.py

Complexity of an expression tree.

Without a mapping, complexity is the node count. With a mapping, every
operator, constant and variable contributes its own weight and the total
is rounded to an integer so it can index Hall of Fame slots.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .expression import Expression, NodeKind
from .operators import OperatorSet


@dataclass
class ComplexityMapping:
    """Per-node complexity weights."""
    binary: List[float] = field(default_factory=list)
    unary: List[float] = field(default_factory=list)
    constant: float = 1.0
    variable: float = 1.0

    @classmethod
    def from_options(
        cls,
        operators: OperatorSet,
        complexity_of_operators: Optional[Dict[str, float]] = None,
        complexity_of_constants: float = 1.0,
        complexity_of_variables: float = 1.0,
    ) -> "ComplexityMapping":
        weights = complexity_of_operators or {}
        known = {op.symbol for op in operators.binary} | {op.symbol for op in operators.unary}
        unknown = sorted(set(weights) - known)
        if unknown:
            raise ValueError(f"Complexity given for unknown operators: {unknown}")
        return cls(
            binary=[float(weights.get(op.symbol, 1.0)) for op in operators.binary],
            unary=[float(weights.get(op.symbol, 1.0)) for op in operators.unary],
            constant=float(complexity_of_constants),
            variable=float(complexity_of_variables),
        )


def compute_complexity(tree: Expression, mapping: Optional[ComplexityMapping] = None) -> int:
    """Total complexity of a tree."""
    if mapping is None:
        return tree.count_nodes()

    total = 0.0
    for i in tree.preorder():
        node = tree.nodes[i]
        if node.kind == NodeKind.CONSTANT:
            total += mapping.constant
        elif node.kind == NodeKind.VARIABLE:
            total += mapping.variable
        elif node.kind == NodeKind.UNARY:
            total += mapping.unary[node.op]
        else:
            total += mapping.binary[node.op]
    return int(round(total))
