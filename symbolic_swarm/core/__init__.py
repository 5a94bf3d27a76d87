"""
Core primitives of the symbolic-swarm system.

- operators: Closed operator vocabulary and validated operator sets
- expression: Arena-backed expression trees, evaluation, printing
- simplify: Constant folding and operator combination
- complexity: Tree complexity
- dataset: Training data for one output
- losses: Losses and scores
"""

from .complexity import ComplexityMapping, compute_complexity
from .dataset import Dataset
from .expression import Expression, Node, NodeKind, eval_tree_array, string_tree
from .losses import eval_loss, score_func, score_func_batch, update_baseline_loss
from .operators import ConfigurationError, Operator, OperatorSet
from .simplify import combine_operators, simplify_tree

__all__ = [
    "ComplexityMapping",
    "compute_complexity",
    "Dataset",
    "Expression",
    "Node",
    "NodeKind",
    "eval_tree_array",
    "string_tree",
    "eval_loss",
    "score_func",
    "score_func_batch",
    "update_baseline_loss",
    "ConfigurationError",
    "Operator",
    "OperatorSet",
    "combine_operators",
    "simplify_tree",
]
