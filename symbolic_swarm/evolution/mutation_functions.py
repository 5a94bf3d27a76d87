"""
symbolic_swarm/evolution/mutation_functions.py

Primitive tree edits used by mutation and crossover.

Every function returns a new tree and leaves its input untouched. Node
choices are uniform over the eligible nodes of the tree.
"""

from __future__ import annotations

from typing import Callable, Optional, Tuple

import numpy as np

from symbolic_swarm.core.complexity import compute_complexity
from symbolic_swarm.core.expression import Expression, Node, NodeKind

from .options import SearchOptions


def random_node_index(
    tree: Expression,
    rng: np.random.Generator,
    predicate: Optional[Callable[[Node], bool]] = None,
) -> Optional[int]:
    """Uniformly pick a node index (optionally among nodes matching predicate)."""
    candidates = [
        i for i in tree.preorder()
        if predicate is None or predicate(tree.nodes[i])
    ]
    if not candidates:
        return None
    return candidates[int(rng.integers(len(candidates)))]


def make_random_leaf(
    nfeatures: int,
    rng: np.random.Generator,
    complex_constants: bool = False,
) -> Expression:
    if rng.random() < 0.5:
        if complex_constants:
            return Expression.constant(complex(rng.standard_normal(), rng.standard_normal()))
        return Expression.constant(float(rng.standard_normal()))
    return Expression.variable(int(rng.integers(nfeatures)))


def _random_op_tree(
    child: Expression,
    options: SearchOptions,
    nfeatures: int,
    rng: np.random.Generator,
    complex_constants: bool = False,
    make_binary: Optional[bool] = None,
) -> Expression:
    """New operator node with child in a random slot; other slots get leaves."""
    nbin, nuna = options.operators.nbin, options.operators.nuna
    if make_binary is None:
        make_binary = rng.random() < nbin / (nbin + nuna)

    if make_binary:
        op = int(rng.integers(nbin))
        leaf = make_random_leaf(nfeatures, rng, complex_constants)
        if rng.random() < 0.5:
            return Expression.binary(op, child, leaf)
        return Expression.binary(op, leaf, child)

    op = int(rng.integers(nuna))
    return Expression.unary(op, child)


def mutate_constant(
    tree: Expression,
    temperature: float,
    options: SearchOptions,
    rng: np.random.Generator,
) -> Expression:
    """Multiplicatively perturb one constant; occasionally flip its sign."""
    new = tree.copy()
    index = random_node_index(new, rng, lambda n: n.kind == NodeKind.CONSTANT)
    if index is None:
        return new

    max_change = options.perturbation_factor * temperature + 1.1
    factor = max_change ** rng.random()
    if rng.random() < 0.5:
        factor = 1.0 / factor
    if rng.random() < options.probability_negate_constant:
        factor = -factor

    new.nodes[index].value = new.nodes[index].value * factor
    return new


def mutate_operator(
    tree: Expression,
    options: SearchOptions,
    rng: np.random.Generator,
) -> Expression:
    """Swap one operator for another of the same arity."""
    new = tree.copy()
    index = random_node_index(new, rng, lambda n: n.degree > 0)
    if index is None:
        return new
    node = new.nodes[index]
    node.op = int(rng.integers(len(options.operators.ops_of_degree(node.degree))))
    return new


def append_random_op(
    tree: Expression,
    options: SearchOptions,
    nfeatures: int,
    rng: np.random.Generator,
    complex_constants: bool = False,
    make_binary: Optional[bool] = None,
) -> Expression:
    """Grow the tree at a random leaf."""
    index = random_node_index(tree, rng, lambda n: n.degree == 0)
    leaf = tree.subtree(index)
    new_leaf = leaf if rng.random() < 0.5 else make_random_leaf(nfeatures, rng, complex_constants)
    return tree.replace(
        index,
        _random_op_tree(new_leaf, options, nfeatures, rng, complex_constants, make_binary),
    )


def prepend_random_op(
    tree: Expression,
    options: SearchOptions,
    nfeatures: int,
    rng: np.random.Generator,
    complex_constants: bool = False,
) -> Expression:
    """Put a new operator on top of the whole tree."""
    return _random_op_tree(tree, options, nfeatures, rng, complex_constants)


def insert_random_op(
    tree: Expression,
    options: SearchOptions,
    nfeatures: int,
    rng: np.random.Generator,
    complex_constants: bool = False,
) -> Expression:
    """Wrap a random subtree in a new operator."""
    index = random_node_index(tree, rng)
    wrapped = _random_op_tree(tree.subtree(index), options, nfeatures, rng, complex_constants)
    return tree.replace(index, wrapped)


def delete_random_op(
    tree: Expression,
    nfeatures: int,
    rng: np.random.Generator,
    complex_constants: bool = False,
) -> Expression:
    """Replace a random operator by one of its children (or a leaf by a new leaf)."""
    index = random_node_index(tree, rng)
    node = tree.nodes[index]
    if node.degree == 0:
        replacement = make_random_leaf(nfeatures, rng, complex_constants)
    elif node.degree == 1 or rng.random() < 0.5:
        replacement = tree.subtree(node.left)
    else:
        replacement = tree.subtree(node.right)
    return tree.replace(index, replacement)


def gen_random_tree(
    nlength: int,
    options: SearchOptions,
    nfeatures: int,
    rng: np.random.Generator,
    complex_constants: bool = False,
) -> Expression:
    """Random tree built by appending nlength operators to a leaf."""
    tree = make_random_leaf(nfeatures, rng, complex_constants)
    for _ in range(nlength):
        tree = append_random_op(tree, options, nfeatures, rng, complex_constants)
    return tree


def gen_random_tree_fixed_size(
    node_count: int,
    options: SearchOptions,
    nfeatures: int,
    rng: np.random.Generator,
    complex_constants: bool = False,
) -> Expression:
    """Random tree with (at most) node_count nodes."""
    tree = make_random_leaf(nfeatures, rng, complex_constants)
    cur_size = 1
    while cur_size < node_count:
        if cur_size == node_count - 1:
            # Room for a single node: only a unary operator fits
            if options.operators.nuna == 0:
                break
            tree = append_random_op(
                tree, options, nfeatures, rng, complex_constants, make_binary=False
            )
        else:
            tree = append_random_op(tree, options, nfeatures, rng, complex_constants)
        cur_size = tree.count_nodes()
    return tree


def crossover_trees(
    tree1: Expression,
    tree2: Expression,
    rng: np.random.Generator,
) -> Tuple[Expression, Expression]:
    """Swap a random subtree of tree1 with a random subtree of tree2."""
    index1 = random_node_index(tree1, rng)
    index2 = random_node_index(tree2, rng)
    sub1 = tree1.subtree(index1)
    sub2 = tree2.subtree(index2)
    return tree1.replace(index1, sub2), tree2.replace(index2, sub1)


def check_constraints(
    tree: Expression,
    options: SearchOptions,
    maxsize: int,
    complexity: Optional[int] = None,
) -> bool:
    """True if the tree respects the size and depth limits."""
    if complexity is None:
        complexity = compute_complexity(tree, options.complexity_mapping)
    if complexity > maxsize:
        return False
    return tree.depth() <= options.maxdepth
