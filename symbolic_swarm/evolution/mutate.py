"""
symbolic_swarm/evolution/mutate.py

Produce offspring from tournament winners.

next_generation applies one weighted-random mutation to a parent and
decides whether to accept it:
1. Mutation kinds are drawn from MutationWeights, conditioned on the
   parent (no operator edits on a bare leaf, no growth at the size cap)
2. Up to 10 attempts are made to satisfy the size/depth constraints
3. A NaN score is always rejected
4. With annealing, the change is accepted with probability
   exp(-(after - before) / (T * alpha)); with adaptive parsimony the
   probability is further scaled by old_frequency / new_frequency

Rejected outcomes carry a fresh copy of the parent so the caller can
still perform age-based replacement when failures are not skipped.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from symbolic_swarm.core.complexity import compute_complexity
from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.core.losses import score_func, score_func_batch
from symbolic_swarm.core.simplify import combine_operators, simplify_tree

from .constant_optimization import optimize_constants
from .context import EvolutionContext
from .member import PopMember
from .mutation_functions import (
    append_random_op,
    check_constraints,
    crossover_trees,
    delete_random_op,
    gen_random_tree_fixed_size,
    insert_random_op,
    mutate_constant,
    mutate_operator,
    prepend_random_op,
)
from .options import MutationWeights, SearchOptions
from .statistics import RunningSearchStatistics

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 10


@dataclass
class MutationOutcome:
    """Result of next_generation."""
    member: PopMember
    accepted: bool
    num_evals: float
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CrossoverOutcome:
    """Result of crossover_generation."""
    member1: PopMember
    member2: PopMember
    accepted: bool
    num_evals: float


def condition_mutation_weights(
    weights: MutationWeights,
    member: PopMember,
    options: SearchOptions,
    curmaxsize: int,
) -> MutationWeights:
    """Return a copy of weights with impossible mutations switched off."""
    w = MutationWeights(**weights.to_dict())
    tree = member.tree

    if not tree.has_operators():
        w.mutate_operator = 0.0
        w.simplify = 0.0
        if not tree.has_constants():
            w.optimize = 0.0
            w.mutate_constant = 0.0
        return w

    n_constants = len(tree.constant_indices())
    if n_constants == 0:
        w.optimize = 0.0
        w.mutate_constant = 0.0
    else:
        w.mutate_constant *= min(8, n_constants) / 8.0

    if member.get_complexity(options) >= curmaxsize:
        w.add_node = 0.0
        w.insert_node = 0.0

    if not options.should_simplify:
        w.simplify = 0.0

    return w


def sample_mutation(weights: MutationWeights, rng: np.random.Generator) -> str:
    data = weights.to_dict()
    names = list(data)
    probs = np.array([data[k] for k in names], dtype=float)
    total = probs.sum()
    if total <= 0:
        return "do_nothing"
    return names[int(rng.choice(len(names), p=probs / total))]


def _parent_copy(member: PopMember, ctx: EvolutionContext) -> PopMember:
    return PopMember.create(
        ctx,
        member.tree.copy(),
        member.score,
        member.loss,
        complexity=member.complexity if member.complexity >= 0 else None,
        parent_id=member.id,
    )


def acceptance_probability(
    before_score: float,
    after_score: float,
    before_size: int,
    after_size: int,
    temperature: float,
    statistics: Optional[RunningSearchStatistics],
    options: SearchOptions,
) -> float:
    prob_change = 1.0
    if options.annealing:
        delta = after_score - before_score
        if temperature > 0:
            exponent = -delta / (temperature * options.alpha)
            prob_change *= math.exp(min(exponent, 700.0))
        elif delta > 0:
            prob_change = 0.0
    if options.use_frequency and statistics is not None:
        old_frequency = statistics.normalized_frequency(before_size)
        new_frequency = statistics.normalized_frequency(after_size)
        prob_change *= old_frequency / new_frequency
    return prob_change


def next_generation(
    dataset: Dataset,
    member: PopMember,
    temperature: float,
    curmaxsize: int,
    statistics: Optional[RunningSearchStatistics],
    ctx: EvolutionContext,
    rng: np.random.Generator,
) -> MutationOutcome:
    """Mutate a parent and decide whether the child is accepted."""
    options = ctx.options
    num_evals = 0.0
    if options.batching:
        before_score, before_loss = score_func_batch(
            dataset, member.tree, options, rng, member.get_complexity(options)
        )
        num_evals += options.batch_size / dataset.n
    else:
        before_score, before_loss = member.score, member.loss
    nfeatures = dataset.nfeatures
    complex_constants = np.iscomplexobj(dataset.X)

    weights = condition_mutation_weights(options.mutation_weights, member, options, curmaxsize)
    if rng.random() >= options.mutation_probability:
        choice = "do_nothing"
    else:
        choice = sample_mutation(weights, rng)
    detail: Dict[str, Any] = {"mutation": choice}

    if choice == "do_nothing":
        detail.update(result="accept", reason="identity")
        return MutationOutcome(_parent_copy(member, ctx), True, num_evals, detail)

    if choice == "simplify":
        tree = simplify_tree(member.tree, options.operators)
        tree = combine_operators(tree, options.operators)
        baby = PopMember.create(ctx, tree, before_score, before_loss, parent_id=member.id)
        detail.update(result="accept", reason="simplification")
        return MutationOutcome(baby, True, num_evals, detail)

    if choice == "optimize":
        result = optimize_constants(dataset, _parent_copy(member, ctx), ctx, rng)
        detail.update(result="accept", reason="optimization", converged=result.converged)
        return MutationOutcome(result.member, True, num_evals + result.num_evals, detail)

    tree = member.tree
    successful = False
    for _ in range(MAX_ATTEMPTS):
        if choice == "mutate_constant":
            tree = mutate_constant(member.tree, temperature, options, rng)
        elif choice == "mutate_operator":
            tree = mutate_operator(member.tree, options, rng)
        elif choice == "add_node":
            if rng.random() < 0.5:
                tree = append_random_op(member.tree, options, nfeatures, rng, complex_constants)
            else:
                tree = prepend_random_op(member.tree, options, nfeatures, rng, complex_constants)
        elif choice == "insert_node":
            tree = insert_random_op(member.tree, options, nfeatures, rng, complex_constants)
        elif choice == "delete_node":
            tree = delete_random_op(member.tree, nfeatures, rng, complex_constants)
        elif choice == "randomize":
            size = int(rng.integers(1, curmaxsize + 1))
            tree = gen_random_tree_fixed_size(size, options, nfeatures, rng, complex_constants)
        else:
            raise ValueError(f"Unknown mutation: {choice}")

        if check_constraints(tree, options, curmaxsize):
            successful = True
            break

    if not successful:
        detail.update(result="reject", reason="failed_constraint_check")
        return MutationOutcome(_parent_copy(member, ctx), False, num_evals, detail)

    after_size = compute_complexity(tree, options.complexity_mapping)
    if options.batching:
        after_score, after_loss = score_func_batch(dataset, tree, options, rng, after_size)
        num_evals += options.batch_size / dataset.n
    else:
        after_score, after_loss = score_func(dataset, tree, options, after_size)
        num_evals += 1.0

    if math.isnan(after_score):
        detail.update(result="reject", reason="nan_loss")
        return MutationOutcome(_parent_copy(member, ctx), False, num_evals, detail)

    prob_change = acceptance_probability(
        before_score,
        after_score,
        member.get_complexity(options),
        after_size,
        temperature,
        statistics,
        options,
    )
    if prob_change < rng.random():
        detail.update(result="reject", reason="annealing_or_frequency")
        return MutationOutcome(_parent_copy(member, ctx), False, num_evals, detail)

    baby = PopMember.create(
        ctx, tree, after_score, after_loss, complexity=after_size, parent_id=member.id
    )
    detail.update(result="accept", reason="pass")
    return MutationOutcome(baby, True, num_evals, detail)


def crossover_generation(
    member1: PopMember,
    member2: PopMember,
    dataset: Dataset,
    curmaxsize: int,
    ctx: EvolutionContext,
    rng: np.random.Generator,
) -> CrossoverOutcome:
    """Swap random subtrees between two parents; retry until constraints pass."""
    options = ctx.options
    child1, child2 = crossover_trees(member1.tree, member2.tree, rng)

    tries = 1
    while True:
        size1 = compute_complexity(child1, options.complexity_mapping)
        size2 = compute_complexity(child2, options.complexity_mapping)
        if (
            check_constraints(child1, options, curmaxsize, size1)
            and check_constraints(child2, options, curmaxsize, size2)
        ):
            break
        if tries > MAX_ATTEMPTS:
            return CrossoverOutcome(
                _parent_copy(member1, ctx), _parent_copy(member2, ctx), False, 0.0
            )
        child1, child2 = crossover_trees(member1.tree, member2.tree, rng)
        tries += 1

    if options.batching:
        score1, loss1 = score_func_batch(dataset, child1, options, rng, size1)
        score2, loss2 = score_func_batch(dataset, child2, options, rng, size2)
        num_evals = 2 * options.batch_size / dataset.n
    else:
        score1, loss1 = score_func(dataset, child1, options, size1)
        score2, loss2 = score_func(dataset, child2, options, size2)
        num_evals = 2.0
    baby1 = PopMember.create(ctx, child1, score1, loss1, complexity=size1, parent_id=member1.id)
    baby2 = PopMember.create(ctx, child2, score2, loss2, complexity=size2, parent_id=member2.id)
    return CrossoverOutcome(baby1, baby2, True, num_evals)
