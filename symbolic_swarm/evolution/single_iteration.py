"""
symbolic_swarm/evolution/single_iteration.py

A full generation step for one population.

This is the unit of work the scheduler hands to a worker:
1. s_r_cycle: ncycles evolution cycles with an annealing temperature
   falling linearly from 1 to 0 (constant 1 without annealing), while a
   per-step archive keeps the best-scoring member of every size seen
2. optimize_and_simplify_population: simplify every survivor, tune the
   constants of a random subset, rescore everyone on the full dataset
3. With batching, the per-step archive is rescored on the full dataset
   too, so nothing leaves the step with a mini-batch score
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.core.losses import score_func
from symbolic_swarm.core.simplify import combine_operators, simplify_tree

from .constant_optimization import optimize_constants
from .context import EvolutionContext
from .hall_of_fame import HallOfFame
from .population import Population
from .regularized_evolution import reg_evol_cycle
from .statistics import RunningSearchStatistics

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """What a generation step hands back to the scheduler."""
    population: Population
    best_seen: HallOfFame
    num_evals: float


def _consider_best_seen(
    best_seen: HallOfFame,
    population: Population,
    ctx: EvolutionContext,
) -> None:
    for member in population:
        size = member.get_complexity(ctx.options)
        if 0 < size <= ctx.options.maxsize:
            best_seen.consider(member, ctx, by="score")


def rescore_archive(best_seen: HallOfFame, dataset: Dataset, ctx: EvolutionContext) -> float:
    """Replace mini-batch scores in a per-step archive with full-data scores."""
    members = best_seen.existing_members()
    for member in members:
        member.score, member.loss = score_func(
            dataset, member.tree, ctx.options, member.get_complexity(ctx.options)
        )
    return float(len(members))


def s_r_cycle(
    dataset: Dataset,
    population: Population,
    ncycles: int,
    curmaxsize: int,
    statistics: Optional[RunningSearchStatistics],
    ctx: EvolutionContext,
    rng: np.random.Generator,
) -> Tuple[Population, HallOfFame, float]:
    """Run ncycles evolution cycles; return the population, best-seen archive and evaluations."""
    options = ctx.options
    if options.annealing:
        temperatures = np.linspace(1.0, 0.0, ncycles)
    else:
        temperatures = np.ones(ncycles)

    best_seen = HallOfFame(options.maxsize)
    num_evals = 0.0

    for temperature in temperatures:
        population, evals = reg_evol_cycle(
            dataset, population, float(temperature), curmaxsize, statistics, ctx, rng
        )
        num_evals += evals
        _consider_best_seen(best_seen, population, ctx)

    return population, best_seen, num_evals


def optimize_and_simplify_population(
    dataset: Dataset,
    population: Population,
    curmaxsize: int,
    ctx: EvolutionContext,
    rng: np.random.Generator,
) -> Tuple[Population, float]:
    """Simplify, tune and rescore every member; each member gets a new id."""
    options = ctx.options
    num_evals = 0.0

    for member in population:
        old_id = member.id

        if options.should_simplify:
            tree = simplify_tree(member.tree, options.operators)
            member.tree = combine_operators(tree, options.operators)
        member.recompute_complexity(options)

        optimized = False
        if options.should_optimize_constants and rng.random() < options.optimizer_probability:
            result = optimize_constants(dataset, member, ctx, rng)
            num_evals += result.num_evals
            optimized = True

        member.score, member.loss = score_func(dataset, member.tree, options, member.complexity)
        num_evals += 1

        member.id = ctx.ids()
        member.parent_id = old_id

        if ctx.recording:
            kind = "simplification_and_optimization" if optimized else "simplification"
            ctx.ledger.ensure(
                member.id, **member.to_dict(options, dataset.variable_names)
            )
            ctx.ledger.record_event(old_id, "tuning", child=member.id, mutation={"type": kind})
            ctx.ledger.record_event(old_id, "death")

    return population, num_evals


def run_generation_step(
    dataset: Dataset,
    population: Population,
    curmaxsize: int,
    statistics: Optional[RunningSearchStatistics],
    ctx: EvolutionContext,
    rng: np.random.Generator,
    ncycles: Optional[int] = None,
) -> StepOutcome:
    """Evolve, then simplify and optimise, one population."""
    ncycles = ncycles or ctx.options.ncycles_per_iteration
    population, best_seen, num_evals = s_r_cycle(
        dataset, population, ncycles, curmaxsize, statistics, ctx, rng
    )
    population, evals = optimize_and_simplify_population(
        dataset, population, curmaxsize, ctx, rng
    )
    num_evals += evals
    if ctx.options.batching:
        num_evals += rescore_archive(best_seen, dataset, ctx)

    # Optimised constants may have produced new best-of-size members
    _consider_best_seen(best_seen, population, ctx)

    return StepOutcome(population=population, best_seen=best_seen, num_evals=num_evals)
