"""
symbolic_swarm/evolution/regularized_evolution.py

One evolution cycle over a population (regularized evolution).

Each cycle runs ceil(population_size / tournament_selection_n) rounds of
"select by tournament, produce offspring, replace the oldest member".
Replacing by age rather than by fitness keeps the population turning
over and stops a single early winner from taking it over.

Two modes:
- Sequential: each round picks mutation or crossover at random.
- Fast: the population is shuffled and split into contiguous groups;
  every group's best member is mutated concurrently (read phase), then
  the accepted offspring replace the oldest members in one pass (write
  phase). No crossover and no ledger in this mode.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

import numpy as np

from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.core.operators import ConfigurationError

from .context import EvolutionContext
from .member import PopMember
from .mutate import MutationOutcome, crossover_generation, next_generation
from .population import Population
from .statistics import RunningSearchStatistics

logger = logging.getLogger(__name__)


def check_cycle_preconditions(ctx: EvolutionContext) -> None:
    """Raise ConfigurationError for mode combinations a cycle cannot run."""
    options = ctx.options
    if options.fast_cycle:
        if options.prob_pick_first != 1.0:
            raise ConfigurationError("fast_cycle requires prob_pick_first == 1.0")
        if options.crossover_probability > 0:
            raise ConfigurationError("fast_cycle requires crossover_probability == 0.0")
        if ctx.recording:
            raise ConfigurationError("fast_cycle is not supported with the record ledger enabled")
    if ctx.recording and options.crossover_probability > 0:
        raise ConfigurationError(
            "crossover_probability > 0 is not supported with the record ledger enabled"
        )


def _record_mutation(
    ctx: EvolutionContext,
    dataset: Dataset,
    parent: PopMember,
    outcome: MutationOutcome,
) -> None:
    ledger = ctx.ledger
    names = dataset.variable_names
    for member in (parent, outcome.member):
        ledger.ensure(member.id, **member.to_dict(ctx.options, names))
    ledger.record_event(parent.id, "mutate", child=outcome.member.id, **outcome.detail)


def _record_death(ctx: EvolutionContext, dataset: Dataset, member: PopMember) -> None:
    ctx.ledger.ensure(member.id, **member.to_dict(ctx.options, dataset.variable_names))
    ctx.ledger.record_event(member.id, "death")


def reg_evol_cycle(
    dataset: Dataset,
    population: Population,
    temperature: float,
    curmaxsize: int,
    statistics: Optional[RunningSearchStatistics],
    ctx: EvolutionContext,
    rng: np.random.Generator,
) -> Tuple[Population, float]:
    """
    Run one evolution cycle in place.

    Returns:
        (population, number of loss evaluations)
    """
    check_cycle_preconditions(ctx)
    if ctx.options.fast_cycle:
        return _fast_cycle(dataset, population, temperature, curmaxsize, statistics, ctx, rng)
    return _sequential_cycle(dataset, population, temperature, curmaxsize, statistics, ctx, rng)


def _sequential_cycle(
    dataset: Dataset,
    population: Population,
    temperature: float,
    curmaxsize: int,
    statistics: Optional[RunningSearchStatistics],
    ctx: EvolutionContext,
    rng: np.random.Generator,
) -> Tuple[Population, float]:
    options = ctx.options
    n_evol_cycles = math.ceil(population.n / options.tournament_selection_n)
    num_evals = 0.0

    for _ in range(n_evol_cycles):
        if rng.random() > options.crossover_probability:
            allstar = population.best_of_sample(rng, statistics, options)
            outcome = next_generation(
                dataset, allstar, temperature, curmaxsize, statistics, ctx, rng
            )
            num_evals += outcome.num_evals

            if ctx.recording:
                _record_mutation(ctx, dataset, allstar, outcome)

            if not outcome.accepted and options.skip_mutation_failures:
                continue

            oldest = population.oldest_index()
            if ctx.recording:
                _record_death(ctx, dataset, population[oldest])
            population[oldest] = outcome.member
        else:
            allstar1 = population.best_of_sample(rng, statistics, options)
            allstar2 = population.best_of_sample(rng, statistics, options)
            outcome = crossover_generation(allstar1, allstar2, dataset, curmaxsize, ctx, rng)
            num_evals += outcome.num_evals

            if not outcome.accepted and options.skip_mutation_failures:
                continue

            population[population.oldest_index()] = outcome.member1
            population[population.oldest_index()] = outcome.member2

    return population, num_evals


def _fast_cycle(
    dataset: Dataset,
    population: Population,
    temperature: float,
    curmaxsize: int,
    statistics: Optional[RunningSearchStatistics],
    ctx: EvolutionContext,
    rng: np.random.Generator,
) -> Tuple[Population, float]:
    options = ctx.options
    size = options.tournament_selection_n
    n_evol_cycles = math.ceil(population.n / size)

    order = rng.permutation(population.n)
    groups = [order[i * size:(i + 1) * size] for i in range(n_evol_cycles)]
    seeds = rng.integers(0, 2**63 - 1, size=len(groups))

    def offspring(group: np.ndarray, seed: np.integer) -> MutationOutcome:
        allstar = population[population.best_index(group, statistics, options)]
        return next_generation(
            dataset,
            allstar,
            temperature,
            curmaxsize,
            statistics,
            ctx,
            np.random.default_rng(int(seed)),
        )

    # Read phase: the population is not modified while offspring are computed
    with ThreadPoolExecutor() as executor:
        outcomes: List[MutationOutcome] = list(executor.map(offspring, groups, seeds))

    num_evals = float(sum(o.num_evals for o in outcomes))
    survivors = [
        o.member for o in outcomes
        if o.accepted or not options.skip_mutation_failures
    ]

    # Write phase
    for index, member in zip(population.oldest_indices(len(survivors)), survivors):
        population[index] = member

    return population, num_evals
