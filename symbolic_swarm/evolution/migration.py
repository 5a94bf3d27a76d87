"""
symbolic_swarm/evolution/migration.py

Copy good candidates from sibling populations into a population.

The number of migrants is Poisson distributed with mean frac * size,
capped by the donor pool and the population size. Donors are drawn
without replacement; destination slots are drawn with replacement, so a
slot may be overwritten twice. Migrants arrive as fresh clones with a new
birth stamp so they are not immediately the oldest members.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from .context import EvolutionContext
from .member import PopMember
from .population import Population

logger = logging.getLogger(__name__)


def migrate(
    donors: Sequence[PopMember],
    population: Population,
    ctx: EvolutionContext,
    frac: float,
    rng: np.random.Generator,
) -> int:
    """
    Overwrite random slots of population with clones of random donors.

    Returns:
        Number of slots overwritten
    """
    npop = population.n
    if frac <= 0 or npop == 0 or len(donors) == 0:
        return 0

    num_replace = int(rng.poisson(frac * npop))
    num_replace = min(num_replace, len(donors), npop)
    if num_replace == 0:
        return 0

    chosen = rng.choice(len(donors), size=num_replace, replace=False)
    locations = rng.integers(0, npop, size=num_replace)

    for donor_index, location in zip(chosen, locations):
        population[int(location)] = donors[int(donor_index)].clone_reset_birth(ctx)

    logger.debug(f"Migrated {num_replace} members into population of {npop}")
    return num_replace
