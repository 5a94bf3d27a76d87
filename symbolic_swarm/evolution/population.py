"""
symbolic_swarm/evolution/population.py

Fixed-size population of candidate equations.

Selection is tournament based: sample a handful of members, rank them by
score (optionally inflated for over-represented complexities), and pick
the best with probability p, the second best with p(1-p), and so on.
Replacement is age based: the member with the smallest birth stamp is
the next to go, ties going to the lowest index.

NaN scores are ranked as +inf so they never win a tournament.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, Sequence

import numpy as np

from symbolic_swarm.core.dataset import Dataset

from .context import EvolutionContext
from .member import PopMember
from .mutation_functions import gen_random_tree
from .options import SearchOptions
from .statistics import RunningSearchStatistics

logger = logging.getLogger(__name__)


def _nan_to_inf(values: np.ndarray) -> np.ndarray:
    return np.where(np.isnan(values), np.inf, values)


class Population:
    """Ordered, fixed-size sequence of PopMembers."""

    def __init__(self, members: Sequence[PopMember]):
        self.members: List[PopMember] = list(members)

    @classmethod
    def random(
        cls,
        dataset: Dataset,
        size: int,
        ctx: EvolutionContext,
        rng: np.random.Generator,
        nlength: int = 3,
    ) -> "Population":
        """Population of random trees with nlength appended operators each."""
        complex_constants = np.iscomplexobj(dataset.X)
        members = [
            PopMember.from_tree(
                dataset,
                gen_random_tree(nlength, ctx.options, dataset.nfeatures, rng, complex_constants),
                ctx,
            )
            for _ in range(size)
        ]
        return cls(members)

    @property
    def n(self) -> int:
        return len(self.members)

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self) -> Iterator[PopMember]:
        return iter(self.members)

    def __getitem__(self, index: int) -> PopMember:
        return self.members[index]

    def __setitem__(self, index: int, member: PopMember) -> None:
        self.members[index] = member

    def copy(self) -> "Population":
        """Deep copy; members keep their ids."""
        return Population([m.copy() for m in self.members])

    def ids(self) -> List[int]:
        return [m.id for m in self.members]

    # ---- selection ----

    def tournament_scores(
        self,
        indices: Sequence[int],
        statistics: Optional[RunningSearchStatistics],
        options: SearchOptions,
    ) -> np.ndarray:
        scores = np.array([self.members[i].score for i in indices], dtype=float)
        if options.use_frequency_in_tournament and statistics is not None:
            frequencies = np.array([
                statistics.normalized_frequency(self.members[i].get_complexity(options))
                for i in indices
            ])
            scores = scores * np.exp(options.adaptive_parsimony_scaling * frequencies)
        return _nan_to_inf(scores)

    def best_index(
        self,
        indices: Sequence[int],
        statistics: Optional[RunningSearchStatistics],
        options: SearchOptions,
    ) -> int:
        """Index (into the population) of the lowest adjusted score among indices."""
        scores = self.tournament_scores(indices, statistics, options)
        return int(indices[int(np.argmin(scores))])

    def best_of_sample(
        self,
        rng: np.random.Generator,
        statistics: Optional[RunningSearchStatistics],
        options: SearchOptions,
    ) -> PopMember:
        """Tournament winner among tournament_selection_n sampled members."""
        n = min(options.tournament_selection_n, self.n)
        sample = rng.choice(self.n, size=n, replace=False)

        p = options.prob_pick_first
        if p >= 1.0:
            return self.members[self.best_index(sample, statistics, options)]

        scores = self.tournament_scores(sample, statistics, options)
        weights = p * (1.0 - p) ** np.arange(n)
        rank = int(rng.choice(n, p=weights / weights.sum()))
        chosen = sample[np.argsort(scores, kind="stable")[rank]]
        return self.members[int(chosen)]

    # ---- replacement ----

    def oldest_index(self) -> int:
        """Index of the smallest birth stamp; lowest index wins ties."""
        births = np.array([m.birth for m in self.members])
        return int(np.argmin(births))

    def oldest_indices(self, k: int) -> List[int]:
        """Indices of the k oldest members, oldest first."""
        births = np.array([m.birth for m in self.members])
        return [int(i) for i in np.argsort(births, kind="stable")[:k]]

    def best_sub_population(self, topn: int) -> List[PopMember]:
        scores = _nan_to_inf(np.array([m.score for m in self.members], dtype=float))
        order = np.argsort(scores, kind="stable")[:topn]
        return [self.members[int(i)] for i in order]

    def record(
        self,
        options: SearchOptions,
        variable_names: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        return [m.to_dict(options, variable_names) for m in self.members]
