"""
symbolic_swarm/evolution/hall_of_fame.py

Best-ever candidate per complexity, and the Pareto frontier derived from it.

The Hall of Fame has one slot per integer complexity 0..maxsize. A slot
is overwritten only when it is empty or the newcomer is strictly better
(lower loss, or lower score for per-step archives). NaN losses never
enter a slot. Stored members are clones with their own ids (birth kept),
so later mutation of a population cannot alter the archive.

The frontier keeps a member only if its loss is strictly below the loss
of every smaller member, which makes losses strictly decrease as
complexity grows.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.core.operators import ConfigurationError

from .context import EvolutionContext
from .member import PopMember
from .options import SearchOptions

logger = logging.getLogger(__name__)

# Keeps the log-ratio finite when a loss reaches zero
ZERO_POINT = 1e-10


@dataclass
class ParetoEntry:
    """One row of the reported frontier."""
    complexity: int
    loss: float
    score: float
    equation: str
    member: Optional[PopMember] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complexity": self.complexity,
            "loss": self.loss,
            "score": self.score,
            "equation": self.equation,
        }


class HallOfFame:
    """Best member per complexity."""

    def __init__(self, maxsize: int):
        self.maxsize = maxsize
        self.members: List[Optional[PopMember]] = [None] * (maxsize + 1)
        self.exists: List[bool] = [False] * (maxsize + 1)
        self._lock = threading.RLock()

    def consider(self, member: PopMember, ctx: EvolutionContext, by: str = "loss") -> bool:
        """
        Offer a member to the archive.

        Args:
            member: Candidate to consider
            ctx: Run context (options and the id sequence for the archived clone)
            by: "loss" for the run archive, "score" for per-step archives

        Returns:
            True if a slot was filled or improved
        """
        size = member.get_complexity(ctx.options)
        if not 0 <= size <= self.maxsize:
            return False
        value = getattr(member, by)
        if math.isnan(value) or math.isnan(member.loss):
            return False

        with self._lock:
            current = self.members[size]
            if not self.exists[size] or value < getattr(current, by):
                self.members[size] = member.clone(ctx)
                self.exists[size] = True
                return True
        return False

    def consider_all(
        self,
        members: Iterable[PopMember],
        ctx: EvolutionContext,
        by: str = "loss",
    ) -> bool:
        improved = False
        for member in members:
            improved |= self.consider(member, ctx, by)
        return improved

    def merge(self, other: "HallOfFame", ctx: EvolutionContext) -> bool:
        return self.consider_all(other.existing_members(), ctx)

    def existing_members(self) -> List[PopMember]:
        with self._lock:
            return [m for m, ok in zip(self.members, self.exists) if ok]

    def losses(self) -> List[float]:
        return [m.loss for m in self.existing_members()]

    def pareto_frontier(self) -> List[PopMember]:
        """Members whose loss beats every smaller member, by increasing complexity."""
        frontier: List[PopMember] = []
        best_loss = math.inf
        for member in self.existing_members():
            if math.isnan(member.loss):
                continue
            if member.loss < best_loss:
                frontier.append(member)
                best_loss = member.loss
        return frontier

    def __len__(self) -> int:
        return sum(self.exists)


def calculate_frontier_entries(
    hall_of_fame: HallOfFame,
    dataset: Dataset,
    options: SearchOptions,
) -> List[ParetoEntry]:
    """
    Report the frontier with a score per entry.

    The score is -d log(loss) / d complexity relative to the previous
    frontier entry (0 for the first).
    """
    entries: List[ParetoEntry] = []
    last_loss: Optional[float] = None
    last_complexity = 0

    for member in hall_of_fame.pareto_frontier():
        complexity = member.get_complexity(options)
        if member.loss < 0:
            raise ConfigurationError(
                f"Loss function must be non-negative, got loss {member.loss} "
                f"for complexity {complexity}"
            )

        if last_loss is None:
            score = 0.0
        else:
            delta_complexity = complexity - last_complexity
            delta_log_loss = math.log(abs(member.loss / last_loss) + ZERO_POINT) if last_loss > 0 else 0.0
            score = -delta_log_loss / delta_complexity

        entries.append(ParetoEntry(
            complexity=complexity,
            loss=member.loss,
            score=score,
            equation=member.equation(options, dataset.variable_names),
            member=member,
        ))
        last_loss = member.loss
        last_complexity = complexity

    return entries


def string_dominating_pareto_curve(
    hall_of_fame: HallOfFame,
    dataset: Dataset,
    options: SearchOptions,
) -> str:
    """Text table of the frontier."""
    lines = [
        "Hall of Fame:",
        "-" * 60,
        f"{'Complexity':<12}{'Loss':<14}{'Score':<14}Equation",
    ]
    for entry in calculate_frontier_entries(hall_of_fame, dataset, options):
        lines.append(
            f"{entry.complexity:<12}{entry.loss:<14.4e}{entry.score:<14.4e}{entry.equation}"
        )
    lines.append("-" * 60)
    return "\n".join(lines)
