"""
symbolic_swarm/evolution/member.py

A scored candidate equation (population member).

A member pairs an expression tree with its loss, its score, a birth stamp
used for age-based replacement, and an id for lineage tracking. Copies
come in three flavours:
- copy(): exact duplicate, same id (used to hand a population to a worker)
- clone(): new id, same birth (archiving)
- clone_reset_birth(): new id and a fresh birth stamp (migration)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from symbolic_swarm.core.complexity import compute_complexity
from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.core.expression import Expression, string_tree
from symbolic_swarm.core.losses import score_func

from .context import EvolutionContext
from .options import SearchOptions


@dataclass(eq=False)
class PopMember:
    """One candidate equation with its evaluation results."""
    tree: Expression
    score: float
    loss: float
    birth: int
    id: int
    complexity: int = -1  # -1 means not computed yet
    parent_id: Optional[int] = None

    @classmethod
    def create(
        cls,
        ctx: EvolutionContext,
        tree: Expression,
        score: float,
        loss: float,
        complexity: Optional[int] = None,
        parent_id: Optional[int] = None,
    ) -> "PopMember":
        """Wrap an already-scored tree, stamping birth and id."""
        if complexity is None:
            complexity = compute_complexity(tree, ctx.options.complexity_mapping)
        return cls(
            tree=tree,
            score=score,
            loss=loss,
            birth=ctx.birth(),
            id=ctx.ids(),
            complexity=complexity,
            parent_id=parent_id,
        )

    @classmethod
    def from_tree(
        cls,
        dataset: Dataset,
        tree: Expression,
        ctx: EvolutionContext,
        complexity: Optional[int] = None,
        parent_id: Optional[int] = None,
    ) -> "PopMember":
        """Score a tree on the dataset and wrap it."""
        if complexity is None:
            complexity = compute_complexity(tree, ctx.options.complexity_mapping)
        score, loss = score_func(dataset, tree, ctx.options, complexity)
        return cls.create(ctx, tree, score, loss, complexity, parent_id)

    def copy(self) -> "PopMember":
        return PopMember(
            tree=self.tree.copy(),
            score=self.score,
            loss=self.loss,
            birth=self.birth,
            id=self.id,
            complexity=self.complexity,
            parent_id=self.parent_id,
        )

    def clone(self, ctx: EvolutionContext) -> "PopMember":
        member = self.copy()
        member.id = ctx.ids()
        member.parent_id = self.id
        return member

    def clone_reset_birth(self, ctx: EvolutionContext) -> "PopMember":
        member = self.clone(ctx)
        member.birth = ctx.birth()
        return member

    def get_complexity(self, options: SearchOptions) -> int:
        if self.complexity < 0:
            self.recompute_complexity(options)
        return self.complexity

    def recompute_complexity(self, options: SearchOptions) -> int:
        self.complexity = compute_complexity(self.tree, options.complexity_mapping)
        return self.complexity

    def equation(self, options: SearchOptions, variable_names: Optional[Sequence[str]] = None) -> str:
        return string_tree(self.tree, options.operators, variable_names)

    def to_dict(
        self,
        options: SearchOptions,
        variable_names: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parent": self.parent_id,
            "tree": self.equation(options, variable_names),
            "loss": self.loss,
            "score": self.score,
            "complexity": self.get_complexity(options),
            "birth": self.birth,
        }

    def __repr__(self) -> str:
        return (
            f"PopMember(id={self.id}, loss={self.loss:.6g}, score={self.score:.6g}, "
            f"complexity={self.complexity}, birth={self.birth})"
        )
