"""
Tests for symbolic_swarm/evolution/hall_of_fame.py

Tests archiving, the Pareto frontier and frontier reporting.
"""

import math
import threading

import pytest
import numpy as np

from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.core.expression import Expression
from symbolic_swarm.core.losses import update_baseline_loss
from symbolic_swarm.core.operators import ConfigurationError
from symbolic_swarm.evolution.context import EvolutionContext
from symbolic_swarm.evolution.hall_of_fame import (
    HallOfFame,
    calculate_frontier_entries,
    string_dominating_pareto_curve,
)
from symbolic_swarm.evolution.member import PopMember
from symbolic_swarm.evolution.options import SearchOptions
from symbolic_swarm.evolution.population import Population


def make_context(maxsize=10):
    return EvolutionContext.create(SearchOptions(binary_operators=["+", "*"], maxsize=maxsize))


def make_member(ctx, complexity, loss, score=None):
    return PopMember(
        tree=Expression.variable(0),
        score=loss if score is None else score,
        loss=loss,
        birth=ctx.birth(),
        id=ctx.ids(),
        complexity=complexity,
    )


def small_dataset():
    return Dataset(np.linspace(0, 1, 5).reshape(-1, 1), np.linspace(0, 1, 5))


# ==================== Archive Tests ====================

class TestHallOfFame:
    """Tests for HallOfFame.consider."""

    def test_empty_slot_is_filled(self):
        """First member of a size always enters."""
        ctx = make_context()
        hof = HallOfFame(10)
        assert hof.consider(make_member(ctx, 3, 1.0), ctx)
        assert hof.exists[3]
        assert len(hof) == 1

    def test_only_strict_improvements_replace(self):
        """Equal or worse losses leave the slot alone."""
        ctx = make_context()
        hof = HallOfFame(10)
        hof.consider(make_member(ctx, 3, 1.0), ctx)

        assert not hof.consider(make_member(ctx, 3, 1.0), ctx)
        assert not hof.consider(make_member(ctx, 3, 2.0), ctx)
        assert hof.consider(make_member(ctx, 3, 0.5), ctx)
        assert hof.members[3].loss == 0.5

    def test_nan_never_enters(self):
        """NaN losses are not archived, not even in an empty slot."""
        ctx = make_context()
        hof = HallOfFame(10)
        assert not hof.consider(make_member(ctx, 2, math.nan), ctx)
        assert not hof.exists[2]

        hof.consider(make_member(ctx, 4, 1.0), ctx)
        assert not hof.consider(make_member(ctx, 4, math.nan), ctx)
        assert hof.members[4].loss == 1.0

    def test_out_of_range_complexity(self):
        """Members beyond maxsize are ignored."""
        ctx = make_context()
        hof = HallOfFame(10)
        assert not hof.consider(make_member(ctx, 11, 0.1), ctx)
        assert len(hof) == 0

    def test_stores_copies(self):
        """Later edits to a population member do not reach the archive."""
        ctx = make_context()
        hof = HallOfFame(10)
        member = make_member(ctx, 1, 1.0)
        hof.consider(member, ctx)

        member.loss = 0.0
        member.tree = Expression.constant(3.0)
        assert hof.members[1].loss == 1.0
        assert hof.members[1].tree == Expression.variable(0)
        assert hof.members[1].birth == member.birth
        assert hof.members[1].parent_id == member.id

    def test_archived_ids_are_fresh(self):
        """Archived clones never share an id with a live population member."""
        ctx = make_context()
        X = np.linspace(-1, 1, 10).reshape(-1, 1)
        dataset = Dataset(X, 2 * X[:, 0])
        update_baseline_loss(dataset, ctx.options)
        population = Population.random(dataset, 20, ctx, np.random.default_rng(42))

        hof = HallOfFame(10)
        hof.consider_all(population, ctx)
        archived = {m.id for m in hof.existing_members()}

        assert archived
        assert not archived & set(population.ids())

    def test_consider_by_score(self):
        """Per-step archives compare scores instead of losses."""
        ctx = make_context()
        hof = HallOfFame(10)
        hof.consider(make_member(ctx, 2, loss=1.0, score=5.0), ctx, by="score")
        assert hof.consider(make_member(ctx, 2, loss=2.0, score=4.0), ctx, by="score")
        assert hof.members[2].loss == 2.0

    def test_merge(self):
        """Merging keeps the better member per size."""
        ctx = make_context()
        a, b = HallOfFame(10), HallOfFame(10)
        a.consider(make_member(ctx, 1, 1.0), ctx)
        b.consider(make_member(ctx, 1, 0.5), ctx)
        b.consider(make_member(ctx, 2, 0.7), ctx)

        assert a.merge(b, ctx)
        assert a.losses() == [0.5, 0.7]

    def test_concurrent_consider(self):
        """Concurrent offers end with the minimum loss per size."""
        ctx = make_context()
        hof = HallOfFame(10)
        rng = np.random.default_rng(42)
        members = [
            make_member(ctx, int(c), float(l))
            for c, l in zip(rng.integers(1, 11, size=400), rng.random(400))
        ]

        def offer(chunk):
            for m in chunk:
                hof.consider(m, ctx)

        threads = [threading.Thread(target=offer, args=(members[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for size in range(1, 11):
            losses = [m.loss for m in members if m.complexity == size]
            if losses:
                assert hof.members[size].loss == min(losses)


# ==================== Frontier Tests ====================

class TestParetoFrontier:
    """Tests for pareto_frontier and frontier reporting."""

    def test_dominance_filter(self):
        """Only members beating every smaller member survive."""
        ctx = make_context()
        hof = HallOfFame(10)
        for complexity, loss in [(1, 5.0), (2, 6.0), (3, 3.0), (4, 3.0), (5, 1.0)]:
            hof.consider(make_member(ctx, complexity, loss), ctx)

        frontier = hof.pareto_frontier()
        assert [m.complexity for m in frontier] == [1, 3, 5]

    def test_strictly_decreasing(self):
        """Frontier losses strictly decrease for random archives."""
        ctx = make_context()
        rng = np.random.default_rng(42)

        for _ in range(20):
            hof = HallOfFame(10)
            for complexity in range(11):
                if rng.random() < 0.8:
                    loss = math.nan if rng.random() < 0.1 else float(rng.random())
                    hof.consider(make_member(ctx, complexity, loss), ctx)

            losses = [m.loss for m in hof.pareto_frontier()]
            assert all(not math.isnan(l) for l in losses)
            assert all(b < a for a, b in zip(losses, losses[1:]))

    def test_frontier_scores(self):
        """Scores are -dlog(loss)/dcomplexity, zero for the first entry."""
        ctx = make_context()
        hof = HallOfFame(10)
        hof.consider(make_member(ctx, 1, 5.0), ctx)
        hof.consider(make_member(ctx, 3, 3.0), ctx)

        entries = calculate_frontier_entries(hof, small_dataset(), ctx.options)
        assert [e.complexity for e in entries] == [1, 3]
        assert entries[0].score == 0.0
        assert entries[1].score == pytest.approx(-math.log(3.0 / 5.0 + 1e-10) / 2)
        assert entries[0].equation == "x1"

    def test_negative_loss_is_configuration_error(self):
        """Reporting a negative loss fails loudly."""
        ctx = make_context()
        hof = HallOfFame(10)
        hof.consider(make_member(ctx, 1, -1.0), ctx)

        with pytest.raises(ConfigurationError, match="non-negative"):
            calculate_frontier_entries(hof, small_dataset(), ctx.options)

    def test_table(self):
        """Text table lists every frontier equation."""
        ctx = make_context()
        hof = HallOfFame(10)
        hof.consider(make_member(ctx, 1, 0.25), ctx)

        table = string_dominating_pareto_curve(hof, small_dataset(), ctx.options)
        assert "Hall of Fame" in table
        assert "x1" in table

    def test_entry_to_dict(self):
        """Entries serialise without the member."""
        ctx = make_context()
        hof = HallOfFame(10)
        hof.consider(make_member(ctx, 1, 0.25), ctx)

        data = calculate_frontier_entries(hof, small_dataset(), ctx.options)[0].to_dict()
        assert data == {"complexity": 1, "loss": 0.25, "score": 0.0, "equation": "x1"}
