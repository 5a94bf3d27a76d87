"""
symbolic_swarm/evolution/

Population-based search over expression trees.

Key insight: a generation step only touches its own population, so steps
for different populations run in parallel; everything shared (Hall of
Fame, migration, statistics) is folded in between steps.
- Generate offspring (tournament selection + mutation/crossover)
- Replace the oldest members (regularized evolution)
- Tune constants and simplify survivors

Components:
- PopMember / Population: scored candidates and fixed-size populations
- reg_evol_cycle / s_r_cycle / run_generation_step: the generation step
- optimize_constants: local constant fitting (scipy)
- HallOfFame: best per complexity and the Pareto frontier
- migrate: Poisson migration between populations
- RecordLedger: append-only lineage
"""

from .constant_optimization import ConstantOptimizationResult, optimize_constants
from .context import BirthOrder, EvolutionContext, IdSequence
from .hall_of_fame import (
    HallOfFame,
    ParetoEntry,
    calculate_frontier_entries,
    string_dominating_pareto_curve,
)
from .member import PopMember
from .migration import migrate
from .mutate import CrossoverOutcome, MutationOutcome, crossover_generation, next_generation
from .options import MutationWeights, SearchOptions
from .population import Population
from .recorder import LedgerEvent, RecordLedger
from .regularized_evolution import check_cycle_preconditions, reg_evol_cycle
from .single_iteration import (
    StepOutcome,
    optimize_and_simplify_population,
    rescore_archive,
    run_generation_step,
    s_r_cycle,
)
from .statistics import RunningSearchStatistics

__all__ = [
    "ConstantOptimizationResult",
    "optimize_constants",
    "BirthOrder",
    "EvolutionContext",
    "IdSequence",
    "HallOfFame",
    "ParetoEntry",
    "calculate_frontier_entries",
    "string_dominating_pareto_curve",
    "PopMember",
    "migrate",
    "CrossoverOutcome",
    "MutationOutcome",
    "crossover_generation",
    "next_generation",
    "MutationWeights",
    "SearchOptions",
    "Population",
    "LedgerEvent",
    "RecordLedger",
    "check_cycle_preconditions",
    "reg_evol_cycle",
    "StepOutcome",
    "optimize_and_simplify_population",
    "rescore_archive",
    "run_generation_step",
    "s_r_cycle",
    "RunningSearchStatistics",
]
