"""
symbolic_swarm/evolution/options.py

Search options.

All knobs that shape the evolutionary search live in one dataclass.
Derived objects (the validated OperatorSet, the resolved loss function,
the complexity mapping and the early-stop predicate) are built in
__post_init__, and every cross-field constraint is checked eagerly so a
bad configuration fails before any population is created.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

from symbolic_swarm.core.complexity import ComplexityMapping
from symbolic_swarm.core.losses import get_elementwise_loss
from symbolic_swarm.core.operators import ConfigurationError, OperatorSet

logger = logging.getLogger(__name__)

OPTIMIZER_ALGORITHMS = ("NelderMead", "BFGS")

StopCondition = Callable[[float], bool]


@dataclass
class MutationWeights:
    """Relative frequencies of the mutation kinds."""
    mutate_constant: float = 0.048
    mutate_operator: float = 0.47
    add_node: float = 0.79
    insert_node: float = 5.1
    delete_node: float = 1.7
    simplify: float = 0.002
    randomize: float = 0.00023
    do_nothing: float = 0.21
    optimize: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> "MutationWeights":
        unknown = sorted(set(data) - {f.name for f in dataclasses.fields(cls)})
        if unknown:
            raise ConfigurationError(f"Unknown mutation weights: {unknown}")
        return cls(**data)


@dataclass
class SearchOptions:
    """Configuration for an evolutionary symbolic regression search."""

    # Operators
    binary_operators: List[str] = field(default_factory=lambda: ["+", "-", "*", "/"])
    unary_operators: List[str] = field(default_factory=list)

    # Populations
    populations: int = 15
    population_size: int = 33
    ncycles_per_iteration: int = 100  # Evolution cycles per generation step
    niterations: Optional[int] = 40  # Generation steps per population (None = unbounded)

    # Tournament selection
    tournament_selection_n: int = 12
    prob_pick_first: float = 0.86
    use_frequency: bool = True  # Adaptive parsimony in acceptance
    use_frequency_in_tournament: bool = True  # Adaptive parsimony in tournaments
    adaptive_parsimony_scaling: float = 20.0

    # Scoring
    elementwise_loss: Any = "L2DistLoss"  # Loss name or callable(prediction, target)
    parsimony: float = 0.0032
    maxsize: int = 20  # Maximum complexity
    maxdepth: Optional[int] = None  # Defaults to maxsize
    warmup_maxsize_by: float = 0.0  # Fraction of the run over which maxsize ramps up from 3
    complexity_of_operators: Optional[Dict[str, float]] = None
    complexity_of_constants: float = 1.0
    complexity_of_variables: float = 1.0
    batching: bool = False  # Score offspring on a random mini-batch of rows
    batch_size: int = 50

    # Mutation and crossover
    mutation_weights: MutationWeights = field(default_factory=MutationWeights)
    crossover_probability: float = 0.066
    mutation_probability: float = 1.0  # Otherwise the parent passes through unchanged
    perturbation_factor: float = 0.076
    probability_negate_constant: float = 0.01
    annealing: bool = False
    alpha: float = 0.1  # Annealing temperature scale
    skip_mutation_failures: bool = True
    fast_cycle: bool = False  # Concurrent grouped evolution (no crossover, no ledger)

    # Constant optimization and simplification
    should_optimize_constants: bool = True
    optimizer_probability: float = 0.14
    optimizer_algorithm: str = "BFGS"  # "NelderMead" or "BFGS"
    optimizer_nrestarts: int = 2
    optimizer_iterations: int = 100
    optimizer_tolerance: float = 1e-8
    should_simplify: bool = True

    # Migration
    migration: bool = True
    hof_migration: bool = True
    fraction_replaced: float = 0.00036
    fraction_replaced_hof: float = 0.035
    topn: int = 12  # Members per population offered as migrants
    migration_interval: int = 1  # Completed steps between migrations

    # Stopping
    generations: int = 200  # Steps without improvement before an output finishes
    early_stop_condition: Union[None, float, StopCondition] = None
    max_evals: Optional[int] = None
    timeout_in_seconds: Optional[float] = None

    # Reproducibility
    deterministic: bool = False
    seed: Optional[int] = None

    # Record ledger
    recorder: bool = False
    recorder_file: Optional[str] = "search_record.json"

    # Derived (not constructor arguments)
    operators: OperatorSet = field(init=False, repr=False)
    loss_function: Callable = field(init=False, repr=False)
    complexity_mapping: Optional[ComplexityMapping] = field(init=False, repr=False)
    stop_condition: Optional[StopCondition] = field(init=False, repr=False)

    def __post_init__(self):
        if isinstance(self.mutation_weights, dict):
            self.mutation_weights = MutationWeights.from_dict(self.mutation_weights)
        if self.maxdepth is None:
            self.maxdepth = self.maxsize

        self.operators = OperatorSet(self.binary_operators, self.unary_operators)

        try:
            self.loss_function = get_elementwise_loss(self.elementwise_loss)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        if (
            self.complexity_of_operators
            or self.complexity_of_constants != 1
            or self.complexity_of_variables != 1
        ):
            try:
                self.complexity_mapping = ComplexityMapping.from_options(
                    self.operators,
                    self.complexity_of_operators,
                    self.complexity_of_constants,
                    self.complexity_of_variables,
                )
            except ValueError as e:
                raise ConfigurationError(str(e)) from e
        else:
            self.complexity_mapping = None

        self.stop_condition = self._make_stop_condition(self.early_stop_condition)

        self.validate()

    @staticmethod
    def _make_stop_condition(condition) -> Optional[StopCondition]:
        if condition is None:
            return None
        if callable(condition):
            return condition
        if isinstance(condition, (int, float)):
            threshold = float(condition)
            return lambda loss: loss < threshold
        raise ConfigurationError(
            f"early_stop_condition must be a number or callable, got {condition!r}"
        )

    def validate(self) -> None:
        """Raise ConfigurationError for the first violated constraint."""
        def require(condition: bool, message: str) -> None:
            if not condition:
                raise ConfigurationError(message)

        require(self.populations >= 1, "populations must be >= 1")
        require(self.population_size >= 1, "population_size must be >= 1")
        require(self.ncycles_per_iteration >= 1, "ncycles_per_iteration must be >= 1")
        require(
            self.niterations is None or self.niterations >= 1,
            "niterations must be >= 1 or None",
        )
        require(
            1 <= self.tournament_selection_n <= self.population_size,
            "tournament_selection_n must be between 1 and population_size",
        )
        require(0.0 < self.prob_pick_first <= 1.0, "prob_pick_first must be in (0, 1]")
        require(self.maxsize >= 1, "maxsize must be >= 1")
        require(self.maxdepth >= 1, "maxdepth must be >= 1")
        require(self.parsimony >= 0, "parsimony must be >= 0")
        require(self.batch_size >= 1, "batch_size must be >= 1")
        require(
            0.0 <= self.warmup_maxsize_by <= 1.0,
            f"warmup_maxsize_by must be in [0, 1], got {self.warmup_maxsize_by}",
        )
        require(
            self.warmup_maxsize_by == 0.0 or self.niterations is not None,
            "warmup_maxsize_by requires niterations",
        )

        for name in (
            "crossover_probability",
            "mutation_probability",
            "optimizer_probability",
            "probability_negate_constant",
            "fraction_replaced",
            "fraction_replaced_hof",
        ):
            value = getattr(self, name)
            require(0.0 <= value <= 1.0, f"{name} must be in [0, 1], got {value}")

        weights = self.mutation_weights.to_dict()
        require(
            all(w >= 0 for w in weights.values()),
            "mutation weights must be non-negative",
        )
        require(sum(weights.values()) > 0, "at least one mutation weight must be positive")

        require(
            self.optimizer_algorithm in OPTIMIZER_ALGORITHMS,
            f"optimizer_algorithm must be one of {OPTIMIZER_ALGORITHMS}, "
            f"got {self.optimizer_algorithm!r}",
        )
        require(self.optimizer_nrestarts >= 0, "optimizer_nrestarts must be >= 0")
        require(self.optimizer_iterations >= 1, "optimizer_iterations must be >= 1")
        require(not self.annealing or self.alpha > 0, "alpha must be > 0 when annealing")
        require(self.topn >= 1, "topn must be >= 1")
        require(self.migration_interval >= 1, "migration_interval must be >= 1")
        require(self.generations >= 0, "generations must be >= 0")
        require(
            self.max_evals is None or self.max_evals > 0,
            "max_evals must be positive or None",
        )
        require(
            self.timeout_in_seconds is None or self.timeout_in_seconds > 0,
            "timeout_in_seconds must be positive or None",
        )

        # Mode compatibility
        require(
            not (self.recorder and self.crossover_probability > 0),
            "crossover_probability > 0 is not supported with the record ledger enabled",
        )
        require(
            not (self.recorder and self.fast_cycle),
            "fast_cycle is not supported with the record ledger enabled",
        )
        require(
            not self.fast_cycle or self.prob_pick_first == 1.0,
            "fast_cycle requires prob_pick_first == 1.0",
        )
        require(
            not self.fast_cycle or self.crossover_probability == 0.0,
            "fast_cycle requires crossover_probability == 0.0",
        )

    # ---- serialization ----

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data view of the constructor arguments."""
        data: Dict[str, Any] = {}
        for f in dataclasses.fields(self):
            if not f.init:
                continue
            value = getattr(self, f.name)
            if f.name == "mutation_weights":
                value = value.to_dict()
            elif callable(value):
                value = getattr(value, "__name__", repr(value))
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchOptions":
        known = {f.name for f in dataclasses.fields(cls) if f.init}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown search options: {unknown}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SearchOptions":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Options file {path} must contain a mapping")
        logger.info(f"Loaded search options from {path}")
        return cls.from_dict(data)
