"""
symbolic_swarm/services/scheduler.py

Search scheduler service.

The scheduler drives the whole search:
1. Creates the random initial populations of every output
2. Dispatches one generation step per idle population to the worker pool
3. Folds finished populations into the output's Hall of Fame
4. Migrates good candidates between populations
5. Tracks stop conditions and reports the Pareto frontier per output

The control loop is single-threaded; only generation steps run on the
workers. Cancellation and the evaluation/time budgets are checked between
steps, and steps already in flight are awaited before the run returns.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.core.losses import update_baseline_loss
from symbolic_swarm.evolution.context import EvolutionContext
from symbolic_swarm.evolution.hall_of_fame import (
    HallOfFame,
    ParetoEntry,
    calculate_frontier_entries,
    string_dominating_pareto_curve,
)
from symbolic_swarm.evolution.member import PopMember
from symbolic_swarm.evolution.migration import migrate
from symbolic_swarm.evolution.options import SearchOptions
from symbolic_swarm.evolution.population import Population
from symbolic_swarm.evolution.recorder import RecordLedger
from symbolic_swarm.evolution.regularized_evolution import check_cycle_preconditions
from symbolic_swarm.evolution.statistics import RunningSearchStatistics

from .dashboard import StatusPublisher
from .queue import GenerationResult, GenerationTask, SlotStatus, WorkerSlot
from .worker import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Runtime configuration for the search scheduler."""
    # Worker pool
    num_workers: int = 4
    poll_interval: float = 0.05  # Seconds to wait for a result per loop

    # Progress reporting
    progress_interval: float = 5.0  # Seconds between progress log lines

    # Checkpointing
    checkpoint_path: Optional[str] = None
    checkpoint_interval: int = 10  # Completed steps between checkpoints

    # Status publishing
    publish_status: bool = False
    redis_url: str = "redis://localhost:6379"
    status_history_limit: int = 1000

    # Failure handling
    max_consecutive_failures: int = 5  # Per population, before it is retired


@dataclass
class OutputState:
    """Everything the scheduler tracks for one output."""
    output: int
    dataset: Dataset
    populations: List[Population]
    slots: List[WorkerSlot]
    hall_of_fame: HallOfFame
    statistics: RunningSearchStatistics
    best_seen: List[Optional[HallOfFame]] = field(default_factory=list)
    generations_since_improvement: int = 0
    finished: bool = False
    stop_reason: Optional[str] = None

    def best_loss(self) -> Optional[float]:
        losses = self.hall_of_fame.losses()
        return min(losses) if losses else None


@dataclass
class SearchResult:
    """Final state of a search."""
    hall_of_fames: List[HallOfFame]
    frontiers: List[List[ParetoEntry]]
    num_evals: float
    iterations: List[List[int]]  # Completed steps per output and population
    elapsed_time: float
    cancelled: bool = False
    stop_reason: str = "completed"
    ledger: Optional[RecordLedger] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "frontiers": [[e.to_dict() for e in frontier] for frontier in self.frontiers],
            "num_evals": self.num_evals,
            "iterations": self.iterations,
            "elapsed_time": self.elapsed_time,
            "cancelled": self.cancelled,
            "stop_reason": self.stop_reason,
        }
        if self.ledger is not None:
            data["ledger"] = self.ledger.to_dict()
        return data


class SearchScheduler:
    """
    Scheduler for a multi-population, multi-output search.

    Manages the dispatch-fold-migrate loop across a pool of worker threads.
    """

    def __init__(
        self,
        options: SearchOptions,
        config: Optional[SchedulerConfig] = None,
        ctx: Optional[EvolutionContext] = None,
        publisher: Optional[StatusPublisher] = None,
    ):
        options.validate()
        self.options = options
        self.config = config or SchedulerConfig()
        self.ctx = ctx or EvolutionContext.create(options)
        check_cycle_preconditions(self.ctx)

        if publisher is None and self.config.publish_status:
            publisher = StatusPublisher(
                self.config.redis_url, self.config.status_history_limit
            )
        self.publisher = publisher

        self.rng = np.random.default_rng(options.seed)

        # State tracking
        self.outputs: List[OutputState] = []
        self.num_evals = 0.0
        self.steps_completed = 0
        self.history: List[Dict[str, Any]] = []

        # Status
        self.running = False
        self.cancelled = False
        self.start_time: Optional[float] = None
        self._last_progress = 0.0
        self._stop = threading.Event()
        self._pool: Optional[WorkerPool] = None

        logger.info(
            f"Scheduler initialized: {options.populations} populations of "
            f"{options.population_size}, {self.config.num_workers} workers"
        )

    # ---- setup ----

    def _init_output(self, index: int, dataset: Dataset) -> OutputState:
        options = self.options
        update_baseline_loss(dataset, options)

        populations = [
            Population.random(dataset, options.population_size, self.ctx, self.rng)
            for _ in range(options.populations)
        ]
        self.num_evals += options.populations * options.population_size

        state = OutputState(
            output=index,
            dataset=dataset,
            populations=populations,
            slots=[WorkerSlot(output=index, population=j) for j in range(options.populations)],
            hall_of_fame=HallOfFame(options.maxsize),
            statistics=RunningSearchStatistics(options.maxsize),
            best_seen=[None] * options.populations,
        )
        for population in populations:
            state.hall_of_fame.consider_all(population, self.ctx)
            self._update_statistics(state, population)

        logger.debug(
            f"Output {index}: baseline loss {dataset.baseline_loss:.4e}, "
            f"{len(state.hall_of_fame)} initial Hall of Fame entries"
        )
        return state

    def _update_statistics(self, state: OutputState, population: Population) -> None:
        for member in population:
            state.statistics.update_frequencies(member.get_complexity(self.options))
        state.statistics.move_window()
        state.statistics.normalize_frequencies()

    # ---- dispatch ----

    def _curmaxsize(self, state: OutputState) -> int:
        if self.options.niterations is None:
            return self.options.maxsize
        total = len(state.slots) * self.options.niterations
        elapsed = sum(slot.iteration for slot in state.slots)
        return warmup_maxsize(self.options, elapsed / total)

    def _make_task(self, state: OutputState, slot: WorkerSlot) -> GenerationTask:
        return GenerationTask(
            task_id=str(uuid.uuid4()),
            output=state.output,
            population_index=slot.population,
            iteration=slot.iteration,
            dataset=state.dataset,
            population=state.populations[slot.population],
            statistics=state.statistics.copy(),
            curmaxsize=self._curmaxsize(state),
            seed=int(self.rng.integers(0, 2**63 - 1)),
        )

    def _dispatch(self, pool: WorkerPool) -> int:
        """Send a generation step for every idle population. Returns tasks sent."""
        sent = 0
        for state in self.outputs:
            if state.finished:
                continue
            for slot in state.slots:
                if slot.status is not SlotStatus.IDLE:
                    continue
                task = self._make_task(state, slot)
                slot.status = SlotStatus.RUNNING
                slot.task_id = task.task_id
                slot.worker_id = pool.submit(task)
                sent += 1
                logger.debug(
                    f"Dispatched output {state.output} population {slot.population} "
                    f"step {slot.iteration} to {slot.worker_id}"
                )
        return sent

    # ---- results ----

    def _handle_result(self, result: GenerationResult) -> None:
        """Fold a finished step back into its output."""
        options = self.options
        state = self.outputs[result.output]
        index = result.population_index
        slot = state.slots[index]
        slot.worker_id = None
        slot.task_id = None

        if result.error is not None:
            slot.consecutive_failures += 1
            if slot.consecutive_failures > self.config.max_consecutive_failures:
                slot.status = SlotStatus.DONE
                logger.error(
                    f"Output {state.output} population {index} retired after "
                    f"{slot.consecutive_failures} consecutive failures"
                )
                self._check_output_done(state)
            else:
                slot.status = SlotStatus.IDLE
                logger.warning(
                    f"Step for output {state.output} population {index} failed, "
                    f"keeping previous population: {result.error}"
                )
            return

        slot.consecutive_failures = 0
        slot.iteration += 1
        self.steps_completed += 1
        self.num_evals += result.num_evals

        population = result.population
        state.populations[index] = population
        state.best_seen[index] = result.best_seen
        self._update_statistics(state, population)

        hof = state.hall_of_fame
        improved = hof.consider_all(population, self.ctx)
        if result.best_seen is not None:
            improved |= hof.merge(result.best_seen, self.ctx)

        if improved:
            state.generations_since_improvement = 0
            logger.debug(f"Output {state.output}: Hall of Fame improved, best loss {state.best_loss()}")
        else:
            state.generations_since_improvement += 1

        if self.ctx.recording:
            self.ctx.ledger.record_population(
                f"out{state.output + 1}_pop{index + 1}",
                slot.iteration,
                population.record(options, state.dataset.variable_names),
            )

        if slot.iteration % options.migration_interval == 0:
            self._migrate(state, index)

        if options.niterations is not None and slot.iteration >= options.niterations:
            slot.status = SlotStatus.DONE
        else:
            slot.status = SlotStatus.IDLE

        self._check_output_done(state)

        if (
            self.config.checkpoint_path
            and self.steps_completed % self.config.checkpoint_interval == 0
        ):
            self.save_checkpoint()

    def _migrate(self, state: OutputState, index: int) -> None:
        """Overwrite part of one population with candidates from its siblings and the Hall of Fame."""
        options = self.options
        population = state.populations[index]
        moved = 0

        if options.migration:
            donors: List[PopMember] = []
            for j, archive in enumerate(state.best_seen):
                if j == index or archive is None:
                    continue
                donors.extend(
                    Population(archive.existing_members()).best_sub_population(options.topn)
                )
            moved += migrate(donors, population, self.ctx, options.fraction_replaced, self.rng)

        if options.hof_migration:
            frontier = state.hall_of_fame.pareto_frontier()
            moved += migrate(
                frontier, population, self.ctx, options.fraction_replaced_hof, self.rng
            )

        if moved:
            logger.debug(
                f"Output {state.output} population {index}: {moved} migrants arrived"
            )

    def _finish_output(self, state: OutputState, reason: str) -> None:
        if state.finished:
            return
        state.finished = True
        state.stop_reason = reason
        logger.info(
            f"Output {state.output} finished ({reason}): best loss {state.best_loss()}"
        )

    def _check_output_done(self, state: OutputState) -> None:
        options = self.options
        if state.finished:
            return

        if options.stop_condition is not None and any(
            options.stop_condition(m.loss)
            for m in state.hall_of_fame.existing_members()
        ):
            self._finish_output(state, "early_stop")
        elif state.generations_since_improvement > options.generations:
            self._finish_output(state, "no_improvement")
        elif all(slot.status is SlotStatus.DONE for slot in state.slots):
            self._finish_output(state, "niterations")

    def _check_budgets(self) -> Optional[str]:
        """Global stop reason, if any budget is exhausted."""
        if self._stop.is_set():
            return "cancelled"
        if self.options.max_evals is not None and self.num_evals >= self.options.max_evals:
            return "max_evals"
        if (
            self.options.timeout_in_seconds is not None
            and self.start_time is not None
            and time.time() - self.start_time > self.options.timeout_in_seconds
        ):
            return "timeout"
        return None

    # ---- main loop ----

    def _loop(self, pool: WorkerPool) -> str:
        for state in self.outputs:
            self._check_output_done(state)

        while True:
            reason = self._check_budgets()
            if reason is not None:
                break

            self._dispatch(pool)
            if pool.in_flight == 0:
                reason = "completed"
                break

            result = pool.poll_result(timeout=self.config.poll_interval)
            if result is not None:
                self._handle_result(result)

            self._log_progress()

        self._drain(pool)
        return reason

    def _drain(self, pool: WorkerPool) -> None:
        """Wait for steps already running and fold their results."""
        while pool.in_flight > 0:
            result = pool.poll_result(timeout=self.config.poll_interval)
            if result is not None:
                self._handle_result(result)

    def run(
        self,
        datasets: Union[Dataset, Sequence[Dataset]],
        stop_token: Optional[threading.Event] = None,
    ) -> SearchResult:
        """
        Run the search on one dataset per output.

        Args:
            datasets: A dataset, or one dataset per output
            stop_token: Event that cancels the search when set

        Returns:
            Hall of Fame and Pareto frontier per output
        """
        if isinstance(datasets, Dataset):
            datasets = [datasets]
        if len(datasets) == 0:
            raise ValueError("At least one dataset is required")
        if stop_token is not None:
            self._stop = stop_token

        self.running = True
        self.cancelled = False
        self.start_time = time.time()
        self._last_progress = self.start_time

        self.outputs = [self._init_output(i, d) for i, d in enumerate(datasets)]

        logger.info(
            f"Starting search: {len(self.outputs)} outputs, "
            f"{self.options.populations} populations each"
        )

        self._pool = WorkerPool(
            self.ctx,
            num_workers=self.config.num_workers,
            poll_interval=self.config.poll_interval,
            publisher=self.publisher,
        )
        self._pool.start()

        try:
            stop_reason = self._loop(self._pool)
        except KeyboardInterrupt:
            logger.info("Search interrupted by user")
            self._drain(self._pool)
            stop_reason = "cancelled"
        finally:
            self._pool.shutdown()
            self.running = False

        self.cancelled = stop_reason == "cancelled"
        elapsed = time.time() - self.start_time

        frontiers = [
            calculate_frontier_entries(s.hall_of_fame, s.dataset, self.options)
            for s in self.outputs
        ]

        if self.ctx.recording and self.options.recorder_file:
            self.ctx.ledger.export_json(self.options.recorder_file)
        if self.config.checkpoint_path:
            self.save_checkpoint()
        self._publish(frontiers)

        logger.info(
            f"Search complete ({stop_reason}): {self.steps_completed} steps, "
            f"{self.num_evals:.0f} evaluations in {elapsed:.1f}s"
        )

        return SearchResult(
            hall_of_fames=[s.hall_of_fame for s in self.outputs],
            frontiers=frontiers,
            num_evals=self.num_evals,
            iterations=[[slot.iteration for slot in s.slots] for s in self.outputs],
            elapsed_time=elapsed,
            cancelled=self.cancelled,
            stop_reason=stop_reason,
            ledger=self.ctx.ledger,
        )

    def stop(self) -> None:
        """Cancel the search at the next step boundary."""
        self._stop.set()
        logger.info("Stopping search...")

    # ---- reporting ----

    def _log_progress(self) -> None:
        now = time.time()
        if now - self._last_progress < self.config.progress_interval:
            return
        self._last_progress = now

        status = self.get_status()
        self.history.append(status)
        for output in status["outputs"]:
            logger.info(
                f"Output {output['output']}: best loss {output['best_loss']}, "
                f"{output['hof_size']} Hall of Fame entries, "
                f"{self.num_evals:.0f} evaluations, {status['elapsed_time']:.1f}s"
            )
        self._publish()

    def _publish(self, frontiers: Optional[List[List[ParetoEntry]]] = None) -> None:
        if self.publisher is None:
            return
        self.publisher.publish_status(self.get_status())
        for state in self.outputs:
            entries = (
                frontiers[state.output]
                if frontiers is not None
                else calculate_frontier_entries(state.hall_of_fame, state.dataset, self.options)
            )
            self.publisher.publish_frontier(state.output, [e.to_dict() for e in entries])

    def get_status(self) -> Dict[str, Any]:
        """Get current scheduler status."""
        elapsed = 0.0
        if self.start_time:
            elapsed = time.time() - self.start_time

        return {
            "running": self.running,
            "cancelled": self.cancelled,
            "iterations": self.steps_completed,
            "num_evals": self.num_evals,
            "elapsed_time": elapsed,
            "in_flight": self._pool.in_flight if self._pool is not None else 0,
            "worker_load": self._pool.load() if self._pool is not None else {},
            "outputs": [
                {
                    "output": s.output,
                    "finished": s.finished,
                    "stop_reason": s.stop_reason,
                    "best_loss": s.best_loss(),
                    "hof_size": len(s.hall_of_fame),
                    "generations_since_improvement": s.generations_since_improvement,
                    "iterations": [slot.iteration for slot in s.slots],
                }
                for s in self.outputs
            ],
        }

    def save_checkpoint(self, path: Optional[str] = None) -> None:
        """Save status and frontiers to a JSON checkpoint file."""
        path = path or self.config.checkpoint_path
        if path is None:
            return

        checkpoint = {
            "status": self.get_status(),
            "history": self.history,
            "options": self.options.to_dict(),
            "frontiers": [
                [
                    e.to_dict()
                    for e in calculate_frontier_entries(s.hall_of_fame, s.dataset, self.options)
                ]
                for s in self.outputs
            ],
        }

        with open(path, "w") as f:
            json.dump(checkpoint, f, indent=2, default=str)

        logger.info(f"Checkpoint saved to {path}")


def warmup_maxsize(options: SearchOptions, fraction_elapsed: float) -> int:
    """
    Complexity ceiling after a fraction of the planned steps.

    Ramps linearly from 3 to maxsize over the first warmup_maxsize_by of
    the run; without warmup the ceiling is maxsize throughout.
    """
    if options.warmup_maxsize_by <= 0 or fraction_elapsed > options.warmup_maxsize_by:
        return options.maxsize
    ramp = 3 + int((options.maxsize - 3) * fraction_elapsed / options.warmup_maxsize_by)
    return min(ramp, options.maxsize)


def load_csv(
    path: str,
    target_columns: Optional[Sequence[str]] = None,
    delimiter: str = ",",
) -> List[Dataset]:
    """
    Load a CSV file with a header row into one dataset per target column.

    The last column is the target unless target_columns names others; all
    remaining columns are features.
    """
    with open(path) as f:
        header = [name.strip() for name in f.readline().split(delimiter)]
    data = np.loadtxt(path, delimiter=delimiter, skiprows=1, ndmin=2)

    if target_columns is None:
        target_columns = [header[-1]]
    missing = [c for c in target_columns if c not in header]
    if missing:
        raise ValueError(f"Target columns not found in {path}: {missing}")

    targets = [header.index(c) for c in target_columns]
    features = [i for i in range(len(header)) if i not in targets]
    X = data[:, features]
    names = [header[i] for i in features]
    return [Dataset(X, data[:, t], variable_names=names) for t in targets]


def run_search(options: SearchOptions | None = None) -> None:
    """
    Run a search from the command line.

    This is the entry point for the symbolic-swarm command.
    """
    import argparse
    import signal

    parser = argparse.ArgumentParser(description="Evolutionary symbolic regression")
    parser.add_argument("data", help="CSV file with a header row")
    parser.add_argument("--options", default=None, help="YAML file of search options")
    parser.add_argument("--target-columns", nargs="+", default=None)
    parser.add_argument("--niterations", type=int, default=None)
    parser.add_argument("--populations", type=int, default=None)
    parser.add_argument("--max-evals", type=int, default=None)
    parser.add_argument("--timeout", type=float, default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--num-workers", type=int, default=4)
    parser.add_argument("--checkpoint-path", default=None)
    parser.add_argument("--publish-status", action="store_true")
    parser.add_argument("--redis-url", default="redis://localhost:6379")

    args = parser.parse_args()

    if options is None:
        options = SearchOptions.from_yaml(args.options) if args.options else SearchOptions()

    overrides = {
        "niterations": args.niterations,
        "populations": args.populations,
        "max_evals": args.max_evals,
        "timeout_in_seconds": args.timeout,
        "seed": args.seed,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        options = dataclasses.replace(options, **overrides)

    config = SchedulerConfig(
        num_workers=args.num_workers,
        checkpoint_path=args.checkpoint_path,
        publish_status=args.publish_status,
        redis_url=args.redis_url,
    )

    datasets = load_csv(args.data, args.target_columns)
    scheduler = SearchScheduler(options, config)

    # Handle signals for graceful shutdown
    def signal_handler(sig, frame):
        logger.info("Received shutdown signal")
        scheduler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    result = scheduler.run(datasets)

    for state, hof in zip(scheduler.outputs, result.hall_of_fames):
        if len(result.hall_of_fames) > 1:
            print(f"Output {state.output + 1}:")
        print(string_dominating_pareto_curve(hof, state.dataset, options))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_search()
