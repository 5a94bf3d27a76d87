"""
Tests for symbolic_swarm/services/

Tests queue, worker, scheduler and dashboard components.
"""

import json
import threading
import time

import pytest
import numpy as np
import fakeredis

from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.evolution.context import EvolutionContext
from symbolic_swarm.evolution.hall_of_fame import HallOfFame
from symbolic_swarm.evolution.options import SearchOptions
from symbolic_swarm.evolution.population import Population
from symbolic_swarm.evolution.single_iteration import StepOutcome, run_generation_step
from symbolic_swarm.evolution.statistics import RunningSearchStatistics
from symbolic_swarm.services.dashboard import (
    DashboardConfig,
    DashboardState,
    StatusPublisher,
    create_app,
)
from symbolic_swarm.services.queue import (
    GenerationResult,
    GenerationTask,
    InMemoryTaskQueue,
    SlotStatus,
    TaskStatus,
)
from symbolic_swarm.services.scheduler import (
    SchedulerConfig,
    SearchScheduler,
    load_csv,
    warmup_maxsize,
)
from symbolic_swarm.services.worker import GenerationWorker, WorkerConfig, WorkerPool


def make_options(**kwargs):
    defaults = dict(
        binary_operators=["+", "*"],
        populations=2,
        population_size=12,
        tournament_selection_n=4,
        ncycles_per_iteration=5,
        niterations=3,
        maxsize=12,
        crossover_probability=0.0,
        deterministic=True,
        seed=0,
    )
    defaults.update(kwargs)
    return SearchOptions(**defaults)


def linear_dataset():
    X = np.linspace(-1, 1, 25).reshape(-1, 1)
    return Dataset(X, 2 * X[:, 0] + 1)


def make_task(task_id="t1", dataset=None, population=None, statistics=None):
    return GenerationTask(
        task_id=task_id,
        output=0,
        population_index=0,
        iteration=0,
        dataset=dataset,
        population=population,
        statistics=statistics,
        curmaxsize=12,
        seed=0,
    )


def wait_for_result(pool, timeout=10.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        result = pool.poll_result(timeout=0.05)
        if result is not None:
            return result
    return None


# ==================== Queue Tests ====================

class TestInMemoryTaskQueue:
    """Tests for InMemoryTaskQueue."""

    def test_task_round_trip(self):
        """Tasks come out in order with status tracking."""
        q = InMemoryTaskQueue()
        q.push_task(make_task("a"))
        q.push_task(make_task("b"))

        assert q.get_queue_length() == 2
        assert q.get_task_status("a") == TaskStatus.PENDING
        assert q.pop_task(timeout=0.1).task_id == "a"
        assert q.get_task_status("a") == TaskStatus.IN_PROGRESS

    def test_empty_pop_returns_none(self):
        """Popping an empty channel times out with None."""
        q = InMemoryTaskQueue()
        assert q.pop_task(timeout=0.01) is None
        assert q.pop_result(timeout=0.01) is None

    def test_result_status(self):
        """Failed results mark the task failed."""
        q = InMemoryTaskQueue()
        q.push_result(GenerationResult("ok", 0, 0, 0))
        q.push_result(GenerationResult("bad", 0, 0, 0, error="boom"))

        assert q.get_task_status("ok") == TaskStatus.COMPLETED
        assert q.get_task_status("bad") == TaskStatus.FAILED
        assert q.get_result_count() == 2

    def test_clear(self):
        """Clear empties both channels."""
        q = InMemoryTaskQueue()
        q.push_task(make_task())
        q.push_result(GenerationResult("t1", 0, 0, 0))
        q.clear()
        assert q.get_queue_length() == 0
        assert q.get_result_count() == 0


# ==================== Worker Tests ====================

class TestGenerationWorker:
    """Tests for GenerationWorker."""

    def test_execute_task(self):
        """A step evolves a copy and leaves the original population untouched."""
        options = make_options()
        ctx = EvolutionContext.create(options)
        dataset = linear_dataset()
        population = Population.random(dataset, 12, ctx, np.random.default_rng(42))
        original_ids = population.ids()

        worker = GenerationWorker(WorkerConfig(), ctx, InMemoryTaskQueue(), InMemoryTaskQueue())
        result = worker.execute_task(
            make_task(dataset=dataset, population=population,
                      statistics=RunningSearchStatistics(options.maxsize))
        )

        assert result.error is None
        assert result.population.n == 12
        assert result.num_evals > 0
        assert population.ids() == original_ids

    def test_failure_becomes_result(self):
        """An exception inside a step is returned, not raised."""
        ctx = EvolutionContext.create(make_options())
        worker = GenerationWorker(WorkerConfig(), ctx, InMemoryTaskQueue(), InMemoryTaskQueue())

        result = worker.execute_task(make_task())
        assert result.error is not None
        assert result.population is None

    def test_process_one_counts(self):
        """Process one pushes a result and updates counters."""
        ctx = EvolutionContext.create(make_options())
        tasks, results = InMemoryTaskQueue(), InMemoryTaskQueue()
        worker = GenerationWorker(WorkerConfig(poll_interval=0.01), ctx, tasks, results)

        assert not worker.process_one()
        tasks.push_task(make_task())
        assert worker.process_one()
        assert worker.tasks_failed == 1
        assert results.get_result_count() == 1

    def test_status(self):
        """Status reports identity and counters."""
        ctx = EvolutionContext.create(make_options())
        worker = GenerationWorker(
            WorkerConfig(worker_id="w-test"), ctx, InMemoryTaskQueue(), InMemoryTaskQueue()
        )
        status = worker.get_status()
        assert status["worker_id"] == "w-test"
        assert status["tasks_completed"] == 0


class TestWorkerPool:
    """Tests for WorkerPool."""

    def test_least_busy_dispatch(self):
        """Tasks go to the worker with the fewest in flight."""
        ctx = EvolutionContext.create(make_options())
        pool = WorkerPool(ctx, num_workers=2)

        assigned = [pool.submit(make_task(f"t{i}")) for i in range(4)]
        assert assigned == ["worker-0", "worker-1", "worker-0", "worker-1"]
        assert pool.in_flight == 4
        assert pool.load() == {"worker-0": 2, "worker-1": 2}

    def test_poll_result_releases_worker(self):
        """Receiving a result decrements the worker's in-flight count."""
        ctx = EvolutionContext.create(make_options())
        pool = WorkerPool(ctx, num_workers=1, poll_interval=0.01)
        pool.start()
        try:
            pool.submit(make_task())
            result = wait_for_result(pool)
        finally:
            pool.shutdown()

        assert result is not None
        assert result.error is not None
        assert pool.in_flight == 0

    def test_invalid_size(self):
        """A pool needs at least one worker."""
        with pytest.raises(ValueError):
            WorkerPool(EvolutionContext.create(make_options()), num_workers=0)


# ==================== Scheduler Tests ====================

class TestSearchScheduler:
    """Tests for SearchScheduler."""

    def test_finds_linear_law(self):
        """Search recovers y = 2x + 1."""
        options = make_options(
            populations=3,
            population_size=20,
            tournament_selection_n=5,
            ncycles_per_iteration=20,
            niterations=30,
            optimizer_probability=1.0,
            early_stop_condition=1e-10,
        )
        scheduler = SearchScheduler(options, SchedulerConfig(num_workers=2))
        result = scheduler.run(linear_dataset())

        best = min(result.hall_of_fames[0].losses())
        assert best < 1e-6
        assert result.stop_reason == "completed"
        assert not result.cancelled

        losses = [e.loss for e in result.frontiers[0]]
        assert all(b < a for a, b in zip(losses, losses[1:]))

    def test_iteration_cap(self):
        """Every population runs exactly niterations steps."""
        options = make_options(niterations=2)
        result = SearchScheduler(options, SchedulerConfig(num_workers=2)).run(linear_dataset())
        assert result.iterations == [[2, 2]]
        assert result.num_evals > 0

    def test_multiple_outputs(self):
        """Outputs keep separate populations and archives."""
        options = make_options(niterations=2)
        X = np.linspace(-1, 1, 25).reshape(-1, 1)
        datasets = [Dataset(X, 2 * X[:, 0] + 1), Dataset(X, X[:, 0] * X[:, 0])]
        scheduler = SearchScheduler(options, SchedulerConfig(num_workers=2))

        result = scheduler.run(datasets)
        assert len(result.hall_of_fames) == 2
        assert len(result.frontiers) == 2

        ids = [
            {m.id for population in state.populations for m in population}
            for state in scheduler.outputs
        ]
        assert not ids[0] & ids[1]

    def test_hall_of_fame_covers_populations(self):
        """Every final population member is matched or beaten in the archive."""
        options = make_options(niterations=2)
        scheduler = SearchScheduler(options, SchedulerConfig(num_workers=2))
        result = scheduler.run(linear_dataset())
        hof = result.hall_of_fames[0]

        for population in scheduler.outputs[0].populations:
            for member in population:
                size = member.get_complexity(options)
                if np.isnan(member.loss) or not 0 <= size <= options.maxsize:
                    continue
                assert hof.exists[size]
                assert hof.members[size].loss <= member.loss

    def test_cancel_before_start(self):
        """A set stop token returns the initial archive, flagged as cancelled."""
        token = threading.Event()
        token.set()
        scheduler = SearchScheduler(make_options(), SchedulerConfig(num_workers=1))

        result = scheduler.run(linear_dataset(), stop_token=token)
        assert result.cancelled
        assert result.stop_reason == "cancelled"
        assert result.iterations == [[0, 0]]
        assert len(result.hall_of_fames[0]) > 0

    def test_cancel_while_running(self):
        """Stopping mid-run finishes in-flight steps and returns."""
        options = make_options(niterations=None, generations=10**6)
        scheduler = SearchScheduler(options, SchedulerConfig(num_workers=2))
        timer = threading.Timer(0.5, scheduler.stop)
        timer.start()
        try:
            result = scheduler.run(linear_dataset())
        finally:
            timer.cancel()

        assert result.cancelled
        assert len(result.hall_of_fames[0]) > 0

    def test_eval_budget(self):
        """The evaluation budget is enforced between steps."""
        options = make_options(niterations=None, max_evals=1)
        result = SearchScheduler(options, SchedulerConfig(num_workers=1)).run(linear_dataset())
        assert result.stop_reason == "max_evals"
        assert not result.cancelled
        assert result.iterations == [[0, 0]]

    def test_failed_step_rearms_slot(self, monkeypatch):
        """A failing step keeps the old population and is retried."""
        calls = {"n": 0}
        lock = threading.Lock()

        def flaky_step(*args, **kwargs):
            with lock:
                calls["n"] += 1
                first = calls["n"] <= 2
            if first:
                raise RuntimeError("simulated failure")
            return run_generation_step(*args, **kwargs)

        monkeypatch.setattr("symbolic_swarm.services.worker.run_generation_step", flaky_step)

        options = make_options(niterations=2)
        result = SearchScheduler(options, SchedulerConfig(num_workers=1)).run(linear_dataset())
        assert result.iterations == [[2, 2]]
        assert result.stop_reason == "completed"

    def test_persistent_failure_retires_population(self, monkeypatch):
        """A population that always fails is retired without losing its state."""
        def broken_step(*args, **kwargs):
            raise RuntimeError("always fails")

        monkeypatch.setattr("symbolic_swarm.services.worker.run_generation_step", broken_step)

        options = make_options(populations=1)
        scheduler = SearchScheduler(
            options, SchedulerConfig(num_workers=1, max_consecutive_failures=2)
        )
        result = scheduler.run(linear_dataset())

        state = scheduler.outputs[0]
        assert state.finished
        assert state.slots[0].consecutive_failures == 3
        assert result.iterations == [[0]]
        assert state.populations[0].n == options.population_size
        assert len(result.hall_of_fames[0]) > 0

    def test_ledger_export(self, tmp_path):
        """With recording on, the ledger is exported as JSON."""
        path = tmp_path / "record.json"
        options = make_options(niterations=1, recorder=True, recorder_file=str(path))
        result = SearchScheduler(options, SchedulerConfig(num_workers=2)).run(linear_dataset())

        data = json.loads(path.read_text())
        assert data["lineage"]
        assert "out1_pop1" in data["populations"]
        assert result.ledger is not None

    def test_checkpoint(self, tmp_path):
        """Checkpoint contains status and frontiers."""
        path = tmp_path / "checkpoint.json"
        options = make_options(niterations=1)
        SearchScheduler(
            options, SchedulerConfig(num_workers=1, checkpoint_path=str(path))
        ).run(linear_dataset())

        data = json.loads(path.read_text())
        assert data["status"]["iterations"] == 2
        assert data["frontiers"][0]

    def test_result_to_dict(self):
        """Search results serialise to JSON."""
        options = make_options(niterations=1)
        result = SearchScheduler(options, SchedulerConfig(num_workers=1)).run(linear_dataset())
        data = json.loads(json.dumps(result.to_dict()))
        assert data["frontiers"][0][0]["equation"]

    def test_early_stop_predicate(self):
        """A callable early stop is called with each archived loss."""
        seen = []

        def below(loss):
            seen.append(loss)
            return loss < np.inf

        options = make_options(early_stop_condition=below)
        scheduler = SearchScheduler(options, SchedulerConfig(num_workers=1))
        result = scheduler.run(linear_dataset())

        assert seen
        assert scheduler.outputs[0].stop_reason == "early_stop"
        assert result.iterations == [[0, 0]]
        assert result.stop_reason == "completed"

    def test_no_improvement_stop(self, monkeypatch):
        """An output with no archive improvement for generations steps finishes."""
        def idle_step(dataset, population, curmaxsize, statistics, ctx, rng):
            return StepOutcome(
                population=population,
                best_seen=HallOfFame(ctx.options.maxsize),
                num_evals=0.0,
            )

        monkeypatch.setattr("symbolic_swarm.services.worker.run_generation_step", idle_step)

        options = make_options(niterations=None, generations=0, migration=False, hof_migration=False)
        scheduler = SearchScheduler(options, SchedulerConfig(num_workers=1))
        result = scheduler.run(linear_dataset())

        state = scheduler.outputs[0]
        assert state.stop_reason == "no_improvement"
        assert state.generations_since_improvement >= 1
        assert result.stop_reason == "completed"
        assert not result.cancelled

    def test_timeout(self):
        """The wall-clock budget stops the run and in-flight steps are folded."""
        options = make_options(niterations=None, generations=10**6, timeout_in_seconds=0.3)
        scheduler = SearchScheduler(options, SchedulerConfig(num_workers=2))
        result = scheduler.run(linear_dataset())

        assert result.stop_reason == "timeout"
        assert not result.cancelled
        assert result.elapsed_time >= 0.3
        assert scheduler._pool.in_flight == 0
        assert all(slot.status is not SlotStatus.RUNNING for slot in scheduler.outputs[0].slots)

    def test_keyboard_interrupt_folds_in_flight(self, monkeypatch):
        """Ctrl-C cancels the run after folding the steps already dispatched."""
        options = make_options(niterations=3)
        scheduler = SearchScheduler(options, SchedulerConfig(num_workers=1))

        def interrupt():
            raise KeyboardInterrupt

        monkeypatch.setattr(scheduler, "_log_progress", interrupt)
        result = scheduler.run(linear_dataset())

        assert result.cancelled
        assert result.stop_reason == "cancelled"
        assert result.iterations == [[1, 1]]
        assert scheduler._pool.in_flight == 0
        assert not scheduler.running

    def test_warmup_ramps_maxsize(self, monkeypatch):
        """Steps see a size cap growing from 3 towards maxsize."""
        caps = []

        def recording_step(*args, **kwargs):
            caps.append(args[2])
            return run_generation_step(*args, **kwargs)

        monkeypatch.setattr("symbolic_swarm.services.worker.run_generation_step", recording_step)

        options = make_options(populations=1, niterations=4, warmup_maxsize_by=1.0)
        SearchScheduler(options, SchedulerConfig(num_workers=1)).run(linear_dataset())
        assert caps == [3, 5, 7, 9]

    def test_status_reports_worker_load(self):
        """Status includes tasks in flight per worker."""
        options = make_options(niterations=1)
        scheduler = SearchScheduler(options, SchedulerConfig(num_workers=2))
        assert scheduler.get_status()["worker_load"] == {}

        scheduler.run(linear_dataset())
        assert scheduler.get_status()["worker_load"] == {"worker-0": 0, "worker-1": 0}

    def test_empty_datasets(self):
        """At least one dataset is required."""
        with pytest.raises(ValueError):
            SearchScheduler(make_options()).run([])


class TestWarmupMaxsize:
    """Tests for warmup_maxsize."""

    def test_ramp(self):
        """The cap grows linearly from 3 and reaches maxsize at the warmup fraction."""
        options = make_options(maxsize=20, warmup_maxsize_by=0.5)
        assert warmup_maxsize(options, 0.0) == 3
        assert warmup_maxsize(options, 0.25) == 11
        assert warmup_maxsize(options, 0.5) == 20
        assert warmup_maxsize(options, 0.6) == 20

    def test_disabled(self):
        """Without warmup the cap is always maxsize."""
        options = make_options(maxsize=20)
        assert warmup_maxsize(options, 0.0) == 20


class TestLoadCsv:
    """Tests for load_csv."""

    def test_last_column_is_target(self, tmp_path):
        """By default the last column is the target."""
        path = tmp_path / "data.csv"
        path.write_text("a,b,y\n1,2,3\n4,5,9\n")

        (dataset,) = load_csv(str(path))
        assert dataset.variable_names == ["a", "b"]
        np.testing.assert_allclose(dataset.y, [3.0, 9.0])

    def test_named_targets(self, tmp_path):
        """Each named target becomes one output."""
        path = tmp_path / "data.csv"
        path.write_text("x,y1,y2\n1,2,3\n4,5,6\n")

        datasets = load_csv(str(path), ["y1", "y2"])
        assert len(datasets) == 2
        assert datasets[1].variable_names == ["x"]

    def test_missing_target(self, tmp_path):
        """Unknown target columns raise."""
        path = tmp_path / "data.csv"
        path.write_text("x,y\n1,2\n")
        with pytest.raises(ValueError, match="not found"):
            load_csv(str(path), ["z"])


# ==================== Dashboard Tests ====================

class TestStatusPublisher:
    """Tests for StatusPublisher and DashboardState."""

    def test_status_round_trip(self):
        """Published status is readable by the dashboard."""
        client = fakeredis.FakeRedis(decode_responses=True)
        publisher = StatusPublisher(client=client, history_limit=2)
        state = DashboardState("redis://unused", client=client)

        for i in range(3):
            publisher.publish_status({"running": True, "iterations": i})

        assert state.get_status()["iterations"] == 2
        history = state.get_history()
        assert [h["iterations"] for h in history] == [2, 1]

    def test_frontier_and_workers(self):
        """Frontiers and worker heartbeats are published per key."""
        client = fakeredis.FakeRedis(decode_responses=True)
        publisher = StatusPublisher(client=client)
        state = DashboardState("redis://unused", client=client)

        publisher.publish_frontier(0, [{"complexity": 1, "loss": 0.5}])
        publisher.publish_worker({"worker_id": "worker-0", "last_heartbeat": time.time()})

        assert state.get_frontier(0) == [{"complexity": 1, "loss": 0.5}]
        assert state.get_frontier(1) == []
        workers = state.get_workers()
        assert workers[0]["worker_id"] == "worker-0"
        assert "seconds_since_heartbeat" in workers[0]

    def test_unreachable_redis_is_ignored(self):
        """Publishing without a server degrades to a no-op."""
        publisher = StatusPublisher("redis://localhost:1")
        publisher.publish_status({"running": True})
        publisher.publish_frontier(0, [])

    def test_scheduler_publishes(self):
        """A search publishes its final status and frontier."""
        client = fakeredis.FakeRedis(decode_responses=True)
        options = make_options(niterations=1)
        scheduler = SearchScheduler(
            options, SchedulerConfig(num_workers=1), publisher=StatusPublisher(client=client)
        )
        scheduler.run(linear_dataset())

        state = DashboardState("redis://unused", client=client)
        assert state.get_status()["running"] is False
        assert state.get_frontier(0)


class TestDashboardApp:
    """Tests for the dashboard HTTP API."""

    def test_endpoints(self):
        """API routes return the published state."""
        testclient = pytest.importorskip("fastapi.testclient")
        client = fakeredis.FakeRedis(decode_responses=True)
        StatusPublisher(client=client).publish_status({"running": False, "iterations": 7})
        StatusPublisher(client=client).publish_frontier(0, [{"complexity": 3, "loss": 0.1}])

        app = create_app(DashboardConfig(), state=DashboardState("redis://unused", client=client))
        http = testclient.TestClient(app)

        assert http.get("/api/status").json()["iterations"] == 7
        assert http.get("/api/history").json()[0]["iterations"] == 7
        assert http.get("/api/frontier/0").json() == [{"complexity": 3, "loss": 0.1}]
        assert http.get("/api/workers").json() == []
