"""
symbolic_swarm/services/worker.py

Generation worker service.

Workers perform the computationally expensive part of the search:
1. Pull generation tasks from their own task channel
2. Evolve a private copy of the population (evolution cycles,
   simplification, constant optimisation)
3. Push the evolved population and its best-seen archive back

A step that raises is reported as a failed result; the scheduler keeps
the population it sent and re-arms the slot.

WorkerPool runs one thread per worker and dispatches each task to the
least busy worker.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from symbolic_swarm.evolution.context import EvolutionContext
from symbolic_swarm.evolution.single_iteration import run_generation_step

from .dashboard import StatusPublisher
from .queue import GenerationResult, GenerationTask, InMemoryTaskQueue

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for generation workers."""
    # Worker identity
    worker_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    # Worker behavior
    poll_interval: float = 0.05  # Seconds to block waiting for a task
    heartbeat_interval: float = 30.0  # Seconds between heartbeats
    heartbeat_ttl: int = 60  # Redis TTL for worker heartbeat


class GenerationWorker:
    """
    Worker that runs generation steps from its task channel.

    Runs continuously, pulling tasks and pushing results.
    """

    def __init__(
        self,
        config: WorkerConfig,
        ctx: EvolutionContext,
        tasks: InMemoryTaskQueue,
        results: InMemoryTaskQueue,
        publisher: Optional[StatusPublisher] = None,
    ):
        self.config = config
        self.worker_id = config.worker_id
        self.ctx = ctx
        self.tasks = tasks
        self.results = results
        self.publisher = publisher

        # Status
        self.running = False
        self.tasks_completed = 0
        self.tasks_failed = 0
        self.last_heartbeat = time.time()

        logger.debug(f"Worker {self.worker_id} initialized")

    def execute_task(self, task: GenerationTask) -> GenerationResult:
        """
        Run a single generation step.

        Args:
            task: Generation task from the scheduler

        Returns:
            Result message to push to the result channel
        """
        start_time = time.time()

        try:
            rng = np.random.default_rng(task.seed)
            population = task.population.copy()
            outcome = run_generation_step(
                task.dataset,
                population,
                task.curmaxsize,
                task.statistics,
                self.ctx,
                rng,
            )
            return GenerationResult(
                task_id=task.task_id,
                output=task.output,
                population_index=task.population_index,
                iteration=task.iteration,
                population=outcome.population,
                best_seen=outcome.best_seen,
                num_evals=outcome.num_evals,
                worker_id=self.worker_id,
                elapsed=time.time() - start_time,
            )

        except Exception as e:
            logger.error(f"Task {task.task_id} failed: {e!r}")
            return GenerationResult(
                task_id=task.task_id,
                output=task.output,
                population_index=task.population_index,
                iteration=task.iteration,
                worker_id=self.worker_id,
                elapsed=time.time() - start_time,
                error=repr(e),
            )

    def process_one(self) -> bool:
        """
        Process a single task if available.

        Returns True if a task was processed, False if the channel was empty.
        """
        task = self.tasks.pop_task(timeout=self.config.poll_interval)
        if task is None:
            return False

        logger.debug(f"Worker {self.worker_id} processing task {task.task_id}")

        result = self.execute_task(task)
        if result.error is None:
            self.tasks_completed += 1
        else:
            self.tasks_failed += 1

        self.results.push_result(result)
        return True

    def run(self) -> None:
        """Run worker continuously until stopped."""
        self.running = True
        logger.debug(f"Worker {self.worker_id} starting")

        try:
            while self.running:
                self.process_one()

                now = time.time()
                if now - self.last_heartbeat >= self.config.heartbeat_interval:
                    logger.debug(
                        f"Worker {self.worker_id} heartbeat: "
                        f"{self.tasks_completed} completed, {self.tasks_failed} failed"
                    )
                    if self.publisher is not None:
                        self.publisher.publish_worker(self.get_status(), self.config.heartbeat_ttl)
                    self.last_heartbeat = now

        finally:
            self.running = False
            logger.debug(
                f"Worker {self.worker_id} stopped: "
                f"{self.tasks_completed} completed, {self.tasks_failed} failed"
            )

    def stop(self) -> None:
        """Stop worker gracefully (after the current task)."""
        self.running = False

    def get_status(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "running": self.running,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "queue_length": self.tasks.get_queue_length(),
            "last_heartbeat": time.time(),
        }


class WorkerPool:
    """
    Fixed set of worker threads with least-busy dispatch.

    Each worker owns a task channel; all workers share one result channel.
    """

    def __init__(
        self,
        ctx: EvolutionContext,
        num_workers: int = 4,
        poll_interval: float = 0.05,
        publisher: Optional[StatusPublisher] = None,
    ):
        if num_workers < 1:
            raise ValueError("num_workers must be >= 1")

        self.results = InMemoryTaskQueue()
        self.workers: List[GenerationWorker] = [
            GenerationWorker(
                WorkerConfig(worker_id=f"worker-{i}", poll_interval=poll_interval),
                ctx,
                InMemoryTaskQueue(),
                self.results,
                publisher,
            )
            for i in range(num_workers)
        ]
        self._in_flight: Dict[str, int] = {w.worker_id: 0 for w in self.workers}
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def start(self) -> None:
        for worker in self.workers:
            thread = threading.Thread(
                target=worker.run, name=worker.worker_id, daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {len(self.workers)} workers")

    def next_worker(self) -> GenerationWorker:
        """Worker with the fewest tasks in flight (first one on ties)."""
        with self._lock:
            return min(self.workers, key=lambda w: self._in_flight[w.worker_id])

    def submit(self, task: GenerationTask) -> str:
        """Queue a task on the least busy worker; return that worker's id."""
        worker = self.next_worker()
        with self._lock:
            self._in_flight[worker.worker_id] += 1
        worker.tasks.push_task(task)
        return worker.worker_id

    def poll_result(self, timeout: float = 0.05) -> Optional[GenerationResult]:
        result = self.results.pop_result(timeout=timeout)
        if result is not None:
            with self._lock:
                self._in_flight[result.worker_id] -= 1
        return result

    @property
    def in_flight(self) -> int:
        with self._lock:
            return sum(self._in_flight.values())

    def load(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._in_flight)

    def shutdown(self, timeout: float = 5.0) -> None:
        for worker in self.workers:
            worker.stop()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Worker pool stopped")

    def get_status(self) -> List[Dict[str, Any]]:
        return [w.get_status() for w in self.workers]
