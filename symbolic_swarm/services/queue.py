"""
symbolic_swarm/services/queue.py

Task and result channels between the scheduler and its workers.

The queue provides:
- Task distribution to workers (one task channel per worker)
- Result collection from workers (one shared result channel)
- Task status tracking
- Slot bookkeeping for the scheduler (which population is in flight)

Tasks carry live Python objects (populations, datasets), so the channels
are in-process and thread-safe.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.evolution.hall_of_fame import HallOfFame
from symbolic_swarm.evolution.population import Population
from symbolic_swarm.evolution.statistics import RunningSearchStatistics

logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    """Status of a generation task."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SlotStatus(Enum):
    """Scheduler-side state of one (output, population) slot."""
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"


@dataclass
class WorkerSlot:
    """Tracks one population of one output."""
    output: int
    population: int
    status: SlotStatus = SlotStatus.IDLE
    iteration: int = 0  # Completed generation steps
    consecutive_failures: int = 0
    worker_id: Optional[str] = None
    task_id: Optional[str] = None


@dataclass
class GenerationTask:
    """
    One generation step for a worker.

    Contains everything needed to evolve a population:
    - The population and its dataset
    - A snapshot of the output's complexity statistics
    - A seed for the step's random stream
    """
    task_id: str
    output: int
    population_index: int
    iteration: int
    dataset: Dataset
    population: Population
    statistics: RunningSearchStatistics
    curmaxsize: int
    seed: int
    created_at: float = field(default_factory=time.time)


@dataclass
class GenerationResult:
    """
    Result of a generation step.

    Sent from worker back to scheduler. On failure, error is set and the
    population fields are None.
    """
    task_id: str
    output: int
    population_index: int
    iteration: int
    population: Optional[Population] = None
    best_seen: Optional[HallOfFame] = None
    num_evals: float = 0.0
    worker_id: str = ""
    elapsed: float = 0.0
    completed_at: float = field(default_factory=time.time)
    error: Optional[str] = None


class InMemoryTaskQueue:
    """
    In-memory task queue.

    Thread-safe implementation using queues.
    """

    def __init__(self):
        self._task_queue: queue.Queue = queue.Queue()
        self._result_queue: queue.Queue = queue.Queue()
        self._status: Dict[str, TaskStatus] = {}
        self._lock = threading.Lock()

    def push_task(self, task: GenerationTask) -> None:
        self._task_queue.put(task)
        with self._lock:
            self._status[task.task_id] = TaskStatus.PENDING

    def pop_task(self, timeout: float = 1.0) -> Optional[GenerationTask]:
        """Pop a task; None if nothing arrived within timeout."""
        try:
            task = self._task_queue.get(timeout=timeout)
        except queue.Empty:
            return None
        with self._lock:
            self._status[task.task_id] = TaskStatus.IN_PROGRESS
        return task

    def push_result(self, result: GenerationResult) -> None:
        self._result_queue.put(result)
        with self._lock:
            status = TaskStatus.COMPLETED if result.error is None else TaskStatus.FAILED
            self._status[result.task_id] = status

    def pop_result(self, timeout: float = 1.0) -> Optional[GenerationResult]:
        """Pop a result; None if nothing arrived within timeout."""
        try:
            return self._result_queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_queue_length(self) -> int:
        return self._task_queue.qsize()

    def get_result_count(self) -> int:
        return self._result_queue.qsize()

    def clear(self) -> None:
        for q in (self._task_queue, self._result_queue):
            while True:
                try:
                    q.get_nowait()
                except queue.Empty:
                    break
        with self._lock:
            self._status.clear()

    def get_task_status(self, task_id: str) -> TaskStatus:
        with self._lock:
            return self._status.get(task_id, TaskStatus.PENDING)
