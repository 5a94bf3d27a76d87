"""
symbolic_swarm/services/

Runtime services for running a search.

Architecture:
- Scheduler: Owns populations and Hall of Fame, dispatches generation steps
- Worker: Runs generation steps on private copies of populations
- Queue: Thread-safe task and result channels
- Dashboard: Optional Redis status publishing and a read-only web monitor

The scheduler hands each idle population to the least busy worker.
Workers evolve a copy and push it back; the scheduler folds it into the
Hall of Fame, migrates candidates between populations and decides when
each output is finished.

Generation steps for different populations are independent, so they run
in parallel.
"""

from .dashboard import DashboardConfig, DashboardState, StatusPublisher
from .queue import (
    GenerationResult,
    GenerationTask,
    InMemoryTaskQueue,
    SlotStatus,
    TaskStatus,
    WorkerSlot,
)
from .scheduler import (
    SchedulerConfig,
    SearchResult,
    SearchScheduler,
    load_csv,
    warmup_maxsize,
)
from .worker import GenerationWorker, WorkerConfig, WorkerPool

__all__ = [
    "DashboardConfig",
    "DashboardState",
    "StatusPublisher",
    "GenerationResult",
    "GenerationTask",
    "InMemoryTaskQueue",
    "SlotStatus",
    "TaskStatus",
    "WorkerSlot",
    "SchedulerConfig",
    "SearchResult",
    "SearchScheduler",
    "load_csv",
    "warmup_maxsize",
    "GenerationWorker",
    "WorkerConfig",
    "WorkerPool",
]
