"""
symbolic_swarm/evolution/context.py

Shared run-wide state handed to every evolutionary operation.

- BirthOrder: source of birth stamps. Deterministic mode uses a counter,
  otherwise wall-clock ticks. Only relative order matters.
- IdSequence: unique candidate ids for the lifetime of a run.
- EvolutionContext: options + the two generators + the optional ledger.

Both generators are safe to call from concurrent generation steps.
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from .options import SearchOptions
from .recorder import RecordLedger


class BirthOrder:
    """Monotonic birth stamps for age-based replacement."""

    def __init__(self, deterministic: bool = False, start: int = 0):
        self.deterministic = deterministic
        self._lock = threading.Lock()
        self._counter = itertools.count(start)

    def __call__(self) -> int:
        if self.deterministic:
            with self._lock:
                return next(self._counter)
        return round(1e7 * time.time())

    def reset(self, start: int = 0) -> None:
        with self._lock:
            self._counter = itertools.count(start)


class IdSequence:
    """Unique, increasing candidate ids."""

    def __init__(self, start: int = 1):
        self._lock = threading.Lock()
        self._counter = itertools.count(start)

    def __call__(self) -> int:
        with self._lock:
            return next(self._counter)


@dataclass
class EvolutionContext:
    """Everything an evolutionary operation needs besides data and RNG."""
    options: SearchOptions
    birth: Optional[BirthOrder] = None
    ids: IdSequence = field(default_factory=IdSequence)
    ledger: Optional[RecordLedger] = None

    def __post_init__(self):
        if self.birth is None:
            self.birth = BirthOrder(deterministic=self.options.deterministic)

    @classmethod
    def create(cls, options: SearchOptions) -> "EvolutionContext":
        ledger = RecordLedger() if options.recorder else None
        return cls(options=options, ledger=ledger)

    @property
    def recording(self) -> bool:
        return self.ledger is not None
