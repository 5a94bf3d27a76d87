"""
symbolic_swarm/evolution/statistics.py

Running complexity frequencies for adaptive parsimony.

The scheduler counts how often each complexity appears in the
populations of an output. Crowded complexities are penalised in
tournaments and in mutation acceptance, which pushes the search to
explore sizes it has neglected. Counts decay through a sliding window
so the statistics follow the current state of the search.
"""

from __future__ import annotations

import numpy as np

# Frequency reported for complexities outside 1..maxsize
OUT_OF_RANGE_FREQUENCY = 1e-6


class RunningSearchStatistics:
    """Windowed frequency of each complexity in 1..maxsize."""

    def __init__(self, maxsize: int, window_size: int = 100_000):
        self.maxsize = maxsize
        self.window_size = window_size
        self.frequencies = np.ones(maxsize, dtype=float)
        self.normalized_frequencies = self.frequencies / self.frequencies.sum()

    def update_frequencies(self, size: int) -> None:
        if 0 < size <= self.maxsize:
            self.frequencies[size - 1] += 1

    def move_window(self, smallest_frequency_allowed: float = 1.0, max_loops: int = 1000) -> None:
        """Shrink counts evenly until they fit inside the window."""
        cur_size = self.frequencies.sum()
        if cur_size <= self.window_size:
            return

        difference = cur_size - self.window_size
        loops = 0
        while difference > 0:
            indices = np.flatnonzero(self.frequencies > smallest_frequency_allowed)
            if len(indices) == 0:
                break
            amount = min(
                difference / len(indices),
                float(np.min(self.frequencies[indices] - smallest_frequency_allowed)),
            )
            self.frequencies[indices] -= amount
            total = amount * len(indices)
            difference -= total
            loops += 1
            if loops > max_loops or total < 1e-6:
                break

    def normalize_frequencies(self) -> None:
        self.normalized_frequencies = self.frequencies / self.frequencies.sum()

    def normalized_frequency(self, size: int) -> float:
        if 0 < size <= self.maxsize:
            return float(self.normalized_frequencies[size - 1])
        return OUT_OF_RANGE_FREQUENCY

    def copy(self) -> "RunningSearchStatistics":
        stats = RunningSearchStatistics(self.maxsize, self.window_size)
        stats.frequencies = self.frequencies.copy()
        stats.normalized_frequencies = self.normalized_frequencies.copy()
        return stats
