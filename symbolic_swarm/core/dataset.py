"""
symbolic_swarm/core/dataset.py

Training data for one search output.

X is laid out row-major: (n_rows, n_features). The baseline loss (the
loss of always predicting the weighted mean of y) is used to normalise
scores, so candidates on very different targets are comparable.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np


class Dataset:
    """Feature matrix, target and optional sample weights."""

    def __init__(
        self,
        X: np.ndarray,
        y: np.ndarray,
        weights: Optional[np.ndarray] = None,
        variable_names: Optional[Sequence[str]] = None,
    ):
        X = np.asarray(X)
        y = np.asarray(y)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if X.ndim != 2:
            raise ValueError(f"X must be 2-dimensional, got shape {X.shape}")
        if y.shape != (X.shape[0],):
            raise ValueError(
                f"y must have shape ({X.shape[0]},), got {y.shape}"
            )

        self.X = X
        self.y = y
        self.n, self.nfeatures = X.shape

        if weights is not None:
            weights = np.asarray(weights, dtype=float)
            if weights.shape != y.shape:
                raise ValueError("weights must have the same shape as y")
        self.weights = weights

        if variable_names is None:
            variable_names = [f"x{i + 1}" for i in range(self.nfeatures)]
        if len(variable_names) != self.nfeatures:
            raise ValueError(
                f"Expected {self.nfeatures} variable names, got {len(variable_names)}"
            )
        self.variable_names = list(variable_names)

        if self.weighted:
            self.avg_y = np.sum(y * weights) / np.sum(weights)
        else:
            self.avg_y = np.mean(y)

        # Set by update_baseline_loss
        self.baseline_loss = 1.0
        self.use_baseline = True

    @property
    def weighted(self) -> bool:
        return self.weights is not None

    def __repr__(self) -> str:
        return f"Dataset(n={self.n}, nfeatures={self.nfeatures}, weighted={self.weighted})"
