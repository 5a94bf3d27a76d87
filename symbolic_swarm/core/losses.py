"""
symbolic_swarm/core/losses.py

Loss and score computation.

The loss is a (weighted) mean of an elementwise loss between predictions
and targets. A tree whose evaluation produces NaN or inf anywhere has a
NaN loss: it is never an error, and every comparison downstream treats
NaN as "not better".

Score = loss / baseline + parsimony * complexity
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional, Tuple, Union

import numpy as np

from .complexity import compute_complexity
from .dataset import Dataset
from .expression import Expression, eval_tree_array

if TYPE_CHECKING:
    from symbolic_swarm.evolution.options import SearchOptions

ElementwiseLoss = Callable[[np.ndarray, np.ndarray], np.ndarray]

# Scores are never normalised by less than this
MIN_BASELINE = 0.01


def l2_dist_loss(prediction: np.ndarray, target: np.ndarray) -> np.ndarray:
    return np.abs(prediction - target) ** 2


def l1_dist_loss(prediction: np.ndarray, target: np.ndarray) -> np.ndarray:
    return np.abs(prediction - target)


def log_cosh_loss(prediction: np.ndarray, target: np.ndarray) -> np.ndarray:
    diff = np.abs(prediction - target)
    # log(cosh(d)) without overflow for large d
    return diff + np.log1p(np.exp(-2.0 * diff)) - np.log(2.0)


class HuberLoss:
    """Quadratic near zero, linear beyond delta."""

    def __init__(self, delta: float = 1.0):
        self.delta = delta

    def __call__(self, prediction: np.ndarray, target: np.ndarray) -> np.ndarray:
        diff = np.abs(prediction - target)
        return np.where(
            diff <= self.delta,
            0.5 * diff ** 2,
            self.delta * (diff - 0.5 * self.delta),
        )


class LPDistLoss:
    """|prediction - target| ** p"""

    def __init__(self, p: float = 2.0):
        self.p = p

    def __call__(self, prediction: np.ndarray, target: np.ndarray) -> np.ndarray:
        return np.abs(prediction - target) ** self.p


ELEMENTWISE_LOSSES = {
    "L2DistLoss": lambda: l2_dist_loss,
    "L1DistLoss": lambda: l1_dist_loss,
    "LogCoshLoss": lambda: log_cosh_loss,
    "HuberLoss": HuberLoss,
    "LPDistLoss": LPDistLoss,
}


def get_elementwise_loss(spec: Union[str, ElementwiseLoss]) -> ElementwiseLoss:
    """Resolve a loss name (or pass a callable through)."""
    if callable(spec):
        return spec
    if spec not in ELEMENTWISE_LOSSES:
        raise ValueError(
            f"Unknown elementwise loss: {spec!r}. "
            f"Choose from {sorted(ELEMENTWISE_LOSSES)} or pass a callable"
        )
    return ELEMENTWISE_LOSSES[spec]()


def _aggregate(losses: np.ndarray, weights: Optional[np.ndarray]) -> float:
    losses = np.real(losses)
    if weights is None:
        return float(np.mean(losses))
    return float(np.sum(losses * weights) / np.sum(weights))


def _rows_loss(
    tree: Expression,
    X: np.ndarray,
    y: np.ndarray,
    weights: Optional[np.ndarray],
    options: "SearchOptions",
) -> float:
    prediction, ok = eval_tree_array(tree, X, options.operators)
    if not ok:
        return float("nan")
    with np.errstate(all="ignore"):
        loss = _aggregate(options.loss_function(prediction, y), weights)
    if not np.isfinite(loss):
        return float("nan")
    return loss


def eval_loss(tree: Expression, dataset: Dataset, options: "SearchOptions") -> float:
    """Loss of a tree on a dataset; NaN when evaluation fails."""
    return _rows_loss(tree, dataset.X, dataset.y, dataset.weights, options)


def eval_loss_batch(
    tree: Expression,
    dataset: Dataset,
    options: "SearchOptions",
    rng: np.random.Generator,
) -> float:
    """Loss on batch_size rows drawn with replacement."""
    idx = rng.integers(0, dataset.n, size=options.batch_size)
    weights = dataset.weights[idx] if dataset.weights is not None else None
    return _rows_loss(tree, dataset.X[idx], dataset.y[idx], weights, options)


def loss_to_score(
    loss: float,
    baseline: float,
    use_baseline: bool,
    complexity: int,
    parsimony: float,
) -> float:
    normalization = max(baseline, MIN_BASELINE) if use_baseline else 1.0
    return loss / normalization + parsimony * complexity


def score_func(
    dataset: Dataset,
    tree: Expression,
    options: "SearchOptions",
    complexity: Optional[int] = None,
) -> Tuple[float, float]:
    """Return (score, loss) for a tree."""
    loss = eval_loss(tree, dataset, options)
    if complexity is None:
        complexity = compute_complexity(tree, options.complexity_mapping)
    score = loss_to_score(
        loss,
        dataset.baseline_loss,
        dataset.use_baseline,
        complexity,
        options.parsimony,
    )
    return score, loss


def score_func_batch(
    dataset: Dataset,
    tree: Expression,
    options: "SearchOptions",
    rng: np.random.Generator,
    complexity: Optional[int] = None,
) -> Tuple[float, float]:
    """Return (score, loss) for a tree on a random mini-batch."""
    loss = eval_loss_batch(tree, dataset, options, rng)
    if complexity is None:
        complexity = compute_complexity(tree, options.complexity_mapping)
    score = loss_to_score(
        loss,
        dataset.baseline_loss,
        dataset.use_baseline,
        complexity,
        options.parsimony,
    )
    return score, loss


def update_baseline_loss(dataset: Dataset, options: "SearchOptions") -> None:
    """Store the loss of the constant mean predictor on the dataset."""
    prediction = np.full(dataset.n, dataset.avg_y)
    with np.errstate(all="ignore"):
        baseline = _aggregate(options.loss_function(prediction, dataset.y), dataset.weights)
    if np.isfinite(baseline):
        dataset.baseline_loss = baseline
        dataset.use_baseline = True
    else:
        dataset.baseline_loss = 1.0
        dataset.use_baseline = False
