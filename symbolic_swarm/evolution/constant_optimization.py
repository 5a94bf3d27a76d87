"""
symbolic_swarm/evolution/constant_optimization.py

Local optimisation of the numeric constants inside a candidate.

Structure search and constant fitting are separated: mutations change the
shape of an equation, and this module tunes its constants with
scipy.optimize.minimize:
- one real constant: Newton-CG with finite-difference derivatives
- several real constants: Nelder-Mead or BFGS (configurable)
- complex constants: BFGS over the packed real and imaginary parts

The first run starts from the current constants; optimizer_nrestarts
further runs start from randomly perturbed copies, and the best run is
kept. New constants are committed only if the best run converged and the
resulting loss is not worse than before; otherwise the candidate is left
exactly as it was.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np
from scipy.optimize import OptimizeResult, minimize

from symbolic_swarm.core.dataset import Dataset
from symbolic_swarm.core.losses import eval_loss, score_func

from .context import EvolutionContext
from .member import PopMember

logger = logging.getLogger(__name__)

# BFGS status for "precision loss": no further descent is numerically possible
BFGS_PRECISION_LOSS = 2


@dataclass
class ConstantOptimizationResult:
    """Outcome of optimize_constants."""
    member: PopMember
    num_evals: float
    converged: bool


def _finite_difference_gradient(f: Callable, x: np.ndarray) -> np.ndarray:
    grad = np.zeros_like(x)
    for i in range(len(x)):
        h = 1e-6 * max(1.0, abs(x[i]))
        step = np.zeros_like(x)
        step[i] = h
        grad[i] = (f(x + step) - f(x - step)) / (2.0 * h)
    return grad


def _finite_difference_hessian(f: Callable, x: np.ndarray) -> np.ndarray:
    n = len(x)
    hess = np.zeros((n, n))
    for i in range(n):
        h = 1e-4 * max(1.0, abs(x[i]))
        step = np.zeros_like(x)
        step[i] = h
        hess[i] = (
            _finite_difference_gradient(f, x + step)
            - _finite_difference_gradient(f, x - step)
        ) / (2.0 * h)
    return 0.5 * (hess + hess.T)


def _run_optimizer(
    objective: Callable[[np.ndarray], float],
    x_start: np.ndarray,
    algorithm: str,
    iterations: int,
    tolerance: float,
) -> OptimizeResult:
    if algorithm == "Newton":
        return minimize(
            objective,
            x_start,
            method="Newton-CG",
            jac=lambda x: _finite_difference_gradient(objective, x),
            hess=lambda x: _finite_difference_hessian(objective, x),
            options={"maxiter": iterations, "xtol": tolerance},
        )
    if algorithm == "NelderMead":
        return minimize(
            objective,
            x_start,
            method="Nelder-Mead",
            options={"maxiter": iterations, "xatol": tolerance, "fatol": tolerance},
        )
    return minimize(
        objective,
        x_start,
        method="BFGS",
        options={"maxiter": iterations, "gtol": tolerance},
    )


def _converged(result: OptimizeResult, algorithm: str) -> bool:
    if not np.isfinite(result.fun):
        return False
    if result.success:
        return True
    return algorithm == "BFGS" and result.status == BFGS_PRECISION_LOSS


def optimize_constants(
    dataset: Dataset,
    member: PopMember,
    ctx: EvolutionContext,
    rng: np.random.Generator,
) -> ConstantOptimizationResult:
    """
    Tune the constants of member in place.

    Args:
        dataset: Data the loss is computed on
        member: Candidate to tune (modified only on success)
        ctx: Evolution context (options, birth order)
        rng: Source of restart perturbations

    Returns:
        ConstantOptimizationResult with the (possibly updated) member, the
        number of loss evaluations spent and whether new constants were
        committed
    """
    options = ctx.options
    x0 = member.tree.get_constants()
    nconst = len(x0)
    if nconst == 0:
        return ConstantOptimizationResult(member, 0.0, False)

    is_complex = np.iscomplexobj(x0)
    if is_complex:
        algorithm = "BFGS"
        packed_x0 = np.concatenate([x0.real, x0.imag])

        def unpack(x: np.ndarray) -> np.ndarray:
            return x[:nconst] + 1j * x[nconst:]
    else:
        algorithm = "Newton" if nconst == 1 else options.optimizer_algorithm
        packed_x0 = x0.astype(float)

        def unpack(x: np.ndarray) -> np.ndarray:
            return x

    work = member.tree.copy()
    evaluations = 0

    def objective(x: np.ndarray) -> float:
        nonlocal evaluations
        evaluations += 1
        work.set_constants(unpack(np.asarray(x)))
        loss = eval_loss(work, dataset, options)
        return loss if np.isfinite(loss) else np.inf

    best = _run_optimizer(
        objective, packed_x0, algorithm, options.optimizer_iterations, options.optimizer_tolerance
    )
    for _ in range(options.optimizer_nrestarts):
        x_start = packed_x0 * (1.0 + 0.5 * rng.standard_normal(packed_x0.shape))
        result = _run_optimizer(
            objective, x_start, algorithm, options.optimizer_iterations, options.optimizer_tolerance
        )
        if result.fun < best.fun:
            best = result

    num_evals = float(evaluations)
    if not _converged(best, algorithm):
        return ConstantOptimizationResult(member, num_evals, False)

    candidate = member.tree.copy()
    candidate.set_constants(unpack(np.asarray(best.x)))
    score, loss = score_func(dataset, candidate, options, member.get_complexity(options))
    num_evals += 1

    not_worse = np.isfinite(loss) and (np.isnan(member.loss) or loss <= member.loss)
    if not not_worse:
        return ConstantOptimizationResult(member, num_evals, False)

    member.tree = candidate
    member.score = score
    member.loss = loss
    member.birth = ctx.birth()
    return ConstantOptimizationResult(member, num_evals, True)
