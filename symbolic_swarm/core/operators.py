"""
symbolic_swarm/core/operators.py

Operator vocabulary for expression trees.

Operators form a closed enumeration: every kind carries its arity, its
printed symbol and a vectorised numpy implementation. Domain errors
(log of a negative number, division by zero, ...) produce NaN or inf
values instead of raising, so a bad candidate simply scores badly.

An OperatorSet is the validated subset of operators a search may use.
It is built once, when options are created, and rejects ambiguous or
malformed registrations up front.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Sequence

import numpy as np


class ConfigurationError(ValueError):
    """Raised when search options violate a constraint."""


def _safe_log(fn: Callable[[np.ndarray], np.ndarray], low: float = 0.0):
    def op(x: np.ndarray) -> np.ndarray:
        return np.where(x > low, fn(np.where(x > low, x, 1.0)), np.nan)
    return op


def _safe_sqrt(x: np.ndarray) -> np.ndarray:
    return np.where(x >= 0, np.sqrt(np.abs(x)), np.nan)


def _safe_acosh(x: np.ndarray) -> np.ndarray:
    return np.where(x >= 1, np.arccosh(np.where(x >= 1, x, 1.0)), np.nan)


def _safe_atanh(x: np.ndarray) -> np.ndarray:
    inside = np.abs(x) < 1
    return np.where(inside, np.arctanh(np.where(inside, x, 0.0)), np.nan)


def _safe_pow(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    # Negative bases are only defined for integer exponents.
    invalid = (x < 0) & (y != np.round(y))
    return np.where(invalid, np.nan, np.power(np.abs(x), y) * np.where(
        (x < 0) & (np.mod(np.round(y), 2) == 1), -1.0, 1.0
    ))


def _relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(x, 0.0)


@dataclass(frozen=True)
class OperatorSpec:
    """Static description of one operator kind."""
    symbol: str
    arity: int
    fn: Callable[..., np.ndarray]
    infix: bool = False


class Operator(Enum):
    """Closed set of operator kinds available to expression trees."""

    # Binary
    ADD = OperatorSpec("+", 2, np.add, infix=True)
    SUB = OperatorSpec("-", 2, np.subtract, infix=True)
    MUL = OperatorSpec("*", 2, np.multiply, infix=True)
    DIV = OperatorSpec("/", 2, np.divide, infix=True)
    POW = OperatorSpec("^", 2, _safe_pow, infix=True)
    MAX = OperatorSpec("max", 2, np.maximum)
    MIN = OperatorSpec("min", 2, np.minimum)

    # Unary
    NEG = OperatorSpec("neg", 1, np.negative)
    SQUARE = OperatorSpec("square", 1, np.square)
    CUBE = OperatorSpec("cube", 1, lambda x: x * x * x)
    EXP = OperatorSpec("exp", 1, np.exp)
    LOG = OperatorSpec("log", 1, _safe_log(np.log))
    LOG2 = OperatorSpec("log2", 1, _safe_log(np.log2))
    LOG10 = OperatorSpec("log10", 1, _safe_log(np.log10))
    LOG1P = OperatorSpec("log1p", 1, _safe_log(np.log1p, low=-1.0))
    SQRT = OperatorSpec("sqrt", 1, _safe_sqrt)
    SIN = OperatorSpec("sin", 1, np.sin)
    COS = OperatorSpec("cos", 1, np.cos)
    TAN = OperatorSpec("tan", 1, np.tan)
    TANH = OperatorSpec("tanh", 1, np.tanh)
    ABS = OperatorSpec("abs", 1, np.abs)
    ACOSH = OperatorSpec("acosh", 1, _safe_acosh)
    ATANH = OperatorSpec("atanh", 1, _safe_atanh)
    RELU = OperatorSpec("relu", 1, _relu)

    @property
    def symbol(self) -> str:
        return self.value.symbol

    @property
    def arity(self) -> int:
        return self.value.arity

    @property
    def infix(self) -> bool:
        return self.value.infix

    def __call__(self, *args: np.ndarray) -> np.ndarray:
        with np.errstate(all="ignore"):
            return self.value.fn(*args)

    @classmethod
    def lookup(cls, name: str, arity: int) -> "Operator":
        """Find an operator by symbol or enum name with the given arity."""
        for op in cls:
            if op.arity != arity:
                continue
            if name == op.symbol or name.upper() == op.name:
                return op
        kind = "binary" if arity == 2 else "unary"
        raise ConfigurationError(f"Unknown {kind} operator: {name!r}")


class OperatorSet:
    """
    Validated binary and unary operator lists.

    Trees refer to operators by their position in these lists, so the
    order is part of the set's identity.
    """

    def __init__(
        self,
        binary: Iterable[Operator | str] = ("+", "-", "*", "/"),
        unary: Iterable[Operator | str] = (),
    ):
        binary = list(binary)
        unary = list(unary)

        binary_names = {self._name(op) for op in binary}
        unary_names = {self._name(op) for op in unary}
        both = sorted(binary_names & unary_names)
        if both:
            raise ConfigurationError(
                f"Operator(s) {both} registered as both unary and binary"
            )

        self.binary: list[Operator] = [self._resolve(op, 2) for op in binary]
        self.unary: list[Operator] = [self._resolve(op, 1) for op in unary]

        for ops in (self.binary, self.unary):
            if len(set(ops)) != len(ops):
                raise ConfigurationError(
                    f"Duplicate operators in {[op.symbol for op in ops]}"
                )

        if not self.binary and not self.unary:
            raise ConfigurationError("At least one operator is required")

    @staticmethod
    def _name(op: Operator | str) -> str:
        return op.symbol if isinstance(op, Operator) else str(op)

    @staticmethod
    def _resolve(op: Operator | str, arity: int) -> Operator:
        if isinstance(op, Operator):
            if op.arity != arity:
                kind = "binary" if arity == 2 else "unary"
                raise ConfigurationError(
                    f"Operator {op.symbol!r} has arity {op.arity} "
                    f"but was registered as {kind}"
                )
            return op
        return Operator.lookup(str(op), arity)

    @property
    def nbin(self) -> int:
        return len(self.binary)

    @property
    def nuna(self) -> int:
        return len(self.unary)

    def ops_of_degree(self, degree: int) -> Sequence[Operator]:
        return self.binary if degree == 2 else self.unary

    def index(self, op: Operator) -> int:
        """Position of an operator inside its arity list."""
        return list(self.ops_of_degree(op.arity)).index(op)

    def __repr__(self) -> str:
        return (
            f"OperatorSet(binary={[op.symbol for op in self.binary]}, "
            f"unary={[op.symbol for op in self.unary]})"
        )
