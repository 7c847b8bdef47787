"""Run configuration shared by the samplers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from math import log
from typing import Sequence, Tuple

import numpy as np

from .errors import ValidationError
from .sampling import make_rng


@dataclass
class MCMCConfig:
    """Resolved settings of one sampler run."""

    iterations: int
    stepsave: int
    moveprobs: Tuple[float, ...]
    gamma: float = 1.0
    verbose: bool = False
    compress: bool = True
    rng: np.random.Generator = field(default_factory=np.random.default_rng)

    @property
    def log_level(self) -> int:
        return logging.INFO if self.verbose else logging.DEBUG

    @property
    def sample_steps(self) -> int:
        return self.iterations // self.stepsave + 1


def _round_down(value: float) -> int:
    return int(value - value % 1000)


def default_iterations(algorithm: str, nsmall: int) -> int:
    if algorithm == "order":
        return 30000 if nsmall < 26 else _round_down(6 * nsmall * nsmall * log(nsmall))
    if algorithm == "partition":
        return 20000 if nsmall < 20 else _round_down(20 * nsmall * nsmall * log(nsmall))
    if algorithm == "iterative":
        return 25000 if nsmall < 26 else _round_down(3.5 * nsmall * nsmall * log(nsmall))
    raise ValueError(f"unknown algorithm {algorithm!r}")


def _shrink(percent: float, nsmall: int) -> float:
    if nsmall > 3:
        percent = round(6 * percent * nsmall / (nsmall * nsmall + 10 * nsmall - 24))
    return percent / 100


def default_order_moveprobs(nsmall: int) -> Tuple[float, ...]:
    """Random-pair swap, adjacent swap, relocation and stay probabilities."""

    prob1 = _shrink(99, nsmall)
    probs = np.array([prob1, 0.99 - prob1, 0.01])
    probs = probs / probs.sum()
    return (float(probs[0]), float(probs[1]), 0.0, float(probs[2]))


def default_partition_moveprobs(nsmall: int) -> Tuple[float, ...]:
    """Probabilities of the five partition moves.

    Node swaps across blocks, swaps of adjacent blocks, split/join, node
    relocation and stay.
    """

    prob1start = 0.40
    prob2start = 0.99 - prob1start
    prob1 = _shrink(prob1start * 100, nsmall)
    prob2 = _shrink(prob2start * 100, nsmall)
    probs = np.array([prob1, prob1start - prob1, prob2start - prob2, prob2, 0.01])
    return tuple(float(p) for p in probs / probs.sum())


def _check_moveprobs(moveprobs: Sequence[float], size: int) -> Tuple[float, ...]:
    probs = np.asarray(moveprobs, dtype=float)
    if probs.ndim != 1 or probs.size != size:
        raise ValidationError(f"moveprobs must hold {size} probabilities, got {probs.size}")
    if np.any(probs < 0) or not np.isclose(probs.sum(), 1.0):
        raise ValidationError(f"moveprobs must be non-negative and sum to 1, got {list(probs)}")
    return tuple(float(p) for p in probs)


def resolve_config(
    algorithm: str,
    nsmall: int,
    iterations: int | None = None,
    stepsave: int | None = None,
    moveprobs: Sequence[float] | None = None,
    gamma: float = 1.0,
    verbose: bool = False,
    compress: bool = True,
    rng=None,
) -> MCMCConfig:
    """Fill in the defaults of ``algorithm`` ("order", "partition" or
    "iterative") for a network of ``nsmall`` main nodes and validate the
    user-supplied values."""

    if iterations is None:
        iterations = default_iterations(algorithm, nsmall)
    if int(iterations) != iterations or iterations < 0:
        raise ValidationError(f"iterations must be a non-negative integer, got {iterations}")
    iterations = int(iterations)
    if stepsave is None:
        stepsave = max(1, iterations // 1000)
    if int(stepsave) != stepsave or stepsave < 1:
        raise ValidationError(f"stepsave must be a positive integer, got {stepsave}")

    if algorithm == "partition":
        moveprobs = default_partition_moveprobs(nsmall) if moveprobs is None else _check_moveprobs(moveprobs, 5)
    else:
        moveprobs = default_order_moveprobs(nsmall) if moveprobs is None else _check_moveprobs(moveprobs, 4)
    if not gamma > 0:
        raise ValidationError(f"gamma must be positive, got {gamma}")

    return MCMCConfig(
        iterations=iterations,
        stepsave=int(stepsave),
        moveprobs=tuple(moveprobs),
        gamma=float(gamma),
        verbose=bool(verbose),
        compress=bool(compress),
        rng=make_rng(rng),
    )


__all__ = [
    "MCMCConfig",
    "default_iterations",
    "default_order_moveprobs",
    "default_partition_moveprobs",
    "resolve_config",
]
