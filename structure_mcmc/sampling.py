"""Sampling helpers shared by the samplers."""
from __future__ import annotations

import numpy as np


def make_rng(rng: np.random.Generator | int | None = None) -> np.random.Generator:
    """Return ``rng`` itself or a new generator seeded with it."""

    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


def sample_log_categorical(log_weights: np.ndarray, rng: np.random.Generator) -> int:
    """Draw an index with probability proportional to ``exp(log_weights)``.

    Entries equal to ``-inf`` are never drawn.
    """

    log_weights = np.asarray(log_weights, dtype=float)
    top = np.max(log_weights)
    if not np.isfinite(top):
        raise ValueError("no index with positive weight")
    weights = np.exp(log_weights - top)
    cumulative = np.cumsum(weights)
    idx = int(np.searchsorted(cumulative, rng.random() * cumulative[-1], side="right"))
    return min(idx, weights.size - 1)


def accept(log_ratio: float, rng: np.random.Generator) -> bool:
    """Metropolis-Hastings acceptance for a log acceptance ratio."""

    if log_ratio >= 0:
        return True
    if not np.isfinite(log_ratio):
        return False
    return bool(np.log(rng.random()) < log_ratio)


__all__ = ["make_rng", "sample_log_categorical", "accept"]
