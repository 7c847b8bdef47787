"""Allowed-parent matrices restricting the structure search."""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from .errors import ValidationError

logger = logging.getLogger(__name__)


def validate_matrix(name: str, matrix, n: int) -> np.ndarray:
    """Return ``matrix`` as an ``n x n`` boolean array.

    Raises :class:`ValidationError` for non-square or wrongly sized input
    and lists every entry outside ``{0, 1}``.
    """

    arr = np.asarray(matrix)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
        raise ValidationError(f"{name} must be a square matrix, got shape {arr.shape}")
    if arr.shape[0] != n:
        raise ValidationError(f"{name} must be {n} x {n}, got {arr.shape[0]} x {arr.shape[1]}")
    if arr.dtype == bool:
        return arr.copy()
    try:
        values = arr.astype(float)
    except (TypeError, ValueError) as err:
        raise ValidationError(f"{name} must be numeric") from err
    bad = np.argwhere((values != 0) & (values != 1))
    if bad.size:
        listed = ", ".join(f"[{i}, {j}]" for i, j in bad)
        raise ValidationError(f"{name} entries must be 0 or 1; offending entries: {listed}")
    return values == 1


class SearchSpace:
    """Boolean allowed-parent matrix of a network.

    ``allowed[i, j]`` permits the edge ``i -> j``. The diagonal and the
    columns of background nodes are always ``False`` and blacklisted edges
    are removed (blacklist wins over every other input). Instances are
    immutable; expansion returns a new space.
    """

    def __init__(
        self,
        allowed: np.ndarray,
        blacklist: np.ndarray | None = None,
        hardlimit: int | None = None,
        bg_nodes: Sequence[int] = (),
    ) -> None:
        allowed = np.array(allowed, dtype=bool)
        n = allowed.shape[0]
        blacklist = np.zeros((n, n), dtype=bool) if blacklist is None else np.array(blacklist, dtype=bool)
        self._bg_nodes = tuple(sorted(int(v) for v in bg_nodes))

        allowed &= ~blacklist
        np.fill_diagonal(allowed, False)
        if self._bg_nodes:
            allowed[:, list(self._bg_nodes)] = False

        self._allowed = allowed
        self._blacklist = blacklist
        self._allowed.setflags(write=False)
        self._blacklist.setflags(write=False)
        self.hardlimit = hardlimit
        if hardlimit is not None:
            self._check_hardlimit(hardlimit)

    @classmethod
    def from_matrices(
        cls,
        n: int,
        startspace=None,
        blacklist=None,
        addspace=None,
        hardlimit: int | None = None,
        bg_nodes: Sequence[int] = (),
    ) -> "SearchSpace":
        """Combine user matrices into a space: ``(start | add) & ~blacklist``.

        A missing ``startspace`` stands for the full space of all
        off-diagonal edges.
        """

        if startspace is None:
            allowed = ~np.eye(n, dtype=bool)
        else:
            allowed = validate_matrix("startspace", startspace, n)
        if addspace is not None:
            allowed = allowed | validate_matrix("addspace", addspace, n)
        black = None if blacklist is None else validate_matrix("blacklist", blacklist, n)
        return cls(allowed, blacklist=black, hardlimit=hardlimit, bg_nodes=bg_nodes)

    def _check_hardlimit(self, hardlimit: int) -> None:
        sizes = self.n_parents()
        over = np.flatnonzero(sizes > hardlimit)
        if over.size:
            listed = ", ".join(f"{v} ({sizes[v]} parents)" for v in over)
            raise ValidationError(
                f"the search space allows more than hardlimit={hardlimit} parents for nodes {listed}; "
                "restrict the search space or increase the hardlimit"
            )

    @property
    def n(self) -> int:
        return self._allowed.shape[0]

    @property
    def allowed(self) -> np.ndarray:
        return self._allowed

    @property
    def blacklist(self) -> np.ndarray:
        return self._blacklist

    @property
    def bg_nodes(self) -> tuple:
        return self._bg_nodes

    @property
    def main_nodes(self) -> np.ndarray:
        mask = np.ones(self.n, dtype=bool)
        mask[list(self._bg_nodes)] = False
        return np.flatnonzero(mask)

    def parents(self, node: int) -> np.ndarray:
        return np.flatnonzero(self._allowed[:, node])

    def n_parents(self) -> np.ndarray:
        return self._allowed.sum(axis=0)

    def n_edges(self) -> int:
        return int(self._allowed.sum())

    def as_int(self) -> np.ndarray:
        return self._allowed.astype(int)

    def changed_nodes(self, other: "SearchSpace") -> np.ndarray:
        """Nodes whose allowed-parent column differs from ``other``."""

        return np.flatnonzero(np.any(self._allowed != other.allowed, axis=0))

    def with_edges(self, edges, hardlimit: int | None = None) -> "SearchSpace":
        """New space allowing ``edges`` in addition to the current ones."""

        extra = np.asarray(edges, dtype=bool)
        limit = self.hardlimit if hardlimit is None else hardlimit
        return SearchSpace(self._allowed | extra, self._blacklist, limit, self._bg_nodes)

    def replace(self, allowed, hardlimit: int | None = None) -> "SearchSpace":
        limit = self.hardlimit if hardlimit is None else hardlimit
        return SearchSpace(allowed, self._blacklist, limit, self._bg_nodes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SearchSpace):
            return NotImplemented
        return self.n == other.n and bool(np.array_equal(self._allowed, other.allowed))

    def __hash__(self) -> int:
        return hash(self._allowed.tobytes())

    def __repr__(self) -> str:
        return f"SearchSpace(n={self.n}, edges={self.n_edges()}, max_parents={int(self.n_parents().max(initial=0))})"


__all__ = ["SearchSpace", "validate_matrix"]
