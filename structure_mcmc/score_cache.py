"""Per-node tables of local scores over permissible parent sets.

Every main node gets a flat table indexed by a parent bitmask over its
allowed parents (bit ``i`` stands for the ``i``-th allowed parent in
ascending order). With ``plus1`` the table carries one extra row per node
outside the allowed set (and not blacklisted), holding the scores of the
base subsets joined with that single extra parent::

    row 0      : scores of subsets of the allowed parents
    row r >= 1 : scores of subsets of the allowed parents plus extras[r-1]

Entries of parent sets larger than ``hardlimit`` are ``-inf``.

Ties between equal scores are broken towards the parent set with the
smallest encoding ``sum(2**parent)``, so the empty set wins every tie.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy.special import logsumexp

from .dag_utils import parents_encoding, popcounts
from .errors import InvalidParentSet, ScoreTableMismatch
from .sampling import sample_log_categorical
from .scores import ScoreFn
from .search_space import SearchSpace, validate_matrix

logger = logging.getLogger(__name__)


@dataclass
class NodeTable:
    node: int
    parents: np.ndarray
    extras: np.ndarray
    scores: np.ndarray
    masks: np.ndarray

    def row_parents(self, row: int, mask: int) -> np.ndarray:
        bits = (np.right_shift(int(mask), np.arange(self.parents.size)) & 1).astype(bool)
        chosen = self.parents[bits]
        if row > 0:
            chosen = np.sort(np.append(chosen, self.extras[row - 1]))
        return chosen


def _key(parents: Iterable[int]) -> int:
    return sum(1 << int(p) for p in parents)


class ScoreCache:
    """Local-score tables of every main node for one :class:`SearchSpace`.

    Build with :meth:`build`; the tables never change afterwards. A cache
    for a modified space is obtained with :meth:`rebuild`, which reuses the
    tables of untouched nodes and every local score computed so far.
    """

    def __init__(
        self,
        space: SearchSpace,
        score_fn: ScoreFn,
        hardlimit: int | None,
        plus1: bool,
        tables: Dict[int, NodeTable],
        memo: Dict[int, Dict[int, float]],
    ) -> None:
        self.space = space
        self.score_fn = score_fn
        self.hardlimit = hardlimit
        self.plus1 = plus1
        self._tables = tables
        self._memo = memo

    @classmethod
    def build(
        cls,
        space: SearchSpace,
        score_fn: ScoreFn,
        hardlimit: int | None = None,
        plus1: bool = True,
        n_jobs: int = 1,
        memo: Dict[int, Dict[int, float]] | None = None,
        nodes: Iterable[int] | None = None,
        tables: Dict[int, NodeTable] | None = None,
    ) -> "ScoreCache":
        """Tabulate local scores of all permissible parent sets.

        Parameters
        ----------
        space:
            Search space the tables are built for.
        score_fn:
            Callable ``(node, parents) -> float``; a score configuration.
        hardlimit:
            Largest parent set size; defaults to ``space.hardlimit``.
        plus1:
            Add the one-extra-parent rows.
        n_jobs:
            Number of threads tabulating nodes concurrently.
        """

        limit = space.hardlimit if hardlimit is None else hardlimit
        memo = {} if memo is None else memo
        tables = {} if tables is None else dict(tables)
        cache = cls(space, score_fn, limit, plus1, tables, memo)
        todo = list(space.main_nodes) if nodes is None else [int(v) for v in nodes]
        for node in todo:
            memo.setdefault(int(node), {})

        if n_jobs > 1 and len(todo) > 1:
            # threads share the memo dict
            built = Parallel(n_jobs=n_jobs, prefer="threads")(delayed(cache._build_table)(node) for node in todo)
        else:
            built = [cache._build_table(node) for node in todo]
        for table in built:
            tables[table.node] = table
        logger.debug("tabulated %d nodes, %d local scores cached", len(todo), cache.n_scores())
        return cache

    def rebuild(self, space: SearchSpace, n_jobs: int = 1) -> "ScoreCache":
        """Cache for ``space`` sharing unchanged node tables with this one."""

        if space.n != self.space.n:
            raise ScoreTableMismatch(f"cannot rebuild a cache of {self.space.n} nodes for {space.n} nodes")
        changed = set(int(v) for v in space.changed_nodes(self.space))
        if not np.array_equal(space.blacklist, self.space.blacklist):
            changed |= set(int(v) for v in np.flatnonzero(np.any(space.blacklist != self.space.blacklist, axis=0)))
        keep = {v: t for v, t in self._tables.items() if v not in changed}
        todo = [int(v) for v in space.main_nodes if int(v) not in keep]
        return ScoreCache.build(
            space,
            self.score_fn,
            hardlimit=space.hardlimit if space.hardlimit is not None else self.hardlimit,
            plus1=self.plus1,
            n_jobs=n_jobs,
            memo=self._memo,
            nodes=todo,
            tables=keep,
        )

    def _build_table(self, node: int) -> NodeTable:
        node = int(node)
        parents = self.space.parents(node)
        if self.plus1:
            outside = ~self.space.allowed[:, node] & ~self.space.blacklist[:, node]
            outside[node] = False
            extras = np.flatnonzero(outside)
        else:
            extras = np.zeros(0, dtype=int)
        k = parents.size
        sizes = popcounts(k)
        masks = np.arange(1 << k, dtype=np.int64)
        scores = np.full((1 + extras.size, 1 << k), -np.inf)
        limit = self.hardlimit
        for mask in masks:
            size = sizes[mask]
            if limit is not None and size > limit:
                continue
            base = parents[((int(mask) >> np.arange(k)) & 1).astype(bool)]
            scores[0, mask] = self.local(node, base)
            if limit is not None and size + 1 > limit:
                continue
            for row, extra in enumerate(extras, start=1):
                scores[row, mask] = self.local(node, np.sort(np.append(base, extra)))
        return NodeTable(node=node, parents=parents, extras=extras, scores=scores, masks=masks)

    def local(self, node: int, parents: np.ndarray) -> float:
        """Raw local score, computed once per distinct ``(node, parents)``."""

        memo = self._memo.setdefault(int(node), {})
        key = _key(parents)
        try:
            return memo[key]
        except KeyError:
            value = float(self.score_fn(int(node), np.asarray(parents, dtype=int)))
            memo[key] = value
            return value

    @property
    def n(self) -> int:
        return self.space.n

    @property
    def main_nodes(self) -> np.ndarray:
        return self.space.main_nodes

    def table(self, node: int) -> NodeTable:
        return self._tables[int(node)]

    def n_scores(self) -> int:
        return sum(len(m) for m in self._memo.values())

    def get(self, node: int, subset: Iterable[int]) -> float:
        """Cached local score of ``subset`` as parents of ``node``.

        Raises :class:`InvalidParentSet` unless the subset lies within the
        allowed parents (plus at most one extra parent with ``plus1``) and
        respects the hardlimit.
        """

        node = int(node)
        subset = sorted(set(int(p) for p in subset))
        table = self._tables.get(node)
        if table is None:
            raise InvalidParentSet(node, subset, "node is not a main node of the search space")
        if node in subset:
            raise InvalidParentSet(node, subset, "a node cannot be its own parent")
        if self.hardlimit is not None and len(subset) > self.hardlimit:
            raise InvalidParentSet(node, subset, f"more than hardlimit={self.hardlimit} parents")
        allowed = set(int(p) for p in table.parents)
        outside = [p for p in subset if p not in allowed]
        row = 0
        if outside:
            if len(outside) > 1 or outside[0] not in set(int(e) for e in table.extras):
                raise InvalidParentSet(node, subset, f"parents {outside} are not allowed by the search space")
            row = 1 + int(np.flatnonzero(table.extras == outside[0])[0])
        mask = parents_encoding(np.isin(table.parents, subset))
        return float(table.scores[row, mask])

    def best(self, node: int, candidates: Iterable[int]) -> Tuple[Tuple[int, ...], float]:
        """Highest scoring permissible parent set within ``candidates``."""

        before = np.zeros(self.n, dtype=bool)
        before[[int(c) for c in candidates]] = True
        before[int(node)] = False
        parents, score = self.node_max(node, before)
        return tuple(int(p) for p in parents), score

    def _candidates(self, node: int, before: np.ndarray, required: np.ndarray | None = None):
        table = self._tables[int(node)]
        local_before = parents_encoding(before[table.parents])
        valid = (table.masks & ~local_before) == 0
        rows = np.concatenate(([0], 1 + np.flatnonzero(before[table.extras])))
        if required is None:
            usable = np.broadcast_to(valid, (rows.size, valid.size))
        else:
            local_required = parents_encoding(required[table.parents])
            hit = valid & ((table.masks & local_required) != 0)
            need_hit = np.ones(rows.size, dtype=bool)
            need_hit[1:] = ~required[table.extras[rows[1:] - 1]]
            usable = np.where(need_hit[:, None], hit[None, :], valid[None, :])
        return table, rows, usable

    def node_max(self, node: int, before: np.ndarray) -> Tuple[np.ndarray, float]:
        """Best parent set of ``node`` among nodes flagged in ``before``."""

        table, rows, usable = self._candidates(node, before)
        block = np.where(usable, table.scores[rows], -np.inf)
        row_best = block.max(axis=1)
        top = row_best.max()
        winners = np.flatnonzero(row_best == top)
        choices = []
        for r in winners:
            mask = int(np.argmax(block[r]))
            choices.append(table.row_parents(int(rows[r]), mask))
        if len(choices) > 1:
            choices.sort(key=_key)
        return choices[0], float(top)

    def node_logsum(
        self,
        node: int,
        before: np.ndarray,
        gamma: float = 1.0,
        required: np.ndarray | None = None,
    ) -> float:
        """``log sum exp(gamma * score)`` over the admissible parent sets.

        With ``required`` only parent sets containing at least one flagged
        node count.
        """

        table, rows, usable = self._candidates(node, before, required)
        values = table.scores[rows][usable]
        if values.size == 0:
            return -np.inf
        return float(logsumexp(gamma * values))

    def node_sample(
        self,
        node: int,
        before: np.ndarray,
        rng: np.random.Generator,
        gamma: float = 1.0,
        required: np.ndarray | None = None,
    ) -> Tuple[np.ndarray, float]:
        """Draw a parent set with probability proportional to ``exp(gamma * score)``."""

        table, rows, usable = self._candidates(node, before, required)
        row_idx, mask_idx = np.nonzero(usable)
        values = table.scores[rows[row_idx], mask_idx]
        pick = sample_log_categorical(gamma * values, rng)
        parents = table.row_parents(int(rows[row_idx[pick]]), int(mask_idx[pick]))
        return parents, float(values[pick])

    def dag_score(self, dag: np.ndarray) -> float:
        """Score of a DAG in the permissible family, read from the tables."""

        dag = np.asarray(dag)
        return float(sum(self.get(v, np.flatnonzero(dag[:, v])) for v in self.main_nodes))


@dataclass(frozen=True)
class ScoreTable:
    """Search space and the score cache built for it, to be reused in a later run."""

    space: SearchSpace
    cache: ScoreCache

    def __post_init__(self) -> None:
        if self.cache.space != self.space:
            raise ScoreTableMismatch("score cache was built for a different search space")


def check_score_table(
    table: ScoreTable,
    n: int,
    startspace: np.ndarray | None = None,
    blacklist: np.ndarray | None = None,
    bg_nodes: Iterable[int] = (),
    plus1: bool | None = None,
    hardlimit: int | None = None,
) -> None:
    """Refuse a score table that disagrees with the settings of the run.

    ``plus1`` and ``hardlimit`` are only compared when given.
    """

    problems: List[str] = []
    if plus1 is not None and bool(plus1) != table.cache.plus1:
        problems.append(f"table was built with plus1={table.cache.plus1}, run asks for plus1={bool(plus1)}")
    if hardlimit is not None and hardlimit != table.cache.hardlimit:
        problems.append(f"table was built with hardlimit={table.cache.hardlimit}, run asks for {hardlimit}")
    if table.space.n != n:
        problems.append(f"table covers {table.space.n} nodes, configuration has {n}")
    else:
        bg = tuple(sorted(int(v) for v in bg_nodes))
        if bg != table.space.bg_nodes:
            problems.append(f"table has background nodes {list(table.space.bg_nodes)}, configuration has {list(bg)}")
        if startspace is not None:
            requested = validate_matrix("startspace", startspace, n)
            expected = SearchSpace(requested, table.space.blacklist, bg_nodes=table.space.bg_nodes)
            if expected != table.space:
                diff = np.argwhere(expected.allowed != table.space.allowed)
                listed = ", ".join(f"{i}->{j}" for i, j in diff[:20])
                problems.append(f"startspace differs from the table's search space at edges {listed}")
        if blacklist is not None:
            clash = np.argwhere(validate_matrix("blacklist", blacklist, n) & table.space.allowed)
            if clash.size:
                listed = ", ".join(f"{i}->{j}" for i, j in clash[:20])
                problems.append(f"table's search space allows blacklisted edges {listed}")
    if problems:
        raise ScoreTableMismatch("; ".join(problems))


def prepare_search(
    params,
    plus1: bool,
    hardlimit: int | None,
    startspace=None,
    blacklist=None,
    addspace=None,
    scoretable: ScoreTable | None = None,
    n_jobs: int = 1,
    log_level: int = logging.DEBUG,
) -> Tuple[SearchSpace, ScoreCache, str]:
    """Search space, score cache and the provenance label of the space.

    A missing ``hardlimit`` is taken from ``scoretable`` when one is given,
    otherwise it is 14 with plus1 and 20 without.
    """

    if scoretable is not None:
        check_score_table(
            scoretable, params.n, startspace, blacklist,
            bg_nodes=params.bg_nodes, plus1=plus1, hardlimit=hardlimit,
        )
        if hardlimit is None:
            logger.log(log_level, "using the score table's hardlimit=%d", scoretable.cache.hardlimit)
        logger.log(log_level, "using the supplied score table, %s", scoretable.space)
        return scoretable.space, scoretable.cache, "score table"

    if hardlimit is None:
        hardlimit = 14 if plus1 else 20
    space = SearchSpace.from_matrices(params.n, startspace, blacklist, addspace, hardlimit, params.bg_nodes)
    provenance = "full space" if startspace is None else "user defined matrix"
    logger.log(log_level, "search space (%s): %s", provenance, space)
    cache = ScoreCache.build(space, params, hardlimit=hardlimit, plus1=plus1, n_jobs=n_jobs)
    logger.log(log_level, "score tables ready, %d local scores computed", cache.n_scores())
    return space, cache, provenance


__all__ = ["NodeTable", "ScoreCache", "ScoreTable", "check_score_table", "prepare_search"]
