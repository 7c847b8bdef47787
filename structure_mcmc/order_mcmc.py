"""Order MCMC: Metropolis-Hastings over topological orders of the main nodes.

Every order scores as the sum over nodes of the best (MAP mode) or the
tempered log-sum (sampling mode) of the local scores of parent sets drawn
from the node's predecessors. Background nodes precede every main node.
"""
from __future__ import annotations

import logging
import time
from typing import Dict, List, Sequence

import numpy as np
from tqdm import tqdm

from .config import MCMCConfig, resolve_config
from .dag_utils import compress_dag
from .dbn import learn_dbn
from .errors import OrderValidationError
from .results import Chain, OrderResult, RunInfo
from .sampling import accept
from .score_cache import ScoreCache, ScoreTable, prepare_search

logger = logging.getLogger(__name__)


def validate_start_order(
    startorder: Sequence | None,
    labels: Sequence[str],
    main_nodes: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """Node ids of ``startorder``; a uniformly random order when it is ``None``.

    Entries may be labels or integer ids. Anything but a permutation of the
    main nodes raises :class:`OrderValidationError` listing every offending
    label.
    """

    main_nodes = np.asarray(main_nodes, dtype=int)
    if startorder is None:
        return rng.permutation(main_nodes)

    index = {label: i for i, label in enumerate(labels)}
    main = set(main_nodes.tolist())
    ids: List[int] = []
    unexpected = []
    for entry in startorder:
        if isinstance(entry, (int, np.integer)) and not isinstance(entry, bool):
            node = int(entry)
            if node in main:
                ids.append(node)
            else:
                unexpected.append(entry)
        elif str(entry) in index and index[str(entry)] in main:
            ids.append(index[str(entry)])
        else:
            unexpected.append(entry)

    seen = set()
    duplicated = []
    for node in ids:
        if node in seen and labels[node] not in duplicated:
            duplicated.append(labels[node])
        seen.add(node)
    missing = [labels[v] for v in main_nodes if v not in seen]
    if missing or unexpected or duplicated:
        raise OrderValidationError(missing, unexpected, duplicated)
    return np.asarray(ids, dtype=int)


def _positions(order: np.ndarray, n: int) -> np.ndarray:
    positions = np.full(n, -1, dtype=int)
    positions[order] = np.arange(order.size)
    return positions


def _node_score(cache: ScoreCache, node: int, positions: np.ndarray, MAP: bool, gamma: float):
    before = positions < positions[node]
    if MAP:
        return cache.node_max(node, before)
    return None, cache.node_logsum(node, before, gamma) / gamma


def _propose(order: np.ndarray, move: int, rng: np.random.Generator):
    """New order and the slice of positions whose predecessors changed."""

    m = order.size
    new = order.copy()
    if move == 0:
        i, j = np.sort(rng.choice(m, size=2, replace=False))
        new[i], new[j] = order[j], order[i]
    elif move == 1:
        i = int(rng.integers(m - 1))
        j = i + 1
        new[i], new[j] = order[j], order[i]
    else:
        i, j = (int(x) for x in rng.choice(m, size=2, replace=False))
        node = order[i]
        new = np.insert(np.delete(order, i), j, node)
        i, j = min(i, j), max(i, j)
    return new, int(i), int(j)


def _sample_dag(cache: ScoreCache, positions: np.ndarray, rng: np.random.Generator, gamma: float):
    dag = np.zeros((cache.n, cache.n), dtype=int)
    total = 0.0
    for node in cache.main_nodes:
        parents, score = cache.node_sample(node, positions < positions[node], rng, gamma)
        dag[parents, node] = 1
        total += score
    return dag, total


def _map_dag(n: int, parents: Dict[int, np.ndarray]) -> np.ndarray:
    dag = np.zeros((n, n), dtype=int)
    for node, pa in parents.items():
        dag[pa, node] = 1
    return dag


def order_chain(
    cache: ScoreCache,
    config: MCMCConfig,
    startorder: np.ndarray,
    MAP: bool = True,
    chainout: bool = False,
) -> dict:
    """Run one order chain over a fixed score cache.

    Returns the best DAG, its score and order, the trace of order scores
    and, with ``chainout``, the retained DAGs, DAG scores and orders.
    """

    rng = config.rng
    gamma = config.gamma
    n = cache.n
    order = np.asarray(startorder, dtype=int)
    positions = _positions(order, n)
    node_scores = np.zeros(n)
    parents: Dict[int, np.ndarray] = {}
    for node in order:
        pa, node_scores[node] = _node_score(cache, node, positions, MAP, gamma)
        parents[int(node)] = pa
    current = float(node_scores.sum())

    trace = np.empty(config.sample_steps)
    dags, dag_scores, orders = [], [], []
    best = {"score": -np.inf, "dag": None, "order": order.copy()}

    def record(step: int) -> None:
        trace[step] = current
        if MAP:
            dag, score = None, current
            if chainout:
                dag = _map_dag(n, parents)
        else:
            dag, score = _sample_dag(cache, positions, rng, gamma)
            if score > best["score"]:
                best.update(score=score, dag=dag, order=order.copy())
        if chainout:
            dags.append(compress_dag(dag) if config.compress else dag)
            dag_scores.append(score)
            orders.append(order.copy())

    def track_map() -> None:
        if MAP and current > best["score"]:
            best.update(score=current, dag=parents.copy(), order=order.copy())

    track_map()
    record(0)
    moves = np.arange(len(config.moveprobs))
    m = order.size
    for it in tqdm(range(1, config.iterations + 1), desc="order MCMC", disable=not config.verbose, leave=False):
        move = int(rng.choice(moves, p=config.moveprobs))
        if move < 3 and m > 1:
            new_order, lo, hi = _propose(order, move, rng)
            new_positions = _positions(new_order, n)
            affected = new_order[lo:hi + 1]
            proposed = {}
            delta = 0.0
            for node in affected:
                pa, score = _node_score(cache, node, new_positions, MAP, gamma)
                proposed[int(node)] = (pa, score)
                delta += score - node_scores[node]
            if accept(gamma * delta, rng):
                order, positions = new_order, new_positions
                for node, (pa, score) in proposed.items():
                    node_scores[node] = score
                    parents[node] = pa
                current = float(node_scores.sum())
                track_map()
        if it % config.stepsave == 0:
            record(it // config.stepsave)

    if MAP:
        best_dag = _map_dag(n, best["dag"])
    else:
        best_dag = best["dag"]
    out = {
        "dag": best_dag,
        "score": float(best["score"]),
        "order": best["order"],
        "trace": trace,
    }
    if chainout:
        out["chain"] = (dags, np.asarray(dag_scores), orders)
    return out


def make_chain(raw, labels: Sequence[str]) -> Chain:
    dags, scores, orders = raw
    return Chain(dags=dags, dag_scores=scores, orders=[[labels[v] for v in o] for o in orders])


def order_mcmc(
    params,
    MAP: bool = True,
    plus1: bool = True,
    chainout: bool = False,
    scoreout: bool = False,
    moveprobs: Sequence[float] | None = None,
    iterations: int | None = None,
    stepsave: int | None = None,
    gamma: float = 1.0,
    hardlimit: int | None = None,
    verbose: bool = False,
    compress: bool = True,
    startspace=None,
    blacklist=None,
    startorder=None,
    scoretable: ScoreTable | None = None,
    rng=None,
    n_jobs: int = 1,
) -> OrderResult:
    """Structure learning with order MCMC.

    Parameters
    ----------
    params:
        Score configuration (see :func:`~structure_mcmc.scores.score_parameters`).
    MAP:
        Search the maximum scoring DAG (``True``) or sample DAGs from the
        posterior (``False``).
    plus1:
        Let every node take one parent outside the search space.
    moveprobs:
        Probabilities of random-pair swaps, adjacent swaps, relocations and
        staying put.
    gamma:
        Tempering exponent of the scores.
    startspace, blacklist:
        ``n x n`` 0/1 matrices; the full space when ``startspace`` is omitted.
    startorder:
        Permutation of the main nodes, as labels or ids.
    scoretable:
        Score table from an earlier run; replaces ``startspace``.
    rng:
        Seed or ``numpy.random.Generator``.
    """

    if getattr(params, "dbn", False):
        return learn_dbn(
            params,
            order_mcmc,
            startspace=startspace,
            blacklist=blacklist,
            startorder=startorder,
            scoretable=scoretable,
            verbose=verbose,
            rng=rng,
            MAP=MAP,
            plus1=plus1,
            chainout=chainout,
            scoreout=False,
            moveprobs=moveprobs,
            iterations=iterations,
            stepsave=stepsave,
            gamma=gamma,
            hardlimit=hardlimit,
            compress=compress,
            n_jobs=n_jobs,
        )

    config = resolve_config("order", params.nsmall, iterations, stepsave, moveprobs, gamma, verbose, compress, rng)
    start = time.time()
    space, cache, provenance = prepare_search(
        params, plus1, hardlimit, startspace, blacklist, scoretable=scoretable, n_jobs=n_jobs,
        log_level=config.log_level,
    )
    order = validate_start_order(startorder, params.labels, params.main_nodes, config.rng)
    logger.log(config.log_level, "order MCMC: %d iterations, MAP=%s", config.iterations, MAP)
    raw = order_chain(cache, config, order, MAP=MAP, chainout=chainout)
    elapsed = time.time() - start
    logger.log(config.log_level, "order MCMC finished, best score %.4f", raw["score"])

    labels = params.labels
    info = RunInfo(
        algorithm=("plus1 " if cache.plus1 else "base ") + "order MCMC",
        sample_type="MAP" if MAP else "sample",
        iterations=config.iterations,
        stepsave=config.stepsave,
        sample_steps=config.sample_steps,
        moveprobs=config.moveprobs,
        space_algorithm=provenance,
        cpu_time=elapsed,
        start_order=[labels[v] for v in order],
    )
    return OrderResult(
        dag=raw["dag"],
        score=raw["score"],
        order=[labels[v] for v in raw["order"]],
        trace=raw["trace"],
        info=info,
        labels=list(labels),
        space=space.as_int(),
        chain=make_chain(raw["chain"], labels) if chainout else None,
        scoretable=ScoreTable(space, cache) if scoreout else None,
    )


__all__ = ["order_mcmc", "order_chain", "validate_start_order", "make_chain"]
