"""Partition MCMC: Metropolis-Hastings over ordered partitions of the main nodes.

Every DAG belongs to exactly one ordered partition, obtained by layering:
the first block holds the nodes without parents among the main nodes, and
each node of a later block has all its parents in earlier blocks and at
least one in the block right before its own. Summing DAG weights per
partition therefore makes the sampled DAGs follow the posterior without
the overcounting of order MCMC.

Moves, each a Metropolis-Hastings kernel on its own:

0. swap two nodes of different blocks
1. swap two nodes of adjacent blocks
2. split a block into two consecutive blocks, or join two adjacent blocks
3. move a node into another block or into a new singleton block
4. stay
"""
from __future__ import annotations

import logging
import time
from math import log
from typing import List, Sequence

import numpy as np
from tqdm import tqdm

from .config import MCMCConfig, resolve_config
from .dag_utils import compress_dag, dag_layers, is_dag_adjmat
from .dbn import learn_dbn
from .errors import InvalidParentSet, ValidationError
from .results import Chain, PartitionResult, RunInfo
from .sampling import accept
from .score_cache import ScoreCache, ScoreTable, prepare_search
from .search_space import validate_matrix

logger = logging.getLogger(__name__)

Partition = List[List[int]]


def partition_from_dag(dag: np.ndarray, main_nodes: Sequence[int]) -> Partition:
    """Ordered partition of the main nodes a DAG belongs to."""

    return [sorted(block) for block in dag_layers(dag, main_nodes)]


def _node_blocks(partition: Partition, n: int) -> np.ndarray:
    blocks = np.full(n, -1, dtype=int)
    for i, block in enumerate(partition):
        blocks[block] = i
    return blocks


def _contexts(blocks: np.ndarray):
    before = blocks[None, :] < blocks[:, None]
    required = blocks[None, :] == (blocks[:, None] - 1)
    return before, required


def _node_score(cache: ScoreCache, node: int, blocks: np.ndarray, before, required, gamma: float) -> float:
    need = None if blocks[node] == 0 else required[node]
    return cache.node_logsum(node, before[node], gamma, need) / gamma


def split_join_size(sizes: Sequence[int]) -> int:
    """Number of partitions one split or join away."""

    return (len(sizes) - 1) + sum(2 ** int(k) - 2 for k in sizes)


def relocate_size(sizes: Sequence[int]) -> int:
    """Number of (node, destination) pairs of the node relocation move.

    A node of a block with at least two nodes can join any of the other
    ``m - 1`` blocks or open a new block in one of ``m + 1`` gaps. A
    singleton cannot reopen its own block, which leaves ``2m - 2``.
    """

    m = len(sizes)
    return sum(int(k) * (2 * m if k >= 2 else 2 * m - 2) for k in sizes)


def _swap_any(partition: Partition, rng: np.random.Generator):
    if len(partition) < 2:
        return None
    nodes = [v for block in partition for v in block]
    owner = {v: i for i, block in enumerate(partition) for v in block}
    while True:
        a, b = rng.choice(len(nodes), size=2, replace=False)
        u, v = nodes[a], nodes[b]
        if owner[u] != owner[v]:
            break
    return _swapped(partition, owner[u], u, owner[v], v)


def _swap_adjacent(partition: Partition, rng: np.random.Generator):
    if len(partition) < 2:
        return None
    sizes = np.array([len(b) for b in partition])
    weights = sizes[:-1] * sizes[1:]
    i = int(rng.choice(weights.size, p=weights / weights.sum()))
    u = partition[i][int(rng.integers(sizes[i]))]
    v = partition[i + 1][int(rng.integers(sizes[i + 1]))]
    return _swapped(partition, i, u, i + 1, v)


def _swapped(partition: Partition, i: int, u: int, j: int, v: int) -> Partition:
    new = [list(block) for block in partition]
    new[i].remove(u)
    new[j].remove(v)
    new[i] = sorted(new[i] + [v])
    new[j] = sorted(new[j] + [u])
    return new


def _split_join(partition: Partition, rng: np.random.Generator):
    sizes = [len(b) for b in partition]
    total = split_join_size(sizes)
    if total == 0:
        return None
    m = len(partition)
    weights = np.array([m - 1] + [2 ** k - 2 for k in sizes], dtype=float)
    choice = int(rng.choice(weights.size, p=weights / weights.sum()))
    new = [list(block) for block in partition]
    if choice == 0:
        j = int(rng.integers(m - 1))
        new[j: j + 2] = [sorted(new[j] + new[j + 1])]
        return new
    i = choice - 1
    block = np.asarray(partition[i])
    while True:
        first = rng.random(block.size) < 0.5
        if 0 < first.sum() < block.size:
            break
    new[i: i + 1] = [sorted(block[first].tolist()), sorted(block[~first].tolist())]
    return new


def _relocate(partition: Partition, rng: np.random.Generator):
    sizes = [len(b) for b in partition]
    if relocate_size(sizes) == 0:
        return None
    m = len(partition)
    nodes = [(i, v) for i, block in enumerate(partition) for v in block]
    weights = np.array([2 * m if sizes[i] >= 2 else 2 * m - 2 for i, _ in nodes], dtype=float)
    i, v = nodes[int(rng.choice(len(nodes), p=weights / weights.sum()))]

    rest = [list(block) for block in partition]
    rest[i].remove(v)
    singleton = not rest[i]
    if singleton:
        del rest[i]
        targets = list(range(len(rest)))
        gaps = [g for g in range(len(rest) + 1) if g != i]
    else:
        targets = [j for j in range(len(rest)) if j != i]
        gaps = list(range(len(rest) + 1))
    pick = int(rng.integers(len(targets) + len(gaps)))
    if pick < len(targets):
        j = targets[pick]
        rest[j] = sorted(rest[j] + [v])
    else:
        rest.insert(gaps[pick - len(targets)], [v])
    return rest


_PROPOSALS = (_swap_any, _swap_adjacent, _split_join, _relocate)


def _log_correction(move: int, old: Partition, new: Partition) -> float:
    if move == 2:
        return log(split_join_size([len(b) for b in old])) - log(split_join_size([len(b) for b in new]))
    if move == 3:
        return log(relocate_size([len(b) for b in old])) - log(relocate_size([len(b) for b in new]))
    return 0.0


def _sample_dag(cache: ScoreCache, blocks: np.ndarray, before, required, rng, gamma: float):
    dag = np.zeros((cache.n, cache.n), dtype=int)
    total = 0.0
    for node in cache.main_nodes:
        need = None if blocks[node] == 0 else required[node]
        parents, score = cache.node_sample(node, before[node], rng, gamma, need)
        dag[parents, node] = 1
        total += score
    return dag, total


def partition_chain(cache: ScoreCache, config: MCMCConfig, partition: Partition, chainout: bool = False) -> dict:
    """Run one partition chain over a fixed score cache."""

    rng = config.rng
    gamma = config.gamma
    n = cache.n
    main = cache.main_nodes
    blocks = _node_blocks(partition, n)
    before, required = _contexts(blocks)
    node_scores = np.zeros(n)
    for node in main:
        node_scores[node] = _node_score(cache, node, blocks, before, required, gamma)
    current = float(node_scores.sum())

    trace = np.empty(config.sample_steps)
    dags, dag_scores, partitions = [], [], []
    best = {"score": -np.inf, "dag": None}
    moves = np.arange(len(config.moveprobs))

    def record(step: int) -> None:
        trace[step] = current
        dag, score = _sample_dag(cache, blocks, before, required, rng, gamma)
        if score > best["score"]:
            best.update(score=score, dag=dag)
        if chainout:
            dags.append(compress_dag(dag) if config.compress else dag)
            dag_scores.append(score)
            partitions.append([list(b) for b in partition])

    record(0)
    for it in tqdm(range(1, config.iterations + 1), desc="partition MCMC", disable=not config.verbose, leave=False):
        move = int(rng.choice(moves, p=config.moveprobs))
        proposal = _PROPOSALS[move](partition, rng) if move < 4 else None
        if proposal is not None:
            new_blocks = _node_blocks(proposal, n)
            new_before, new_required = _contexts(new_blocks)
            changed = np.any(new_before != before, axis=1) | np.any(new_required != required, axis=1)
            changed = main[changed[main]]
            proposed = {}
            delta = 0.0
            for node in changed:
                score = _node_score(cache, node, new_blocks, new_before, new_required, gamma)
                proposed[int(node)] = score
                delta += score - node_scores[node]
            if accept(gamma * delta + _log_correction(move, partition, proposal), rng):
                partition, blocks = proposal, new_blocks
                before, required = new_before, new_required
                for node, score in proposed.items():
                    node_scores[node] = score
                current = float(node_scores.sum())
        if it % config.stepsave == 0:
            record(it // config.stepsave)

    out = {"dag": best["dag"], "score": float(best["score"]), "trace": trace}
    if chainout:
        out["chain"] = (dags, np.asarray(dag_scores), partitions)
    return out


def _start_partition(cache: ScoreCache, startdag, labels: Sequence[str]) -> Partition:
    main = cache.main_nodes
    if startdag is None:
        return [main.tolist()]
    dag = validate_matrix("startdag", startdag, cache.n)
    if not is_dag_adjmat(dag):
        raise ValidationError("startdag contains a cycle")
    for node in main:
        parents = np.flatnonzero(dag[:, node])
        try:
            cache.get(node, parents)
        except InvalidParentSet as err:
            raise ValidationError(
                f"startdag is outside the search space at node {labels[node]}: {err}"
            ) from err
    return partition_from_dag(dag, main)


def partition_mcmc(
    params,
    moveprobs: Sequence[float] | None = None,
    iterations: int | None = None,
    stepsave: int | None = None,
    gamma: float = 1.0,
    verbose: bool = False,
    scoreout: bool = False,
    compress: bool = True,
    plus1: bool = True,
    hardlimit: int | None = None,
    chainout: bool = True,
    startspace=None,
    blacklist=None,
    scoretable: ScoreTable | None = None,
    startdag=None,
    rng=None,
    n_jobs: int = 1,
) -> PartitionResult:
    """Sample DAGs from the posterior with partition MCMC.

    ``moveprobs`` holds five probabilities: swaps across blocks, swaps of
    adjacent blocks, split/join, node relocation, stay. ``startdag`` (an
    ``n x n`` DAG inside the search space) sets the starting partition; by
    default all main nodes start in one block. The chain of sampled DAGs is
    kept unless ``chainout`` is ``False``.
    """

    if getattr(params, "dbn", False):
        return learn_dbn(
            params,
            partition_mcmc,
            startspace=startspace,
            blacklist=blacklist,
            startdag=startdag,
            scoretable=scoretable,
            verbose=verbose,
            rng=rng,
            moveprobs=moveprobs,
            iterations=iterations,
            stepsave=stepsave,
            gamma=gamma,
            scoreout=False,
            compress=compress,
            plus1=plus1,
            hardlimit=hardlimit,
            chainout=chainout,
            n_jobs=n_jobs,
        )

    config = resolve_config("partition", params.nsmall, iterations, stepsave, moveprobs, gamma, verbose, compress, rng)
    start = time.time()
    space, cache, provenance = prepare_search(
        params, plus1, hardlimit, startspace, blacklist, scoretable=scoretable, n_jobs=n_jobs,
        log_level=config.log_level,
    )
    partition = _start_partition(cache, startdag, params.labels)
    logger.log(config.log_level, "partition MCMC: %d iterations, %d starting blocks", config.iterations, len(partition))
    raw = partition_chain(cache, config, partition, chainout=chainout)
    elapsed = time.time() - start
    logger.log(config.log_level, "partition MCMC finished, best sampled score %.4f", raw["score"])

    labels = params.labels
    chain = None
    if chainout:
        dags, scores, partitions = raw["chain"]
        chain = Chain(
            dags=dags,
            dag_scores=scores,
            partitions=[[[labels[v] for v in block] for block in p] for p in partitions],
        )
    info = RunInfo(
        algorithm=("plus1 " if cache.plus1 else "base ") + "partition MCMC",
        sample_type="sample",
        iterations=config.iterations,
        stepsave=config.stepsave,
        sample_steps=config.sample_steps,
        moveprobs=config.moveprobs,
        space_algorithm=provenance,
        cpu_time=elapsed,
    )
    return PartitionResult(
        dag=raw["dag"],
        score=raw["score"],
        trace=raw["trace"],
        info=info,
        labels=list(labels),
        space=space.as_int(),
        chain=chain,
        scoretable=ScoreTable(space, cache) if scoreout else None,
    )


__all__ = [
    "partition_mcmc",
    "partition_chain",
    "partition_from_dag",
    "split_join_size",
    "relocate_size",
]
