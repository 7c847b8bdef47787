"""Utility helpers for working with adjacency matrices of DAGs.

Convention throughout the package: ``W[i, j] == 1`` encodes the edge
``i -> j``, so column ``j`` lists the parents of node ``j``.

``is_dag_adjmat``
    Check whether a binary adjacency matrix encodes a DAG.
``parents_encoding`` / ``parents_decoding``
    Map between inclusion vectors over a node's allowed parents and the
    integer bitmask used to index score tables.
``skeleton`` / ``dag_to_cpdag``
    Undirected skeleton and completed partially directed graph of a DAG.
"""
from __future__ import annotations

from typing import List, Sequence

import numpy as np
from scipy import sparse


def is_dag_adjmat(W: np.ndarray) -> bool:
    """Return ``True`` iff ``W`` encodes a directed acyclic graph."""

    remaining = (np.asarray(W) != 0).astype(int)
    if np.any(np.diag(remaining)):
        return False
    while remaining.shape[0] > 1:
        num_precedent = remaining.sum(axis=0)
        sources = num_precedent == 0
        if not np.any(sources):
            return False
        keep = ~sources
        remaining = remaining[np.ix_(keep, keep)]
    return True


def parents_encoding(included: np.ndarray) -> int:
    """Bitmask of a 0/1 inclusion vector; bit ``i`` is entry ``i``."""

    included = np.asarray(included, dtype=np.int64)
    powers = np.left_shift(1, np.arange(included.size, dtype=np.int64))
    return int(included.dot(powers))


def parents_decoding(k: int, mask: int) -> np.ndarray:
    """Inverse of :func:`parents_encoding` for a vector of length ``k``."""

    return (np.right_shift(int(mask), np.arange(k)) & 1).astype(int)


def popcounts(k: int) -> np.ndarray:
    """Number of set bits of every mask ``0 .. 2**k - 1``."""

    masks = np.arange(1 << k, dtype=np.int64)
    counts = np.zeros(masks.size, dtype=np.int64)
    for bit in range(k):
        counts += (masks >> bit) & 1
    return counts


def skeleton(W: np.ndarray) -> np.ndarray:
    """Symmetric 0/1 matrix with an entry for every adjacency of ``W``."""

    W = np.asarray(W) != 0
    return (W | W.T).astype(int)


def dag_to_cpdag(W: np.ndarray) -> np.ndarray:
    """Return the CPDAG of the Markov equivalence class of ``W``.

    Directed edges keep a single entry, reversible edges are returned with
    both ``[i, j]`` and ``[j, i]`` set. Compelled edges are the v-structures
    of ``W`` closed under Meek's rules 1-3.
    """

    dag = np.asarray(W) != 0
    d = dag.shape[0]
    adj = dag | dag.T
    directed = np.zeros((d, d), dtype=bool)

    for child in range(d):
        parents = np.flatnonzero(dag[:, child])
        for a_idx, a in enumerate(parents):
            for b in parents[a_idx + 1:]:
                if not adj[a, b]:
                    directed[a, child] = True
                    directed[b, child] = True

    undirected = adj & ~directed & ~directed.T
    changed = True
    while changed:
        changed = False
        for a, b in zip(*np.nonzero(np.triu(undirected))):
            for x, y in ((a, b), (b, a)):
                if not undirected[x, y]:
                    continue
                if _meek_orients(x, y, adj, directed, undirected):
                    directed[x, y] = True
                    undirected[x, y] = undirected[y, x] = False
                    changed = True

    return (directed | undirected).astype(int)


def _meek_orients(x: int, y: int, adj: np.ndarray, directed: np.ndarray, undirected: np.ndarray) -> bool:
    # rule 1: z -> x - y, z and y not adjacent
    into_x = np.flatnonzero(directed[:, x])
    if np.any(~adj[into_x, y]):
        return True
    # rule 2: x -> z -> y
    if np.any(directed[x, :] & directed[:, y]):
        return True
    # rule 3: x - z1 -> y, x - z2 -> y, z1 and z2 not adjacent
    mids = np.flatnonzero(undirected[x, :] & directed[:, y])
    for i, z1 in enumerate(mids):
        for z2 in mids[i + 1:]:
            if not adj[z1, z2]:
                return True
    return False


def dag_layers(W: np.ndarray, nodes: Sequence[int]) -> List[List[int]]:
    """Split ``nodes`` into topological layers of the subgraph they induce.

    The first layer holds the nodes without parents among ``nodes``, every
    later layer the nodes all of whose parents lie in earlier layers.
    """

    nodes = [int(v) for v in nodes]
    sub = (np.asarray(W)[np.ix_(nodes, nodes)] != 0)
    placed = np.zeros(len(nodes), dtype=bool)
    layers: List[List[int]] = []
    while not placed.all():
        ready = ~placed & ~np.any(sub[~placed, :], axis=0)
        if not np.any(ready):
            raise ValueError("graph contains a cycle")
        layers.append([nodes[i] for i in np.flatnonzero(ready)])
        placed |= ready
    return layers


def compress_dag(W: np.ndarray) -> sparse.csr_matrix:
    """Sparse copy of an adjacency matrix for chain storage."""

    return sparse.csr_matrix(np.asarray(W, dtype=np.int8))


def to_dense(W) -> np.ndarray:
    if sparse.issparse(W):
        return W.toarray().astype(int)
    return np.asarray(W, dtype=int)


__all__ = [
    "is_dag_adjmat",
    "parents_encoding",
    "parents_decoding",
    "popcounts",
    "skeleton",
    "dag_to_cpdag",
    "dag_layers",
    "compress_dag",
    "to_dense",
]
