"""Dynamic Bayesian networks: slice layouts and per-slice structure learning.

A DBN is learnt one slice configuration at a time (initial slice first,
then the transition slices) and the independent results are merged into a
compact adjacency matrix laid out as ``[static | slice 1 | slice 2 | ...]``.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from functools import reduce
from typing import Callable, List, Sequence

import numpy as np
from scipy import sparse

from .dag_utils import compress_dag, to_dense
from .errors import ConfigurationError, OrderValidationError
from .results import Chain, IterativeResult, OrderResult, PartitionResult, Result, with_info
from .sampling import make_rng
from .scores import DBNScoreParameters, dag_score

logger = logging.getLogger(__name__)


def slice_maps(dbn_params: DBNScoreParameters) -> List[np.ndarray]:
    """Compact index of every node of every slice configuration.

    Entry ``i`` of map ``k`` is the position in the compact matrix of node
    ``i`` of configuration ``k``.
    """

    nsmall, bgn = dbn_params.nsmall, dbn_params.bgn
    own = np.arange(nsmall)
    static = np.arange(bgn)
    maps = [np.concatenate([bgn + own, static])]
    for k in range(1, len(dbn_params.slice_params)):
        maps.append(np.concatenate([bgn + k * nsmall + own, bgn + (k - 1) * nsmall + own, static]))
    return maps


def _check_compact(matrix, dbn_params: DBNScoreParameters, name: str = "matrix") -> np.ndarray:
    matrix = np.asarray(matrix)
    size = dbn_params.n_compact
    if matrix.ndim != 2 or matrix.shape != (size, size):
        raise ConfigurationError(
            f"{name} of shape {matrix.shape} does not fit the DBN layout; expected {size} x {size} "
            f"({dbn_params.bgn} static nodes and {len(dbn_params.slice_params)} slices of {dbn_params.nsmall} nodes)"
        )
    return matrix


def dbn_backtransform(matrix, dbn_params: DBNScoreParameters) -> List[np.ndarray]:
    """Split a compact matrix into one matrix per slice configuration.

    Columns of nodes that configuration ``k`` does not learn are zeroed.
    """

    matrix = _check_compact(matrix, dbn_params)
    out = []
    for m in slice_maps(dbn_params):
        part = np.array(matrix[np.ix_(m, m)])
        part[:, dbn_params.nsmall:] = 0
        out.append(part)
    return out


def _embed(matrix, k: int, dbn_params: DBNScoreParameters) -> np.ndarray:
    m = slice_maps(dbn_params)[k]
    nsmall = dbn_params.nsmall
    out = np.zeros((dbn_params.n_compact, dbn_params.n_compact), dtype=int)
    out[np.ix_(m, m[:nsmall])] = to_dense(matrix)[:, :nsmall]
    return out


def dbn_transform(matrices: Sequence, dbn_params: DBNScoreParameters) -> np.ndarray:
    """Inverse of :func:`dbn_backtransform`."""

    if len(matrices) != len(dbn_params.slice_params):
        raise ConfigurationError(
            f"expected {len(dbn_params.slice_params)} slice matrices, got {len(matrices)}"
        )
    return sum(_embed(mat, k, dbn_params) for k, mat in enumerate(matrices))


def dbn_score(dbn_params: DBNScoreParameters, incidence) -> float:
    """Score of a compact DBN adjacency matrix.

    The sum over slice configurations of the scores of their slices of the
    matrix.
    """

    if not isinstance(dbn_params, DBNScoreParameters):
        raise ConfigurationError("dbn_score needs DBN score parameters; use dag_score otherwise")
    parts = dbn_backtransform(_check_compact(incidence, dbn_params, "adjacency matrix"), dbn_params)
    return float(sum(dag_score(params, part) for params, part in zip(dbn_params.slice_params, parts)))


def _slice_input(value, k: int, dbn_params: DBNScoreParameters, name: str):
    if value is None:
        return None
    if isinstance(value, dict):
        unknown = set(value) - {"init", "trans"}
        if unknown:
            raise ConfigurationError(f"{name} keys must be 'init' and 'trans', got {sorted(unknown)}")
        return value.get("init" if k == 0 else "trans")
    if name == "startorder":
        raise ConfigurationError("a DBN startorder must be a dict with 'init' and 'trans' orders")
    return dbn_backtransform(_check_compact(value, dbn_params, name), dbn_params)[k]


def _embed_labels(items, k, source_labels, dbn_params):
    m = slice_maps(dbn_params)[k]
    index = {label: i for i, label in enumerate(source_labels)}
    return [dbn_params.labels[m[index[label]]] for label in items]


def _embed_dag(dag, k, dbn_params):
    out = _embed(dag, k, dbn_params)
    return compress_dag(out) if sparse.issparse(dag) else out


def _embed_chain(chain: Chain | None, k: int, source_labels, dbn_params) -> Chain | None:
    if chain is None:
        return None
    orders = None
    if chain.orders is not None:
        orders = [_embed_labels(order, k, source_labels, dbn_params) for order in chain.orders]
    partitions = None
    if chain.partitions is not None:
        partitions = [
            [_embed_labels(block, k, source_labels, dbn_params) for block in partition]
            for partition in chain.partitions
        ]
    return Chain(
        dags=[_embed_dag(dag, k, dbn_params) for dag in chain.dags],
        dag_scores=np.asarray(chain.dag_scores, dtype=float),
        orders=orders,
        partitions=partitions,
    )


def embed_result(result: Result, k: int, dbn_params: DBNScoreParameters) -> Result:
    """Move a per-slice result into the compact DBN layout."""

    source = result.labels
    changes = dict(
        dag=_embed(result.dag, k, dbn_params),
        space=_embed(result.space, k, dbn_params),
        labels=list(dbn_params.labels),
        scoretable=None,
    )
    if isinstance(result, IterativeResult):
        changes["startspace"] = _embed(result.startspace, k, dbn_params)
        changes["chain"] = None if result.chain is None else [
            _embed_chain(c, k, source, dbn_params) for c in result.chain
        ]
    else:
        changes["chain"] = _embed_chain(result.chain, k, source, dbn_params)
    if isinstance(result, (OrderResult, IterativeResult)):
        changes["order"] = _embed_labels(result.order, k, source, dbn_params)
    return replace(result, **changes)


def _pad(items: list, size: int) -> list:
    return list(items) + [items[-1]] * (size - len(items))


def _add_traces(a, b) -> np.ndarray:
    a, b = np.asarray(a, dtype=float), np.asarray(b, dtype=float)
    size = max(a.size, b.size)
    if a.size < size:
        a = np.append(a, np.full(size - a.size, a[-1]))
    if b.size < size:
        b = np.append(b, np.full(size - b.size, b[-1]))
    return a + b


def _merge_chains(a: Chain | None, b: Chain | None) -> Chain | None:
    if a is None or b is None:
        return None
    steps = max(len(a.dags), len(b.dags))
    dags_a, dags_b = _pad(a.dags, steps), _pad(b.dags, steps)
    orders = None
    if a.orders is not None and b.orders is not None:
        orders = [x + y for x, y in zip(_pad(a.orders, steps), _pad(b.orders, steps))]
    partitions = None
    if a.partitions is not None and b.partitions is not None:
        partitions = [x + y for x, y in zip(_pad(a.partitions, steps), _pad(b.partitions, steps))]
    return Chain(
        dags=[x + y for x, y in zip(dags_a, dags_b)],
        dag_scores=_add_traces(a.dag_scores, b.dag_scores),
        orders=orders,
        partitions=partitions,
    )


def merge_dbn_results(a: Result, b: Result) -> Result:
    """Combine two results already in the compact layout.

    Scores and traces add up, structures are united; traces and chains of
    unequal length are padded with their last entry.
    """

    if type(a) is not type(b):
        raise ConfigurationError(f"cannot merge a {type(a).__name__} with a {type(b).__name__}")
    reasons = [r for r in (a.info.stop_reason, b.info.stop_reason) if r]
    info = replace(
        a.info,
        cpu_time=a.info.cpu_time + b.info.cpu_time,
        start_order=None if a.info.start_order is None or b.info.start_order is None
        else a.info.start_order + b.info.start_order,
        stop_reason="; ".join(reasons) if reasons else None,
    )
    changes = dict(
        dag=a.dag + b.dag,
        score=a.score + b.score,
        space=a.space | b.space,
        info=info,
    )
    if isinstance(a, IterativeResult):
        size = max(len(a.trace), len(b.trace))
        changes["trace"] = [_add_traces(x, y) for x, y in zip(_pad(a.trace, size), _pad(b.trace, size))]
        changes["scores"] = [x + y for x, y in zip(_pad(a.scores, size), _pad(b.scores, size))]
        changes["startspace"] = a.startspace | b.startspace
        if a.chain is not None and b.chain is not None:
            size = max(len(a.chain), len(b.chain))
            changes["chain"] = [_merge_chains(x, y) for x, y in zip(_pad(a.chain, size), _pad(b.chain, size))]
        else:
            changes["chain"] = None
        changes["info"] = replace(
            info,
            expansion_iterations=max(a.info.expansion_iterations or 0, b.info.expansion_iterations or 0),
        )
    else:
        changes["trace"] = _add_traces(a.trace, b.trace)
        changes["chain"] = _merge_chains(a.chain, b.chain)
    if isinstance(a, (OrderResult, IterativeResult)):
        changes["order"] = a.order + b.order
    return replace(a, **changes)


def learn_dbn(
    dbn_params: DBNScoreParameters,
    runner: Callable[..., Result],
    startspace=None,
    blacklist=None,
    addspace=None,
    startorder=None,
    startdag=None,
    scoretable=None,
    verbose: bool = False,
    rng=None,
    **kwargs,
) -> Result:
    """Run ``runner`` once per slice configuration and merge the results.

    Matrices are given in the compact layout or as ``{"init": ...,
    "trans": ...}`` dicts of per-slice matrices; start orders must be such
    dicts.
    """

    level = logging.INFO if verbose else logging.DEBUG
    if scoretable is not None:
        logger.warning("score tables are not supported for DBNs; the scoretable argument is ignored")
    # one independent stream per slice configuration
    streams = make_rng(rng).spawn(len(dbn_params.slice_params))

    per_slice = []
    for k, (params, stream) in enumerate(zip(dbn_params.slice_params, streams)):
        phase = "initial" if k == 0 else "transition"
        if len(dbn_params.slice_params) > 2 and k > 0:
            phase = f"transition {k}"
        logger.log(level, "learning %s structure", phase)
        extra = dict(kwargs)
        for name, value in (("startspace", startspace), ("blacklist", blacklist), ("addspace", addspace),
                            ("startorder", startorder), ("startdag", startdag)):
            sliced = _slice_input(value, k, dbn_params, name)
            if sliced is not None:
                extra[name] = sliced
        try:
            result = runner(params, verbose=verbose, rng=stream, **extra)
        except OrderValidationError as err:
            raise OrderValidationError(err.missing, err.unexpected, err.duplicated, context=phase) from err
        per_slice.append(embed_result(result, k, dbn_params))

    merged = reduce(merge_dbn_results, per_slice)
    return with_info(merged, dbn=True, nsmall=dbn_params.nsmall, bgn=dbn_params.bgn)


__all__ = [
    "slice_maps",
    "dbn_backtransform",
    "dbn_transform",
    "dbn_score",
    "embed_result",
    "merge_dbn_results",
    "learn_dbn",
]
