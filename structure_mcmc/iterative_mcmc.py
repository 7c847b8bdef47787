"""Iterative order MCMC with search-space expansion.

Each round runs order MCMC on the current search space, derives candidate
edges from the best DAG (or from the edge posteriors of the sampled DAGs)
and widens the space with them. The loop ends once the space stops
changing, the best score stops improving, or ``plus1it`` expansions have
been done.
"""
from __future__ import annotations

import logging
import time
from typing import List, Sequence

import numpy as np

from .config import resolve_config
from .dag_utils import dag_to_cpdag, skeleton
from .dbn import learn_dbn
from .errors import ValidationError
from .order_mcmc import make_chain, order_chain, validate_start_order
from .results import Chain, IterativeResult, RunInfo, chain_posteriors
from .score_cache import ScoreTable, prepare_search
from .search_space import SearchSpace

logger = logging.getLogger(__name__)

MERGE_TYPES = ("dag", "cpdag", "skeleton")


def candidate_edges(graph: np.ndarray, mergetype: str) -> np.ndarray:
    """Edges a found structure suggests adding to the search space."""

    graph = np.asarray(graph) != 0
    if mergetype == "dag":
        return graph
    if mergetype == "cpdag":
        return dag_to_cpdag(graph) != 0
    if mergetype == "skeleton":
        return skeleton(graph) != 0
    raise ValidationError(f"mergetype must be one of {MERGE_TYPES}, got {mergetype!r}")


def expand_space(
    current: SearchSpace,
    base: np.ndarray,
    found: np.ndarray,
    mergetype: str,
    softlimit: int,
    hardlimit: int,
) -> SearchSpace:
    """Widen ``base`` with the edges suggested by ``found``.

    Columns exceeding ``softlimit`` parents only take the directed edges of
    ``found``; columns still above ``hardlimit`` keep their current parents.
    """

    found = np.asarray(found) != 0
    base = np.asarray(base, dtype=bool)
    merged = base | candidate_edges(found, mergetype)
    merged = SearchSpace(merged, current.blacklist, bg_nodes=current.bg_nodes).allowed.copy()
    sizes = merged.sum(axis=0)
    soft = sizes > softlimit
    if np.any(soft):
        merged[:, soft] = base[:, soft] | found[:, soft]
        merged &= ~current.blacklist
        np.fill_diagonal(merged, False)
    hard = merged.sum(axis=0) > hardlimit
    if np.any(hard):
        merged[:, hard] = current.allowed[:, hard]
    return current.replace(merged, hardlimit)


def iterative_mcmc(
    params,
    MAP: bool = True,
    posterior: float = 0.5,
    softlimit: int = 9,
    hardlimit: int | None = None,
    gamma: float = 1.0,
    verbose: bool = False,
    chainout: bool = False,
    scoreout: bool = False,
    mergetype: str = "skeleton",
    iterations: int | None = None,
    moveprobs: Sequence[float] | None = None,
    stepsave: int | None = None,
    startorder=None,
    accum: bool = False,
    compress: bool = True,
    plus1it: int | None = None,
    startspace=None,
    blacklist=None,
    addspace=None,
    scoretable: ScoreTable | None = None,
    burnin: float = 0.2,
    rng=None,
    n_jobs: int = 1,
) -> IterativeResult:
    """Order MCMC on an iteratively expanded search space.

    Parameters
    ----------
    MAP:
        Expand with the MAP DAG (``True``) or with the edges whose sampled
        posterior exceeds ``posterior`` (``False``).
    softlimit, hardlimit:
        Parent-count limits of the expanded space (see :func:`expand_space`).
        ``hardlimit`` defaults to the score table's limit, or 12.
    mergetype:
        ``"dag"``, ``"cpdag"`` or ``"skeleton"``: which form of the found
        structure is merged into the space.
    accum:
        Expand the current space (``True``) or the starting one (``False``).
    plus1it:
        Largest number of expansions; unlimited when ``None``.
    addspace:
        Edges added to the starting space in the first round only.
    """

    if getattr(params, "dbn", False):
        return learn_dbn(
            params,
            iterative_mcmc,
            startspace=startspace,
            blacklist=blacklist,
            addspace=addspace,
            startorder=startorder,
            scoretable=scoretable,
            verbose=verbose,
            rng=rng,
            MAP=MAP,
            posterior=posterior,
            softlimit=softlimit,
            hardlimit=hardlimit,
            gamma=gamma,
            chainout=chainout,
            scoreout=False,
            mergetype=mergetype,
            iterations=iterations,
            moveprobs=moveprobs,
            stepsave=stepsave,
            accum=accum,
            compress=compress,
            plus1it=plus1it,
            burnin=burnin,
            n_jobs=n_jobs,
        )

    if mergetype not in MERGE_TYPES:
        raise ValidationError(f"mergetype must be one of {MERGE_TYPES}, got {mergetype!r}")
    if plus1it is not None and (int(plus1it) != plus1it or plus1it < 0):
        raise ValidationError(f"plus1it must be a non-negative integer, got {plus1it}")
    if not 0 < posterior < 1:
        raise ValidationError(f"posterior must lie in (0, 1), got {posterior}")
    if hardlimit is None:
        hardlimit = 12 if scoretable is None else scoretable.cache.hardlimit
    if softlimit > hardlimit:
        raise ValidationError(f"softlimit={softlimit} exceeds hardlimit={hardlimit}")

    config = resolve_config("iterative", params.nsmall, iterations, stepsave, moveprobs, gamma, verbose, compress, rng)
    level = config.log_level
    start = time.time()

    space, cache, provenance = prepare_search(
        params, True, hardlimit, startspace, blacklist, addspace, scoretable=scoretable, n_jobs=n_jobs,
        log_level=level,
    )
    if scoretable is None:
        base = SearchSpace.from_matrices(params.n, startspace, blacklist, bg_nodes=params.bg_nodes).allowed
    else:
        base = space.allowed
    first_space = space
    order = validate_start_order(startorder, params.labels, params.main_nodes, config.rng)

    traces: List[np.ndarray] = []
    chains = []
    scores: List[float] = []
    best = None
    expansions = 0
    stop_reason = "iteration cap"

    while True:
        raw = order_chain(cache, config, order, MAP=MAP, chainout=chainout or not MAP)
        traces.append(raw["trace"])
        scores.append(raw["score"])
        if chainout:
            chains.append(make_chain(raw["chain"], params.labels))
        logger.log(level, "search space round %d: %d edges, best score %.4f", expansions, space.n_edges(), raw["score"])

        if best is not None and raw["score"] <= best["score"]:
            stop_reason = "no score improvement"
            logger.log(level, "score did not improve after %d expansions, stopping", expansions)
            break
        best = raw
        order = raw["order"]

        if plus1it is not None and expansions >= plus1it:
            logger.log(level, "reached %d search space expansions", expansions)
            break

        merge = mergetype
        if MAP:
            found = raw["dag"]
        else:
            dags, dag_scores, _ = raw["chain"]
            probs = chain_posteriors(Chain(dags=dags, dag_scores=dag_scores), burnin)
            if mergetype == "dag":
                found = probs > posterior
            else:
                # adjacency posteriors; the sampled graph need not be acyclic
                found = (probs + probs.T) > posterior
                merge = "skeleton"
        new_space = expand_space(space, space.allowed if accum else base, found, merge, softlimit, hardlimit)
        if new_space == space:
            stop_reason = "search space unchanged"
            logger.log(level, "search space did not change after %d expansions, stopping", expansions)
            break
        logger.log(level, "expanding search space by %d edges", new_space.n_edges() - space.n_edges())
        cache = cache.rebuild(new_space, n_jobs=n_jobs)
        space = new_space
        expansions += 1

    elapsed = time.time() - start
    labels = params.labels
    info = RunInfo(
        algorithm=("MAP" if MAP else "sampling") + " iterative order MCMC",
        sample_type="MAP" if MAP else "sample",
        iterations=config.iterations,
        stepsave=config.stepsave,
        sample_steps=config.sample_steps,
        moveprobs=config.moveprobs,
        space_algorithm=provenance,
        cpu_time=elapsed,
        expansion_iterations=expansions,
        threshold=None if MAP else posterior,
        stop_reason=stop_reason,
    )
    return IterativeResult(
        dag=best["dag"],
        score=best["score"],
        order=[labels[v] for v in best["order"]],
        trace=traces,
        info=info,
        labels=list(labels),
        space=space.as_int(),
        startspace=first_space.as_int(),
        chain=chains if chainout else None,
        scoretable=ScoreTable(space, cache) if scoreout else None,
        scores=scores,
    )


__all__ = ["iterative_mcmc", "expand_space", "candidate_edges"]
