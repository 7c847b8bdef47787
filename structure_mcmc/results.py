"""Result containers of the samplers and accessors dispatching on them."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Tuple, Union

import numpy as np

from .dag_utils import dag_to_cpdag, to_dense


@dataclass
class RunInfo:
    algorithm: str
    sample_type: str
    iterations: int
    stepsave: int
    sample_steps: int
    moveprobs: Tuple[float, ...]
    space_algorithm: str
    cpu_time: float = 0.0
    start_order: Optional[List[str]] = None
    dbn: bool = False
    nsmall: Optional[int] = None
    bgn: Optional[int] = None
    expansion_iterations: Optional[int] = None
    threshold: Optional[float] = None
    stop_reason: Optional[str] = None


@dataclass
class Chain:
    """Structures retained every ``stepsave`` iterations of one run."""

    dags: List[Any]
    dag_scores: np.ndarray
    orders: Optional[List[List[str]]] = None
    partitions: Optional[List[List[List[str]]]] = None

    def dense(self) -> List[np.ndarray]:
        return [to_dense(dag) for dag in self.dags]


@dataclass
class OrderResult:
    dag: np.ndarray
    score: float
    order: List[str]
    trace: np.ndarray
    info: RunInfo
    labels: List[str]
    space: np.ndarray
    chain: Optional[Chain] = None
    scoretable: Any = None


@dataclass
class PartitionResult:
    dag: np.ndarray
    score: float
    trace: np.ndarray
    info: RunInfo
    labels: List[str]
    space: np.ndarray
    chain: Optional[Chain] = None
    scoretable: Any = None


@dataclass
class IterativeResult:
    dag: np.ndarray
    score: float
    order: List[str]
    trace: List[np.ndarray]
    info: RunInfo
    labels: List[str]
    space: np.ndarray
    startspace: np.ndarray
    chain: Optional[List[Chain]] = None
    scoretable: Any = None
    scores: List[float] = field(default_factory=list)


Result = Union[OrderResult, PartitionResult, IterativeResult]


def _check(result) -> None:
    if not isinstance(result, (OrderResult, PartitionResult, IterativeResult)):
        raise TypeError(f"expected a sampler result, got {type(result).__name__}")


def get_dag(result: Result, cpdag: bool = False) -> np.ndarray:
    """Adjacency matrix of the maximum scoring DAG (or its CPDAG)."""

    _check(result)
    dag = np.asarray(result.dag, dtype=int)
    if cpdag:
        return dag_to_cpdag(dag)
    return dag


def get_trace(result: Result) -> Union[np.ndarray, List[np.ndarray]]:
    """Score trace of an order or partition run.

    Iterative runs return one trace per search-space expansion.
    """

    if isinstance(result, IterativeResult):
        return [np.asarray(t) for t in result.trace]
    if isinstance(result, (OrderResult, PartitionResult)):
        return np.asarray(result.trace)
    raise TypeError(f"expected a sampler result, got {type(result).__name__}")


def get_space(result: Result) -> np.ndarray:
    """Search space of the run; the final expanded space for iterative runs."""

    _check(result)
    return np.asarray(result.space, dtype=int)


def get_mcmc_score(result: Result) -> float:
    """Score of the best DAG.

    For order and iterative runs this is the MAP DAG, for partition runs
    the best of the sampled DAGs.
    """

    _check(result)
    return float(result.score)


def _last_chain(result: Result) -> Chain:
    if isinstance(result, IterativeResult):
        chains = result.chain or []
        if not chains or chains[-1] is None:
            raise ValueError("result holds no chain; run with chainout=True")
        return chains[-1]
    if isinstance(result, (OrderResult, PartitionResult)):
        if result.chain is None:
            raise ValueError("result holds no chain; run with chainout=True")
        return result.chain
    raise TypeError(f"expected a sampler result, got {type(result).__name__}")


def chain_posteriors(chain: Chain, burnin: float = 0.2) -> np.ndarray:
    if not 0 <= burnin < 1:
        raise ValueError(f"burnin must lie in [0, 1), got {burnin}")
    start = int(np.floor(burnin * len(chain.dags)))
    kept = chain.dense()[start:]
    if not kept:
        raise ValueError("no samples left after burn-in")
    return np.mean(kept, axis=0)


def edge_posteriors(result: Result, burnin: float = 0.2) -> np.ndarray:
    """Empirical edge frequencies of the chain after discarding ``burnin``.

    Uses the last run of an iterative search.
    """

    return chain_posteriors(_last_chain(result), burnin)


def with_info(result: Result, **changes) -> Result:
    return replace(result, info=replace(result.info, **changes))


__all__ = [
    "RunInfo",
    "Chain",
    "OrderResult",
    "PartitionResult",
    "IterativeResult",
    "Result",
    "get_dag",
    "get_trace",
    "get_space",
    "get_mcmc_score",
    "chain_posteriors",
    "edge_posteriors",
    "with_info",
]
