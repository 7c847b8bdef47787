"""Bayesian network structure learning with order, partition and iterative MCMC."""
import logging

from .dag_utils import dag_to_cpdag, is_dag_adjmat
from .dbn import dbn_backtransform, dbn_score, dbn_transform, learn_dbn, merge_dbn_results
from .errors import (
    ConfigurationError,
    InvalidParentSet,
    OrderValidationError,
    ScoreTableMismatch,
    StructureMCMCError,
    ValidationError,
)
from .iterative_mcmc import iterative_mcmc
from .order_mcmc import order_mcmc
from .partition_mcmc import partition_mcmc
from .results import (
    IterativeResult,
    OrderResult,
    PartitionResult,
    edge_posteriors,
    get_dag,
    get_mcmc_score,
    get_space,
    get_trace,
)
from .score_cache import ScoreCache, ScoreTable
from .scores import BDeScore, BGeScore, DBNScoreParameters, UserScore, dag_score, score_parameters
from .search_space import SearchSpace

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "order_mcmc",
    "partition_mcmc",
    "iterative_mcmc",
    "learn_dbn",
    "merge_dbn_results",
    "dbn_score",
    "dbn_transform",
    "dbn_backtransform",
    "dag_score",
    "score_parameters",
    "BGeScore",
    "BDeScore",
    "UserScore",
    "DBNScoreParameters",
    "SearchSpace",
    "ScoreCache",
    "ScoreTable",
    "OrderResult",
    "PartitionResult",
    "IterativeResult",
    "get_dag",
    "get_trace",
    "get_space",
    "get_mcmc_score",
    "edge_posteriors",
    "is_dag_adjmat",
    "dag_to_cpdag",
    "StructureMCMCError",
    "ConfigurationError",
    "ScoreTableMismatch",
    "ValidationError",
    "OrderValidationError",
    "InvalidParentSet",
]
