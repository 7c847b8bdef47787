"""Command line entry point: learn a network from a CSV file."""
from __future__ import annotations

import argparse
import logging
import sys

import numpy as np
import pandas as pd

from .errors import StructureMCMCError
from .iterative_mcmc import iterative_mcmc
from .order_mcmc import order_mcmc
from .partition_mcmc import partition_mcmc
from .scores import score_parameters

logger = logging.getLogger(__name__)

RUNNERS = {
    "order": order_mcmc,
    "partition": partition_mcmc,
    "iterative": iterative_mcmc,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="structure-mcmc",
        description="Bayesian network structure learning with order, partition and iterative MCMC",
    )
    parser.add_argument("algorithm", choices=sorted(RUNNERS), help="Sampler to run")
    parser.add_argument("data", help="CSV file with one column per variable")
    parser.add_argument("-s", "--score", choices=["bge", "bde"], default="bge", help="Score family")
    parser.add_argument("-o", "--out", dest="out_path", help="Where to write the adjacency matrix (CSV)")
    parser.add_argument("-i", "--iterations", type=int, help="Number of MCMC steps")
    parser.add_argument("--stepsave", type=int, help="Thinning interval of the trace")
    parser.add_argument("--startspace", help="CSV with a 0/1 matrix of allowed edges")
    parser.add_argument("--blacklist", help="CSV with a 0/1 matrix of forbidden edges")
    parser.add_argument("--sample", action="store_true", help="Sample DAGs instead of searching the MAP DAG")
    parser.add_argument("--hardlimit", type=int, help="Largest parent set size")
    parser.add_argument("--seed", type=int, help="Seed of the random generator")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress")
    return parser


def _read_matrix(path):
    if path is None:
        return None
    return pd.read_csv(path, index_col=0).to_numpy()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    data = pd.read_csv(args.data)
    kwargs = dict(
        iterations=args.iterations,
        stepsave=args.stepsave,
        startspace=_read_matrix(args.startspace),
        blacklist=_read_matrix(args.blacklist),
        verbose=args.verbose,
        rng=args.seed,
    )
    if args.hardlimit is not None:
        kwargs["hardlimit"] = args.hardlimit
    if args.algorithm != "partition":
        kwargs["MAP"] = not args.sample

    try:
        params = score_parameters(args.score, data)
        result = RUNNERS[args.algorithm](params, **kwargs)
    except StructureMCMCError as err:
        logger.error("%s", err)
        return 2

    frame = pd.DataFrame(np.asarray(result.dag, dtype=int), index=result.labels, columns=result.labels)
    if args.out_path:
        frame.to_csv(args.out_path)
    else:
        frame.to_csv(sys.stdout)
    print(f"score: {result.score:.6f}")
    return 0


__all__ = ["main", "build_parser"]
