"""Decomposable local scores and the score configuration objects.

A score configuration maps ``(node, parents)`` to a log score. The total
score of a DAG is the sum of the local scores of its main nodes, which is
what lets :class:`~structure_mcmc.score_cache.ScoreCache` tabulate every
node independently.
"""
from __future__ import annotations

from math import lgamma, log, pi
from typing import Callable, List, Sequence

import numpy as np
import pandas as pd
from scipy.special import gammaln

from .errors import ConfigurationError, ValidationError

ScoreFn = Callable[[int, np.ndarray], float]


def _as_data(data, labels: Sequence[str] | None, dtype=float):
    if isinstance(data, pd.DataFrame):
        if labels is None:
            labels = [str(c) for c in data.columns]
        data = data.to_numpy()
    data = np.asarray(data, dtype=dtype)
    if data.ndim != 2:
        raise ValidationError("data must be a 2-d array with one column per variable")
    n_obs, p = data.shape
    if labels is None:
        labels = [f"X{i + 1}" for i in range(p)]
    labels = [str(label) for label in labels]
    if len(labels) != p:
        raise ValidationError(f"expected {p} labels, got {len(labels)}")
    return data, labels


class ScoreParameters:
    """Base score configuration.

    Parameters
    ----------
    n:
        Total number of nodes, background nodes included.
    labels:
        Node names; ``X1 .. Xn`` when omitted.
    bg_nodes:
        Indices of background (static) nodes. They may act as parents of
        every main node but are never scored or learned.
    """

    score_type = "usr"
    dbn = False

    def __init__(self, n: int, labels: Sequence[str] | None = None, bg_nodes: Sequence[int] | None = None) -> None:
        self.n = int(n)
        self.labels = [f"X{i + 1}" for i in range(self.n)] if labels is None else [str(x) for x in labels]
        if len(self.labels) != self.n:
            raise ValidationError(f"expected {self.n} labels, got {len(self.labels)}")
        bg = [] if bg_nodes is None else sorted(int(v) for v in bg_nodes)
        bad = [v for v in bg if not 0 <= v < self.n]
        if bad:
            raise ValidationError(f"background nodes out of range: {bad}")
        self.bg_nodes = tuple(bg)
        mask = np.ones(self.n, dtype=bool)
        mask[list(self.bg_nodes)] = False
        self.main_nodes = np.flatnonzero(mask)

    @property
    def nsmall(self) -> int:
        return int(self.main_nodes.size)

    @property
    def bgn(self) -> int:
        return len(self.bg_nodes)

    def local_score(self, node: int, parents: np.ndarray) -> float:
        raise NotImplementedError

    def __call__(self, node: int, parents: np.ndarray) -> float:
        return float(self.local_score(int(node), np.asarray(parents, dtype=int)))


class UserScore(ScoreParameters):
    """Wrap an arbitrary ``fn(node, parents) -> float`` as a configuration."""

    score_type = "usr"

    def __init__(self, fn: ScoreFn, n: int, labels=None, bg_nodes=None) -> None:
        super().__init__(n, labels, bg_nodes)
        self._fn = fn

    def local_score(self, node: int, parents: np.ndarray) -> float:
        return float(self._fn(node, parents))


class BGeScore(ScoreParameters):
    """BGe score for continuous data (Geiger and Heckerman 2002,
    Kuipers, Moffa and Heckerman 2014).

    The normal-Wishart prior uses the sample mean, imaginary sample size
    ``am`` for the mean and ``aw`` degrees of freedom (default ``n + 2``)
    with prior matrix ``t * I``, ``t = am * (aw - n - 1) / (am + 1)``.
    ``edgepf`` penalises every parent by ``log(edgepf)``.
    """

    score_type = "bge"

    def __init__(self, data, labels=None, bg_nodes=None, am: float = 1.0, aw: float | None = None, edgepf: float = 1.0) -> None:
        data, labels = _as_data(data, labels)
        n_obs, p = data.shape
        super().__init__(p, labels, bg_nodes)
        if not am > 0:
            raise ValidationError(f"am must be positive, but is {am}")
        if aw is None:
            aw = p + 2
        if not aw > p - 1:
            raise ValidationError(f"aw must exceed n-1 = {p - 1}, but is {aw}")

        self.data = data
        self.n_obs = n_obs
        self.am = float(am)
        self.aw = float(aw)
        self.edgepf = float(edgepf)

        t = self.am * (self.aw - p - 1.0) / (self.am + 1.0)
        self._log_prefactors = np.empty(p)
        const = 0.5 * (log(self.am) - log(n_obs + self.am)) - 0.5 * n_obs * log(pi)
        for pasize in range(p):
            self._log_prefactors[pasize] = (
                const
                + gammaln(0.5 * (n_obs + self.aw - p + pasize + 1))
                - gammaln(0.5 * (self.aw - p + pasize + 1))
                + (0.5 * (self.aw - p + 1) + pasize) * log(t)
            )

        centred = data - data.mean(axis=0)
        self._posterior_matrix = t * np.eye(p) + centred.T @ centred
        self._components: dict = {}

    def _component(self, variables: np.ndarray) -> float:
        if variables.size == 0:
            return 0.0
        key = frozenset(int(v) for v in variables)
        try:
            return self._components[key]
        except KeyError:
            sub = self._posterior_matrix[np.ix_(variables, variables)]
            value = -0.5 * (self.n_obs + self.aw - self.n + variables.size) * np.linalg.slogdet(sub)[1]
            self._components[key] = float(value)
            return float(value)

    def local_score(self, node: int, parents: np.ndarray) -> float:
        parents = np.asarray(parents, dtype=int)
        family = np.append(parents, node)
        score = self._log_prefactors[parents.size] + self._component(family) - self._component(parents)
        return float(score - parents.size * log(self.edgepf))


class BDeScore(ScoreParameters):
    """BDeu score for categorical data.

    Columns must hold integer category codes ``0 .. r-1`` (a data frame
    with arbitrary values is factorised column by column). ``chi`` is the
    equivalent sample size and ``edgepf`` the per-parent penalty factor.
    """

    score_type = "bde"

    def __init__(self, data, labels=None, bg_nodes=None, chi: float = 0.5, edgepf: float = 2.0, arities=None) -> None:
        if isinstance(data, pd.DataFrame):
            if labels is None:
                labels = [str(c) for c in data.columns]
            data = np.column_stack([pd.factorize(data[c], sort=True)[0] for c in data.columns])
        data, labels = _as_data(data, labels, dtype=np.int64)
        n_obs, p = data.shape
        super().__init__(p, labels, bg_nodes)
        if np.any(data < 0):
            raise ValidationError("categorical data must be coded as non-negative integers")
        if arities is None:
            arities = data.max(axis=0) + 1
        self.arities = np.asarray(arities, dtype=np.int64)
        if np.any(data.max(axis=0) >= self.arities):
            raise ValidationError("data contains category codes beyond the given arities")
        self.data = data
        self.n_obs = n_obs
        self.chi = float(chi)
        self.edgepf = float(edgepf)

    def local_score(self, node: int, parents: np.ndarray) -> float:
        parents = np.asarray(parents, dtype=int)
        r = int(self.arities[node])
        if parents.size == 0:
            configs = np.zeros(self.n_obs, dtype=np.int64)
            q = 1
        else:
            configs = np.ravel_multi_index(self.data[:, parents].T, self.arities[parents])
            q = float(np.prod(self.arities[parents], dtype=float))
        cells = configs * r + self.data[:, node]
        _, joint = np.unique(cells, return_counts=True)
        _, marg = np.unique(configs, return_counts=True)

        alpha_j = self.chi / q
        alpha_jk = alpha_j / r
        score = marg.size * lgamma(alpha_j) - np.sum(gammaln(alpha_j + marg))
        score += np.sum(gammaln(alpha_jk + joint)) - joint.size * lgamma(alpha_jk)
        return float(score - parents.size * log(self.edgepf))


class DBNScoreParameters:
    """Score configuration of a dynamic Bayesian network.

    Holds an ordered list of per-slice configurations: the initial slice
    first, then one transition configuration (structure shared by all
    transitions) or one per transition. Every configuration orders its
    nodes as ``[scored slice | previous slice | static]`` with everything
    after the scored slice declared as background.
    """

    dbn = True

    def __init__(
        self,
        slice_params: List[ScoreParameters],
        nsmall: int,
        bgn: int = 0,
        labels=None,
    ) -> None:
        if len(slice_params) < 2:
            raise ConfigurationError("a DBN needs an initial and at least one transition configuration")
        self.slice_params = list(slice_params)
        self.nsmall = int(nsmall)
        self.bgn = int(bgn)
        init, *trans = self.slice_params
        if init.nsmall != self.nsmall or init.bgn != self.bgn:
            raise ConfigurationError("initial slice configuration does not match nsmall/bgn")
        for param in trans:
            if param.nsmall != self.nsmall or param.bgn != self.nsmall + self.bgn:
                raise ConfigurationError("transition configuration does not match nsmall/bgn")
        if labels is None:
            static = init.labels[self.nsmall:]
            labels = list(static)
            for k in range(len(self.slice_params)):
                labels += [f"{label}.{k + 1}" for label in init.labels[: self.nsmall]]
        self.labels = list(labels)
        self.score_type = init.score_type
        self.samestruct = len(self.slice_params) == 2

    @property
    def n_compact(self) -> int:
        return self.bgn + len(self.slice_params) * self.nsmall

    @classmethod
    def from_data(
        cls,
        score_type: str,
        data,
        nsmall: int,
        bgn: int = 0,
        samestruct: bool = True,
        **score_par,
    ) -> "DBNScoreParameters":
        """Build the per-slice configurations from wide DBN data.

        ``data`` columns are ``[static (bgn) | slice 1 | ... | slice T]``
        with ``nsmall`` columns per slice.
        """

        labels = None
        if isinstance(data, pd.DataFrame):
            labels = [str(c) for c in data.columns]
            data = data.to_numpy()
        data = np.asarray(data)
        if data.ndim != 2:
            raise ValidationError("data must be a 2-d array")
        n_cols = data.shape[1] - bgn
        if nsmall <= 0 or n_cols <= 0 or n_cols % nsmall != 0:
            raise ConfigurationError(
                f"{data.shape[1]} columns cannot be split into {bgn} static nodes and slices of {nsmall} nodes"
            )
        slices = n_cols // nsmall
        if slices < 2:
            raise ConfigurationError("a DBN needs at least two time slices")
        if labels is None:
            labels = [f"X{i + 1}" for i in range(data.shape[1])]
        static = list(range(bgn))
        slice_cols = [list(range(bgn + t * nsmall, bgn + (t + 1) * nsmall)) for t in range(slices)]
        base_labels = [labels[c] for c in slice_cols[0]]
        static_labels = [labels[c] for c in static]
        family = _score_class(score_type)

        init_cols = slice_cols[0] + static
        init = family(
            data[:, init_cols],
            labels=base_labels + static_labels,
            bg_nodes=range(nsmall, nsmall + bgn),
            **score_par,
        )
        trans_labels = base_labels + [f"{label}.prev" for label in base_labels] + static_labels
        trans_bg = range(nsmall, 2 * nsmall + bgn)
        blocks = [data[:, slice_cols[t + 1] + slice_cols[t] + static] for t in range(slices - 1)]
        if samestruct:
            trans = [family(np.vstack(blocks), labels=trans_labels, bg_nodes=trans_bg, **score_par)]
        else:
            trans = [family(block, labels=trans_labels, bg_nodes=trans_bg, **score_par) for block in blocks]

        compact_labels = static_labels + [f"{label}.{k + 1}" for k in range(1 + len(trans)) for label in base_labels]
        return cls([init] + trans, nsmall=nsmall, bgn=bgn, labels=compact_labels)


def _score_class(score_type: str):
    score_type = score_type.lower()
    if score_type == "bge":
        return BGeScore
    if score_type == "bde":
        return BDeScore
    raise ConfigurationError(f"unknown score type {score_type!r}; expected 'bge' or 'bde'")


def score_parameters(
    score_type: str,
    data=None,
    bg_nodes=None,
    dbn: bool = False,
    dbn_par: dict | None = None,
    score_fn: ScoreFn | None = None,
    n: int | None = None,
    labels=None,
    **score_par,
):
    """Construct a score configuration.

    ``score_type`` is ``"bge"``, ``"bde"`` or ``"usr"`` (which needs
    ``score_fn`` and ``n``). With ``dbn=True`` the data are interpreted as
    wide DBN data and ``dbn_par`` must provide ``nsmall`` and may provide
    ``bgn`` and ``samestruct``.
    """

    if dbn:
        dbn_par = dict(dbn_par or {})
        if "nsmall" not in dbn_par:
            raise ConfigurationError("dbn_par must provide 'nsmall', the number of nodes per time slice")
        if score_type.lower() == "usr":
            raise ConfigurationError("DBN configurations support the 'bge' and 'bde' scores only")
        return DBNScoreParameters.from_data(
            score_type,
            data,
            nsmall=dbn_par["nsmall"],
            bgn=dbn_par.get("bgn", 0),
            samestruct=dbn_par.get("samestruct", True),
            **score_par,
        )
    if score_type.lower() == "usr":
        if score_fn is None or n is None:
            raise ConfigurationError("the 'usr' score needs score_fn and n")
        return UserScore(score_fn, n, labels=labels, bg_nodes=bg_nodes)
    if data is None:
        raise ConfigurationError(f"the {score_type!r} score needs data")
    return _score_class(score_type)(data, labels=labels, bg_nodes=bg_nodes, **score_par)


def dag_score(params: ScoreParameters, incidence) -> float:
    """Total log score of a DAG: the sum of local scores of the main nodes."""

    if getattr(params, "dbn", False):
        raise ConfigurationError("DBN configurations are scored with dbn_score")
    incidence = np.asarray(incidence)
    if incidence.ndim != 2 or incidence.shape != (params.n, params.n):
        raise ConfigurationError(
            f"adjacency matrix of shape {incidence.shape} does not match the {params.n} nodes of the configuration"
        )
    total = 0.0
    for node in params.main_nodes:
        parents = np.flatnonzero(incidence[:, node])
        total += params(node, parents)
    return float(total)


__all__ = [
    "ScoreFn",
    "ScoreParameters",
    "UserScore",
    "BGeScore",
    "BDeScore",
    "DBNScoreParameters",
    "score_parameters",
    "dag_score",
]
