import numpy as np
import pytest

from structure_mcmc.scores import BGeScore, UserScore


def chain_score(node, parents):
    """Local score maximised by the DAG 0 -> 1 -> 2 (score 0)."""

    target = {0: set(), 1: {0}, 2: {1}}
    return -2.0 * len(set(int(p) for p in parents) ^ target[int(node)])


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.fixture
def chain_data(rng):
    n_obs = 400
    x1 = rng.normal(size=n_obs)
    x2 = 1.5 * x1 + rng.normal(scale=0.5, size=n_obs)
    x3 = -1.2 * x2 + rng.normal(scale=0.5, size=n_obs)
    return np.column_stack([x1, x2, x3])


@pytest.fixture
def bge_chain(chain_data):
    return BGeScore(chain_data, labels=["A", "B", "C"])


@pytest.fixture
def chain_user_score():
    return UserScore(chain_score, 3, labels=["A", "B", "C"])


@pytest.fixture
def flat_score():
    return UserScore(lambda node, parents: 0.0, 3)
