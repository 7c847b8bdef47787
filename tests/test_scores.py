import numpy as np
import pandas as pd
import pytest

from structure_mcmc.errors import ConfigurationError, ValidationError
from structure_mcmc.scores import BDeScore, BGeScore, dag_score, score_parameters


def test_dag_score_is_sum_of_local_scores(bge_chain):
    dag = np.array([[0, 1, 1], [0, 0, 1], [0, 0, 0]])
    expected = bge_chain(0, []) + bge_chain(1, [0]) + bge_chain(2, [0, 1])
    assert dag_score(bge_chain, dag) == pytest.approx(expected)


def test_bge_prefers_true_chain_over_empty_graph(bge_chain):
    chain = np.array([[0, 1, 0], [0, 0, 1], [0, 0, 0]])
    assert dag_score(bge_chain, chain) > dag_score(bge_chain, np.zeros((3, 3)))


def test_bge_is_score_equivalent(bge_chain):
    forward = np.array([[0, 1, 0], [0, 0, 1], [0, 0, 0]])
    assert dag_score(bge_chain, forward) == pytest.approx(dag_score(bge_chain, forward.T))


def test_bde_is_score_equivalent_without_edge_penalty():
    rng = np.random.default_rng(5)
    x = rng.integers(0, 2, size=300)
    y = (x + (rng.random(300) < 0.2)) % 2
    params = BDeScore(np.column_stack([x, y]), edgepf=1.0)
    edge = np.array([[0, 1], [0, 0]])
    assert dag_score(params, edge) == pytest.approx(dag_score(params, edge.T))
    assert dag_score(params, edge) > dag_score(params, np.zeros((2, 2)))


def test_bde_factorises_data_frames():
    frame = pd.DataFrame({"a": ["x", "y", "x", "y"], "b": ["u", "u", "v", "v"]})
    params = BDeScore(frame)
    assert params.labels == ["a", "b"]
    np.testing.assert_array_equal(params.arities, [2, 2])


def test_dag_score_rejects_wrong_size(bge_chain):
    with pytest.raises(ConfigurationError):
        dag_score(bge_chain, np.zeros((4, 4)))


def test_score_parameters_factory(chain_data):
    params = score_parameters("bge", chain_data, labels=["A", "B", "C"])
    assert isinstance(params, BGeScore)
    user = score_parameters("usr", score_fn=lambda v, pa: 0.0, n=4, bg_nodes=[3])
    assert user.nsmall == 3 and user.bgn == 1
    with pytest.raises(ConfigurationError):
        score_parameters("mystery", chain_data)
    with pytest.raises(ConfigurationError):
        score_parameters("usr")


def test_background_nodes_are_not_scored():
    params = score_parameters("usr", score_fn=lambda v, pa: 1.0, n=3, bg_nodes=[2])
    assert dag_score(params, np.zeros((3, 3))) == pytest.approx(2.0)


def test_bge_validates_hyperparameters(chain_data):
    with pytest.raises(ValidationError):
        BGeScore(chain_data, am=0)
    with pytest.raises(ValidationError):
        BGeScore(chain_data, aw=1)
