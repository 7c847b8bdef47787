import numpy as np
import pytest

from structure_mcmc.dag_utils import (
    compress_dag,
    dag_layers,
    dag_to_cpdag,
    is_dag_adjmat,
    parents_decoding,
    parents_encoding,
    skeleton,
    to_dense,
)


def test_is_dag_adjmat():
    chain = np.array([[0, 1, 0], [0, 0, 1], [0, 0, 0]])
    cycle = chain.copy()
    cycle[2, 0] = 1
    assert is_dag_adjmat(chain)
    assert not is_dag_adjmat(cycle)
    assert not is_dag_adjmat(np.eye(2))


def test_parents_encoding_round_trip():
    included = np.array([1, 0, 1, 1])
    mask = parents_encoding(included)
    assert mask == 1 + 4 + 8
    np.testing.assert_array_equal(parents_decoding(4, mask), included)
    assert parents_encoding(np.zeros(0)) == 0


def test_skeleton_is_symmetric():
    dag = np.array([[0, 1, 0], [0, 0, 1], [0, 0, 0]])
    sk = skeleton(dag)
    np.testing.assert_array_equal(sk, sk.T)
    assert sk.sum() == 4


def test_cpdag_of_chain_is_undirected():
    dag = np.array([[0, 1, 0], [0, 0, 1], [0, 0, 0]])
    np.testing.assert_array_equal(dag_to_cpdag(dag), skeleton(dag))


def test_cpdag_keeps_v_structure_and_orients_by_rule_one():
    # 0 -> 2 <- 1, 2 -> 3
    dag = np.zeros((4, 4), dtype=int)
    dag[0, 2] = dag[1, 2] = dag[2, 3] = 1
    cpdag = dag_to_cpdag(dag)
    np.testing.assert_array_equal(cpdag, dag)


def test_dag_layers():
    dag = np.zeros((4, 4), dtype=int)
    dag[0, 2] = dag[1, 2] = dag[2, 3] = 1
    assert dag_layers(dag, range(4)) == [[0, 1], [2], [3]]
    dag[3, 0] = 1
    with pytest.raises(ValueError):
        dag_layers(dag, range(4))


def test_compress_dag():
    dag = np.array([[0, 1], [0, 0]])
    np.testing.assert_array_equal(to_dense(compress_dag(dag)), dag)


def test_cpdag_orients_by_rule_two():
    # 0 -> 2 <- 1 is a v-structure, 2 -> 3 follows by rule 1, then 0 -> 2 -> 3 forces 0 -> 3
    dag = np.zeros((4, 4), dtype=int)
    dag[0, 2] = dag[1, 2] = dag[2, 3] = dag[0, 3] = 1
    np.testing.assert_array_equal(dag_to_cpdag(dag), dag)


def test_cpdag_orients_by_rule_three():
    # 1 -> 3 <- 2 is a v-structure; 0 - 1 -> 3 and 0 - 2 -> 3 force 0 -> 3
    dag = np.zeros((4, 4), dtype=int)
    dag[0, 1] = dag[0, 2] = dag[0, 3] = dag[1, 3] = dag[2, 3] = 1
    expected = dag.copy()
    expected[1, 0] = expected[2, 0] = 1
    np.testing.assert_array_equal(dag_to_cpdag(dag), expected)
