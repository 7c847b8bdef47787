from collections import Counter
from itertools import product

import numpy as np
import pytest

from structure_mcmc.dag_utils import is_dag_adjmat, to_dense
from structure_mcmc.errors import ValidationError
from structure_mcmc.order_mcmc import order_mcmc
from structure_mcmc.partition_mcmc import (
    partition_from_dag,
    partition_mcmc,
    relocate_size,
    split_join_size,
)
from structure_mcmc.scores import dag_score


def all_dags(n):
    pairs = [(i, j) for i in range(n) for j in range(n) if i != j]
    for edges in product([0, 1], repeat=len(pairs)):
        dag = np.zeros((n, n), dtype=int)
        for (i, j), on in zip(pairs, edges):
            dag[i, j] = on
        if is_dag_adjmat(dag):
            yield dag


def frequencies(chain):
    counts = Counter(to_dense(dag).tobytes() for dag in chain.dags)
    total = sum(counts.values())
    return {key: value / total for key, value in counts.items()}


def test_there_are_25_dags_on_three_nodes():
    assert len(list(all_dags(3))) == 25


def test_neighbourhood_sizes():
    # blocks {a} and {b, c}
    assert split_join_size([1, 2]) == 1 + 0 + 2
    assert relocate_size([1, 2]) == 1 * 2 + 2 * 4
    assert split_join_size([1]) == 0
    assert relocate_size([1]) == 0
    assert relocate_size([3]) == 3 * 2


def test_partition_from_dag_layers():
    chain = np.array([[0, 1, 0], [0, 0, 1], [0, 0, 0]])
    assert partition_from_dag(chain, range(3)) == [[0], [1], [2]]
    collider = np.array([[0, 0, 1], [0, 0, 1], [0, 0, 0]])
    assert partition_from_dag(collider, range(3)) == [[0, 1], [2]]
    assert partition_from_dag(np.zeros((3, 3)), range(3)) == [[0, 1, 2]]


def test_partition_sampling_is_unbiased_and_order_sampling_is_not(flat_score):
    # with flat local scores every one of the 25 DAGs has posterior 1/25
    empty = np.zeros((3, 3), dtype=int).tobytes()
    partition = partition_mcmc(
        flat_score,
        moveprobs=(0.2, 0.2, 0.2, 0.35, 0.05),
        iterations=20000,
        stepsave=2,
        compress=False,
        rng=7,
    )
    freq = frequencies(partition.chain)
    assert len(freq) == 25
    tv = 0.5 * sum(abs(freq.get(dag.tobytes(), 0.0) - 1 / 25) for dag in all_dags(3))
    assert tv < 0.1
    assert freq[empty] < 0.07

    order = order_mcmc(
        flat_score,
        MAP=False,
        chainout=True,
        iterations=20000,
        stepsave=2,
        compress=False,
        rng=7,
    )
    # the empty DAG fits all six orders and is drawn with probability 1/8
    assert frequencies(order.chain)[empty] > 0.09


def test_sampled_dags_and_scores(bge_chain):
    result = partition_mcmc(bge_chain, iterations=400, stepsave=20, rng=3)
    assert result.trace.shape == (21,)
    assert len(result.chain.partitions) == 21
    for dag, score in zip(result.chain.dags, result.chain.dag_scores):
        dense = to_dense(dag)
        assert is_dag_adjmat(dense)
        assert score == pytest.approx(dag_score(bge_chain, dense))
    assert result.score == pytest.approx(max(result.chain.dag_scores))
    assert is_dag_adjmat(result.dag)


def test_start_dag_is_validated(bge_chain):
    cyclic = np.array([[0, 1, 0], [0, 0, 1], [1, 0, 0]])
    with pytest.raises(ValidationError, match="cycle"):
        partition_mcmc(bge_chain, iterations=10, startdag=cyclic)
    start = np.zeros((3, 3))
    start[0, 1] = 1
    outside = np.array([[0, 0, 1], [0, 0, 1], [0, 0, 0]])
    with pytest.raises(ValidationError, match="outside the search space"):
        partition_mcmc(bge_chain, iterations=10, startdag=outside, startspace=start)


def test_start_dag_sets_first_partition(bge_chain):
    chain = np.array([[0, 1, 0], [0, 0, 1], [0, 0, 0]])
    result = partition_mcmc(bge_chain, iterations=0, startdag=chain, rng=0)
    assert result.chain.partitions[0] == [["A"], ["B"], ["C"]]
