import numpy as np
import pytest
from scipy.special import logsumexp

from structure_mcmc.errors import InvalidParentSet, ScoreTableMismatch
from structure_mcmc.order_mcmc import order_mcmc
from structure_mcmc.partition_mcmc import partition_mcmc
from structure_mcmc.score_cache import ScoreCache, ScoreTable, check_score_table
from structure_mcmc.scores import UserScore, dag_score
from structure_mcmc.search_space import SearchSpace


class CountingScore:
    def __init__(self, fn):
        self.fn = fn
        self.calls = 0

    def __call__(self, node, parents):
        self.calls += 1
        return self.fn(node, parents)


def size_score(node, parents):
    return float(len(parents))


def test_get_matches_score_function(bge_chain):
    cache = ScoreCache.build(SearchSpace.from_matrices(3), bge_chain)
    assert cache.get(2, [0, 1]) == pytest.approx(bge_chain(2, [0, 1]))
    assert cache.get(1, []) == pytest.approx(bge_chain(1, []))


def test_get_rejects_parent_sets_outside_the_family():
    start = np.zeros((4, 4))
    start[0, 3] = 1
    cache = ScoreCache.build(SearchSpace.from_matrices(4, start, hardlimit=2), size_score, hardlimit=2)
    assert cache.get(3, [0, 1]) == 2.0
    with pytest.raises(InvalidParentSet):
        cache.get(3, [1, 2])
    with pytest.raises(InvalidParentSet):
        cache.get(3, [0, 1, 2])
    with pytest.raises(InvalidParentSet):
        cache.get(3, [3])

    base = ScoreCache.build(SearchSpace.from_matrices(4, start), size_score, plus1=False)
    with pytest.raises(InvalidParentSet):
        base.get(3, [1])


def test_blacklisted_parents_never_appear_as_extras():
    black = np.zeros((3, 3))
    black[0, 2] = 1
    cache = ScoreCache.build(SearchSpace.from_matrices(3, np.zeros((3, 3)), black), size_score)
    assert cache.table(2).extras.tolist() == [1]
    with pytest.raises(InvalidParentSet):
        cache.get(2, [0])


def test_best_respects_hardlimit():
    cache = ScoreCache.build(SearchSpace.from_matrices(5, hardlimit=4), size_score, hardlimit=2)
    parents, score = cache.best(4, range(4))
    assert len(parents) == 2
    assert score == 2.0
    assert parents == (0, 1)


def test_best_breaks_ties_towards_smallest_encoding():
    flat = ScoreCache.build(SearchSpace.from_matrices(3), lambda v, pa: 0.0)
    assert flat.best(2, [0, 1]) == ((), 0.0)

    def singletons(node, parents):
        return 1.0 if len(parents) == 1 else 0.0

    start = np.zeros((3, 3))
    start[1, 2] = 1
    cache = ScoreCache.build(SearchSpace.from_matrices(3, start), singletons)
    # {1} comes from the base row, {0} from the plus1 row of extra parent 0
    assert cache.best(2, [0, 1]) == ((0,), 1.0)


def test_node_logsum_and_required_block():
    params = UserScore(lambda v, pa: 0.5 * len(pa), 3)
    cache = ScoreCache.build(SearchSpace.from_matrices(3), params)
    before = np.array([True, True, False])
    expected = logsumexp([0.0, 0.5, 0.5, 1.0])
    assert cache.node_logsum(2, before) == pytest.approx(expected)
    required = np.array([False, True, False])
    assert cache.node_logsum(2, before, required=required) == pytest.approx(logsumexp([0.5, 1.0]))
    assert cache.node_logsum(2, before, gamma=2.0) == pytest.approx(logsumexp([0.0, 1.0, 1.0, 2.0]))
    assert cache.node_logsum(2, np.zeros(3, dtype=bool), required=required) == -np.inf


def test_node_sample_draws_from_candidates(rng):
    cache = ScoreCache.build(SearchSpace.from_matrices(4), size_score)
    before = np.array([True, False, True, False])
    seen = set()
    for _ in range(200):
        parents, score = cache.node_sample(3, before, rng)
        assert set(parents.tolist()) <= {0, 2}
        assert score == len(parents)
        seen.add(tuple(parents.tolist()))
    assert seen == {(), (0,), (2,), (0, 2)}


def test_rebuild_reuses_tables_and_scores():
    counting = CountingScore(size_score)
    start = np.zeros((4, 4))
    start[0, 1] = 1
    space = SearchSpace.from_matrices(4, start)
    cache = ScoreCache.build(space, counting)
    calls = counting.calls
    extra = np.zeros((4, 4), dtype=bool)
    extra[2, 3] = True
    wider = cache.rebuild(space.with_edges(extra))
    assert wider.table(1) is cache.table(1)
    assert wider.table(3) is not cache.table(3)
    # node 3 only needs the new sets {0, 2} and {1, 2}
    assert counting.calls - calls < calls
    assert wider.get(3, [1, 2]) == 2.0


def test_parallel_build_matches_serial(bge_chain):
    space = SearchSpace.from_matrices(3)
    serial = ScoreCache.build(space, bge_chain)
    threaded = ScoreCache.build(space, bge_chain, n_jobs=2)
    for node in range(3):
        np.testing.assert_allclose(serial.table(node).scores, threaded.table(node).scores)


def test_score_table_mismatch():
    space = SearchSpace.from_matrices(3)
    table = ScoreTable(space, ScoreCache.build(space, size_score))
    check_score_table(table, 3, np.ones((3, 3)))
    with pytest.raises(ScoreTableMismatch, match="startspace"):
        check_score_table(table, 3, np.zeros((3, 3)))
    black = np.zeros((3, 3))
    black[0, 1] = 1
    with pytest.raises(ScoreTableMismatch, match="blacklisted"):
        check_score_table(table, 3, blacklist=black)
    with pytest.raises(ScoreTableMismatch):
        check_score_table(table, 4)
    other = ScoreCache.build(SearchSpace.from_matrices(3, np.zeros((3, 3))), size_score)
    with pytest.raises(ScoreTableMismatch):
        ScoreTable(space, other)


def test_score_table_must_match_background_nodes():
    flat = UserScore(lambda node, parents: 0.0, 3)
    table = order_mcmc(flat, iterations=20, scoreout=True, rng=0).scoretable
    with_bg = UserScore(lambda node, parents: 0.0, 3, bg_nodes=[2])
    with pytest.raises(ScoreTableMismatch, match="background nodes"):
        partition_mcmc(with_bg, iterations=20, scoretable=table, rng=0)
    with pytest.raises(ScoreTableMismatch, match="background nodes"):
        order_mcmc(with_bg, iterations=20, scoretable=table, rng=0)


def test_score_table_must_match_plus1_and_hardlimit():
    flat = UserScore(lambda node, parents: 0.0, 3)
    table = order_mcmc(flat, iterations=20, scoreout=True, rng=0).scoretable
    assert table.cache.plus1 and table.cache.hardlimit == 14
    with pytest.raises(ScoreTableMismatch, match="plus1"):
        order_mcmc(flat, plus1=False, iterations=20, scoretable=table, rng=0)
    with pytest.raises(ScoreTableMismatch, match="hardlimit"):
        order_mcmc(flat, hardlimit=1, iterations=20, scoretable=table, rng=0)
    # an unset hardlimit takes the table's
    reused = order_mcmc(flat, iterations=20, scoretable=table, rng=1)
    assert reused.info.space_algorithm == "score table"
    order_mcmc(flat, hardlimit=14, iterations=20, scoretable=table, rng=1)


def test_check_score_table_compares_settings():
    space = SearchSpace.from_matrices(3)
    table = ScoreTable(space, ScoreCache.build(space, size_score, plus1=False, hardlimit=2))
    check_score_table(table, 3, plus1=False, hardlimit=2)
    with pytest.raises(ScoreTableMismatch, match="plus1"):
        check_score_table(table, 3, plus1=True)
    with pytest.raises(ScoreTableMismatch, match="hardlimit"):
        check_score_table(table, 3, hardlimit=3)
    with pytest.raises(ScoreTableMismatch, match="background nodes"):
        check_score_table(table, 3, bg_nodes=[0])


def test_dag_score_reads_the_tables(bge_chain):
    cache = ScoreCache.build(SearchSpace.from_matrices(3), bge_chain)
    dag = np.array([[0, 1, 0], [0, 0, 1], [0, 0, 0]])
    assert cache.dag_score(dag) == pytest.approx(dag_score(bge_chain, dag))
    assert cache.dag_score(np.zeros((3, 3))) == pytest.approx(dag_score(bge_chain, np.zeros((3, 3))))
