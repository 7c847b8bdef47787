import numpy as np
import pandas as pd
import pytest

from structure_mcmc.cli import build_parser, main


@pytest.fixture
def data_csv(tmp_path, chain_data):
    path = tmp_path / "data.csv"
    pd.DataFrame(chain_data, columns=["A", "B", "C"]).to_csv(path, index=False)
    return path


def test_parser_rejects_unknown_algorithm():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["hill-climbing", "data.csv"])


@pytest.mark.parametrize("algorithm", ["order", "partition", "iterative"])
def test_writes_labelled_adjacency_matrix(algorithm, data_csv, tmp_path, capsys):
    out = tmp_path / "dag.csv"
    code = main([algorithm, str(data_csv), "-i", "200", "--seed", "3", "-o", str(out)])
    assert code == 0
    frame = pd.read_csv(out, index_col=0)
    assert list(frame.columns) == ["A", "B", "C"]
    assert list(frame.index) == ["A", "B", "C"]
    dag = frame.to_numpy()
    assert set(np.unique(dag)) <= {0, 1}
    assert np.all(np.diag(dag) == 0)
    assert "score:" in capsys.readouterr().out


def test_blacklist_file_is_honoured(data_csv, tmp_path):
    blacklist = np.zeros((3, 3), dtype=int)
    blacklist[0, 1] = blacklist[1, 0] = 1
    bl_path = tmp_path / "blacklist.csv"
    pd.DataFrame(blacklist, index=list("ABC"), columns=list("ABC")).to_csv(bl_path)
    out = tmp_path / "dag.csv"
    code = main(["order", str(data_csv), "-i", "200", "--seed", "0", "--blacklist", str(bl_path), "-o", str(out)])
    assert code == 0
    dag = pd.read_csv(out, index_col=0).to_numpy()
    assert dag[0, 1] == 0 and dag[1, 0] == 0


def test_invalid_matrix_exits_with_error(data_csv, tmp_path):
    bad = tmp_path / "space.csv"
    pd.DataFrame(np.ones((2, 2), dtype=int), index=list("AB"), columns=list("AB")).to_csv(bad)
    assert main(["order", str(data_csv), "-i", "50", "--startspace", str(bad)]) == 2
