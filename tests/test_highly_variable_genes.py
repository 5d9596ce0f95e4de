"""Tests for highly variable gene selection."""

import math

import numpy as np
import pandas as pd
import pytest

from scanpy_scran import InvalidArgumentError, pp


@pytest.fixture
def stats() -> pd.DataFrame:
    bio = [0.5, 2.0, -0.3, 2.0, np.nan, 1.0, -1.0, 0.0]
    return pd.DataFrame(
        {
            "bio": bio,
            "FDR": [0.5, 0.01, 0.9, 0.2, np.nan, 0.04, 1.0, 0.7],
        },
        index=[f"g{i}" for i in range(len(bio))],
    )


def test_top_n_sorted_with_stable_ties(stats):
    assert pp.get_top_hvgs(stats, n=4) == ["g1", "g3", "g5", "g0"]


def test_negative_and_nan_ranked_last(stats):
    assert pp.get_top_hvgs(stats, n=8) == [
        "g1",
        "g3",
        "g5",
        "g0",
        "g7",
        "g2",
        "g6",
        "g4",
    ]


def test_more_requested_than_available(stats):
    assert len(pp.get_top_hvgs(stats, n=100)) == stats.shape[0]
    assert pp.get_top_hvgs(stats, n=0) == []


@pytest.mark.parametrize("prop", [0.1, 0.25, 0.3, 0.5, 1.0])
def test_prop_matches_n(poisson_logs, prop):
    res = pp.model_gene_var(poisson_logs)
    n_genes = poisson_logs.n_vars
    by_prop = pp.get_top_hvgs(res, prop=prop)
    assert len(by_prop) == math.ceil(prop * n_genes)
    assert by_prop == pp.get_top_hvgs(res, n=math.ceil(prop * n_genes))
    bio = res.stats.loc[by_prop, "bio"].to_numpy()
    assert np.all(np.diff(bio) <= 0)


def test_exactly_one_of_n_and_prop(stats):
    with pytest.raises(InvalidArgumentError):
        pp.get_top_hvgs(stats)
    with pytest.raises(InvalidArgumentError):
        pp.get_top_hvgs(stats, n=2, prop=0.5)
    with pytest.raises(InvalidArgumentError):
        pp.get_top_hvgs(stats, prop=1.5)
    with pytest.raises(InvalidArgumentError):
        pp.get_top_hvgs(stats, n=-1)


def test_thresholds(stats):
    assert pp.get_top_hvgs(stats, n=10, var_threshold=0.0) == ["g1", "g3", "g5", "g0"]
    assert pp.get_top_hvgs(stats, n=10, fdr_threshold=0.05) == ["g1", "g5"]


def test_highly_variable_genes_inplace(spike_adata):
    adata = spike_adata.copy()
    ret = pp.highly_variable_genes(
        adata, n_top_genes=30, mode="spike_ins", spike_rows="is_spike"
    )
    assert ret is None
    assert adata.var["highly_variable"].sum() == 30
    for col in ["means", "variances", "tech", "bio", "p_value", "FDR"]:
        assert col in adata.var.columns
    assert adata.uns["hvg"]["mode"] == "spike_ins"


def test_highly_variable_genes_bio_matches_components(poisson_logs):
    adata = poisson_logs.copy()
    pp.highly_variable_genes(adata, n_top_genes=50)
    assert adata.var["bio"].dtype == np.float64
    np.testing.assert_array_equal(
        adata.var["bio"], adata.var["variances"] - adata.var["tech"]
    )


def test_highly_variable_genes_subset_frame(poisson_logs):
    df = pp.highly_variable_genes(poisson_logs, prop=0.1, inplace=False, subset=True)
    assert df.shape[0] == 40
    assert df["highly_variable"].all()
    assert "highly_variable" not in poisson_logs.var.columns


def test_highly_variable_genes_subset_inplace(poisson_logs):
    adata = poisson_logs.copy()
    batch = np.repeat(["a", "b"], 150)
    pp.highly_variable_genes(adata, n_top_genes=25, batch_key=batch, subset=True)
    assert adata.n_vars == 25
