"""Tests for the coarse clustering used before pooling."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scanpy_scran import QuickClusterConfig, pp


@pytest.fixture
def two_populations() -> ad.AnnData:
    rng = np.random.default_rng(4)
    n_genes = 200
    rates = np.exp(rng.uniform(np.log(2.0), np.log(30.0), n_genes))
    rates_b = rates.copy()
    rates_b[:50] *= 10.0
    rates_b[50:100] /= 10.0
    true_sf = np.exp(rng.normal(0.0, 0.2, 300))
    mu = np.vstack([np.tile(rates, (150, 1)), np.tile(rates_b, (150, 1))])
    counts = rng.poisson(true_sf[:, None] * mu)
    return ad.AnnData(
        X=counts.astype(np.float64),
        obs=pd.DataFrame(index=[f"c{i}" for i in range(300)]),
        var=pd.DataFrame(index=[f"g{j}" for j in range(n_genes)]),
    )


def test_separates_populations(two_populations):
    clusters = pp.quick_cluster(two_populations, min_size=50, n_pcs=10)
    assert isinstance(clusters.dtype, pd.CategoricalDtype)
    assert clusters.index.equals(two_populations.obs_names)
    assert list(clusters.cat.categories) == ["0", "1"]
    np.testing.assert_array_equal(clusters.to_numpy(), np.repeat(["0", "1"], 150))


def test_clusters_feed_pooling(two_populations):
    clusters = pp.quick_cluster(two_populations, min_size=50, n_pcs=10)
    sf = pp.pooled_size_factors(two_populations, clusters=clusters)
    assert sf.values.mean() == pytest.approx(1.0)
    assert np.all(sf.to_numpy() > 0)


def test_homogeneous_cells_form_one_cluster(poisson_counts):
    clusters = pp.quick_cluster(poisson_counts, min_size=50, n_pcs=10)
    assert clusters.nunique() == 1
    assert (clusters == "0").all()


def test_too_few_cells(two_populations):
    clusters = pp.quick_cluster(two_populations, min_size=200)
    assert clusters.shape[0] == two_populations.n_obs
    assert clusters.nunique() == 1


def test_deterministic(two_populations):
    config = QuickClusterConfig(min_size=30, n_pcs=10, random_state=3)
    a = pp.quick_cluster(two_populations, config=config)
    b = pp.quick_cluster(two_populations, config=config)
    pd.testing.assert_series_equal(a, b)
    assert a.notna().all()
    assert a.value_counts().min() >= 30
