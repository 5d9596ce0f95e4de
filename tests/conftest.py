"""Shared synthetic datasets.

All datasets are AnnData objects with cells as observations and genes as
variables, generated from fixed seeds.
"""

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scanpy_scran import pp


def _make_adata(counts: np.ndarray, gene_prefix: str = "g") -> ad.AnnData:
    n_cells, n_genes = counts.shape
    return ad.AnnData(
        X=counts.astype(np.float64),
        obs=pd.DataFrame(index=[f"c{i}" for i in range(n_cells)]),
        var=pd.DataFrame(index=[f"{gene_prefix}{j}" for j in range(n_genes)]),
    )


@pytest.fixture
def poisson_counts() -> ad.AnnData:
    """Pure Poisson counts without biological variation."""
    rng = np.random.default_rng(0)
    n_cells, n_genes = 300, 400
    rates = np.exp(rng.uniform(np.log(0.5), np.log(50.0), n_genes))
    true_sf = np.exp(rng.normal(0.0, 0.2, n_cells))
    counts = rng.poisson(np.outer(true_sf, rates))
    adata = _make_adata(counts)
    adata.obs["true_sf"] = true_sf / true_sf.mean()
    return adata


@pytest.fixture
def poisson_logs(poisson_counts: ad.AnnData) -> ad.AnnData:
    """Log-normalized version of `poisson_counts`."""
    adata = poisson_counts.copy()
    sf = pp.library_size_factors(adata)
    adata.layers["counts"] = adata.X.copy()
    adata.X = pp.log_norm_counts(adata, sf)
    return adata


@pytest.fixture
def spike_adata() -> ad.AnnData:
    """Two groups of cells differing in 30 genes, plus 50 spike-in transcripts."""
    rng = np.random.default_rng(1)
    n_cells, n_genes, n_de, n_spikes = 300, 400, 30, 50
    group = np.repeat(["A", "B"], n_cells // 2)
    rates = np.exp(rng.uniform(np.log(1.0), np.log(50.0), n_genes))
    mu = np.tile(rates, (n_cells, 1))
    mu[group == "B", :n_de] *= 8.0
    true_sf = np.exp(rng.normal(0.0, 0.2, n_cells))
    counts = rng.poisson(true_sf[:, None] * mu)

    spike_rates = np.exp(np.linspace(np.log(1.0), np.log(500.0), n_spikes))
    spike_counts = rng.poisson(np.outer(true_sf, spike_rates))

    adata = ad.AnnData(
        X=np.hstack([counts, spike_counts]).astype(np.float64),
        obs=pd.DataFrame(
            {"group": pd.Categorical(group)},
            index=[f"c{i}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(
            {"is_spike": np.r_[np.zeros(n_genes, bool), np.ones(n_spikes, bool)]},
            index=[f"g{j}" for j in range(n_genes)]
            + [f"ERCC-{j:05d}" for j in range(n_spikes)],
        ),
    )
    adata.layers["counts"] = adata.X.copy()
    sf = pp.library_size_factors(adata, subset_rows=~adata.var["is_spike"].to_numpy())
    spike_sf = pp.compute_spike_factors(adata, "is_spike")
    adata.X = pp.log_norm_counts(
        adata, sf, spike_rows="is_spike", spike_factors=spike_sf
    )
    adata.uns["de_genes"] = [f"g{j}" for j in range(n_de)]
    return adata
