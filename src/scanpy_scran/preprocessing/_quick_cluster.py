from typing import Any, Optional

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg
from scanpy.get import _get_obs_rep

from .._config import QuickClusterConfig, resolve_config
from .._validate import validate_adata
from ._normalization import _log_normalize
from ._size_factors import library_size_factors


def _single_cluster(adata: sc.AnnData, reason: str) -> pd.Series:
    logg.warning(f"{reason}, assigning all cells to a single cluster")
    return pd.Series(
        pd.Categorical(np.full(adata.n_obs, "0")), index=adata.obs_names, name="cluster"
    )


def _best_cut(
    pcs: np.ndarray,
    Z: np.ndarray,
    config: QuickClusterConfig,
) -> tuple[Optional[np.ndarray], float]:
    from scipy.cluster.hierarchy import fcluster
    from sklearn.metrics import silhouette_score

    n_cells = pcs.shape[0]
    sample_size = min(n_cells, config.silhouette_sample_size)
    best_labels, best_score = None, -np.inf
    for k in range(2, min(config.max_clusters, n_cells // config.min_size) + 1):
        labels = fcluster(Z, t=k, criterion="maxclust")
        _, counts = np.unique(labels, return_counts=True)
        if counts.shape[0] < 2 or counts.min() < config.min_size:
            continue
        score = silhouette_score(
            pcs, labels, sample_size=sample_size, random_state=config.random_state
        )
        logg.debug(f"k={counts.shape[0]}: mean silhouette width {score:.3f}")
        if score > best_score:
            best_labels, best_score = labels, score
    return best_labels, best_score


def quick_cluster(
    adata: sc.AnnData,
    layer: Optional[str] = None,
    config: Optional[QuickClusterConfig] = None,
    **kwargs: Any,
) -> pd.Series:
    """
    Coarse clustering of cells for pooled size factor estimation.

    Counts are log-normalized with library size factors and reduced with
    PCA. The cells are clustered hierarchically and the tree is cut at the
    number of clusters with the largest mean silhouette width among the cuts
    whose clusters all have at least ``min_size`` cells. Populations that are
    too small or lack structure end up in a single cluster.

    Args:
        adata: Annotated data matrix of counts.
        layer: Layer holding counts, defaults to ``.X``.
        config: Clustering options, see :class:`~scanpy_scran.QuickClusterConfig`.
        **kwargs: Overrides of single ``config`` fields.

    Returns:
        Categorical cluster labels indexed by ``obs_names``.
    """
    from fastcluster import linkage
    from scanpy.preprocessing._utils import _get_mean_var

    validate_adata(adata, "quick_cluster")
    _config = resolve_config(QuickClusterConfig, config, **kwargs)
    assert _config.min_size >= 1, f"'min_size' must be positive: {_config.min_size}"

    start = logg.info("computing quick clusters")
    if adata.n_obs < 2 * _config.min_size:
        return _single_cluster(
            adata, f"{adata.n_obs} cells cannot form two clusters of {_config.min_size}"
        )

    sf = library_size_factors(adata, layer=layer).to_numpy()
    X = _log_normalize(_get_obs_rep(adata, layer=layer), sf)
    _, vars = _get_mean_var(X, axis=0)
    X = X[:, np.asarray(vars) > 0]
    n_comps = min(_config.n_pcs, X.shape[0] - 1, X.shape[1] - 1)
    if n_comps < 1:
        return _single_cluster(adata, "no variable genes")

    pcs = sc.pp.pca(
        X,
        n_comps=n_comps,
        zero_center=True,
        svd_solver="arpack",
        random_state=_config.random_state,
    )
    logg.debug(f"computed {n_comps} principal components", time=start)

    Z = linkage(np.asarray(pcs, dtype=np.float64), method=_config.linkage_method)
    labels, score = _best_cut(pcs, Z, _config)
    if labels is None:
        return _single_cluster(adata, "no cut yields clusters of sufficient size")
    if score < _config.min_silhouette:
        return _single_cluster(
            adata,
            f"mean silhouette width {score:.3f} is below {_config.min_silhouette}",
        )

    # number clusters by their first cell
    _, first = np.unique(labels, return_index=True)
    relabel = {labels[i]: str(j) for j, i in enumerate(np.sort(first))}
    ret = pd.Series(
        pd.Categorical(
            [relabel[x] for x in labels], categories=[str(j) for j in range(len(first))]
        ),
        index=adata.obs_names,
        name="cluster",
    )
    logg.info(
        f"    finished, found {len(first)} clusters",
        time=start,
    )
    return ret
