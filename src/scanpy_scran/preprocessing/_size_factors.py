"""
Per-cell size factors.

Size factors always travel together with the feature class they were
derived from, so that factors computed from endogenous genes cannot be
applied to spike-in transcripts (and vice versa) by accident.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg
from scanpy.get import _get_obs_rep
from scipy import sparse

from .._config import PoolingConfig, resolve_config
from .._errors import (
    DegenerateClusterError,
    InsufficientDataError,
    InvalidArgumentError,
    InvalidSpikeSetError,
    SingularSystemError,
    ZeroSizeFactorError,
)
from .._utilities import parallel_map, row_sums, subset_rows, to_dense
from .._validate import validate_adata, validate_groups
from ..get import GeneSelection, var_mask


class FeatureClass(Enum):
    """Class of features that size factors were derived from and apply to."""

    ENDOGENOUS = "endogenous"
    SPIKE_IN = "spike_in"


@dataclass(frozen=True)
class SizeFactors:
    """
    Strictly positive per-cell scaling factors.

    Attributes:
        values: One factor per cell, indexed by ``obs_names``.
        feature_class: Features the factors were derived from.
        method: Estimator that produced the factors.
    """

    values: pd.Series
    feature_class: FeatureClass = FeatureClass.ENDOGENOUS
    method: str = "custom"

    def __post_init__(self):
        if not isinstance(self.values, pd.Series):
            object.__setattr__(self, "values", pd.Series(self.values, dtype=np.float64))
        if not isinstance(self.feature_class, FeatureClass):
            object.__setattr__(self, "feature_class", FeatureClass(self.feature_class))
        vals = self.values.to_numpy(dtype=np.float64)
        bad = ~np.isfinite(vals) | (vals <= 0)
        if bad.any():
            raise ZeroSizeFactorError(
                f"{bad.sum()} size factor(s) are not strictly positive, e.g. for "
                f"cell(s) {list(self.values.index[bad][:5])}."
            )

    def __len__(self) -> int:
        return self.values.shape[0]

    def to_numpy(self) -> np.ndarray:
        return self.values.to_numpy(dtype=np.float64)

    def centered(self) -> "SizeFactors":
        """Factors rescaled to a mean of 1."""
        return SizeFactors(
            self.values / self.values.mean(),
            feature_class=self.feature_class,
            method=self.method,
        )

    def aligned(self, obs_names: pd.Index) -> np.ndarray:
        """Factors in the order of ``obs_names``."""
        if self.values.index.equals(obs_names):
            return self.to_numpy()
        if isinstance(self.values.index, pd.RangeIndex):
            if len(self) != len(obs_names):
                raise InvalidArgumentError(
                    f"got {len(self)} size factors for {len(obs_names)} cells."
                )
            return self.to_numpy()
        missing = obs_names.difference(self.values.index)
        if len(missing) > 0:
            raise KeyError(f"No size factors for cells {list(missing)[:5]}.")
        return self.values.loc[obs_names].to_numpy(dtype=np.float64)


def _centered_factors(
    totals: np.ndarray,
    obs_names: pd.Index,
    feature_class: FeatureClass,
    method: str,
) -> SizeFactors:
    zero = totals <= 0
    if zero.any():
        raise ZeroSizeFactorError(
            f"{zero.sum()} cell(s) have a zero total count, e.g. "
            f"{list(obs_names[zero][:5])}; remove them before computing size factors."
        )
    return SizeFactors(
        pd.Series(totals / np.mean(totals), index=obs_names),
        feature_class=feature_class,
        method=method,
    )


def library_size_factors(
    adata: sc.AnnData,
    layer: Optional[str] = None,
    subset_rows: Optional[GeneSelection] = None,
) -> SizeFactors:
    """
    Size factors proportional to the total count of each cell.

    Args:
        adata: Annotated data matrix of counts.
        layer: Layer holding counts, defaults to ``.X``.
        subset_rows: Genes used to compute totals, defaults to all genes.

    Returns:
        Endogenous size factors with a mean of 1.
    """
    validate_adata(adata, "library_size_factors")
    X = _get_obs_rep(adata, layer=layer)
    mask = var_mask(adata, subset_rows)
    if mask is not None:
        X = X[:, mask]
    return _centered_factors(
        row_sums(X), adata.obs_names, FeatureClass.ENDOGENOUS, "library"
    )


def compute_spike_factors(
    adata: sc.AnnData,
    spike_rows: GeneSelection,
    layer: Optional[str] = None,
) -> SizeFactors:
    """
    Size factors proportional to the total spike-in count of each cell.

    Spike-in transcripts are added in equal amounts to every cell, so their
    totals only reflect technical biases. The factors are tagged as spike-in
    factors and are refused for endogenous genes.

    Args:
        adata: Annotated data matrix of counts.
        spike_rows: Spike-in genes.
        layer: Layer holding counts, defaults to ``.X``.

    Returns:
        Spike-in size factors with a mean of 1.
    """
    validate_adata(adata, "compute_spike_factors")
    mask = var_mask(adata, spike_rows)
    if mask is None or not mask.any():
        raise InvalidSpikeSetError("no spike-in rows provided.")
    X = _get_obs_rep(adata, layer=layer)[:, mask]
    return _centered_factors(
        row_sums(X), adata.obs_names, FeatureClass.SPIKE_IN, "spike_in"
    )


def _ring_order(lib_sizes: np.ndarray) -> np.ndarray:
    # odd ranks ascending, even ranks descending
    ordering = np.argsort(lib_sizes, kind="stable")
    return np.concatenate([ordering[0::2], ordering[1::2][::-1]])


def _pool_design(
    Y: np.ndarray,
    lib_sizes: np.ndarray,
    sizes: Iterable[int],
    min_pool_size: float,
) -> tuple[sparse.csr_matrix, np.ndarray]:
    n_cells = Y.shape[0]
    ref = Y.mean(axis=0)
    use_genes = ref > 0
    _Y = Y[:, use_genes]
    _ref = ref[use_genes]

    ring = _ring_order(lib_sizes)
    max_size = max(sizes)
    wrapped = np.concatenate([ring, ring[: max_size - 1]])
    csum = np.vstack([np.zeros((1, _Y.shape[1])), np.cumsum(_Y[wrapped], axis=0)])
    lib_csum = np.concatenate([[0.0], np.cumsum(lib_sizes[wrapped])])
    starts = np.arange(n_cells)

    rows, cols, ratios = [], [], []
    n_pools = 0
    for s in sizes:
        pool_libs = lib_csum[starts + s] - lib_csum[starts]
        keep = starts[pool_libs >= min_pool_size]
        if keep.shape[0] == 0:
            continue
        pooled = csum[keep + s] - csum[keep]
        ratios.append(np.median(pooled / _ref, axis=1))
        members = ring[(keep[:, None] + np.arange(s)[None, :]) % n_cells]
        rows.append(np.repeat(np.arange(n_pools, n_pools + keep.shape[0]), s))
        cols.append(members.ravel())
        n_pools += keep.shape[0]

    if n_pools == 0:
        return sparse.csr_matrix((0, n_cells)), np.zeros(0)
    design = sparse.csr_matrix(
        (
            np.ones(sum(r.shape[0] for r in rows)),
            (np.concatenate(rows), np.concatenate(cols)),
        ),
        shape=(n_pools, n_cells),
    )
    return design, np.concatenate(ratios)


def _solve_pool_design(
    design: sparse.csr_matrix,
    ratios: np.ndarray,
    cluster: str,
    sizes: tuple[int, ...],
    rtol: float = 1e-10,
) -> np.ndarray:
    """
    Least-squares solution of the pool equations.

    The normal equations stay sparse, since each cell only shares pools with
    cells less than ``max(sizes)`` ring positions away. They are factored with
    symmetric (diagonal) pivoting, so a vanishing pivot marks a rank-deficient
    design.
    """
    from scipy.sparse.linalg import splu

    n_cells = design.shape[1]
    AtA = sparse.csc_matrix(design.T @ design)
    hint = (
        f"pool design of cluster {cluster} with {n_cells} cells and window "
        f"size(s) {list(sizes)} is singular; "
    )
    if len(sizes) == 1:
        # e.g. 21 to 25 cells with the default sizes
        hint += "only one window size fits into the cluster, "
    hint += "use smaller or more 'sizes', a smaller 'min_pool_size', or merge clusters."
    try:
        lu = splu(
            AtA,
            permc_spec="MMD_AT_PLUS_A",
            diag_pivot_thresh=0.0,
            options=dict(SymmetricMode=True),
        )
    except RuntimeError as err:
        raise SingularSystemError(hint) from err
    pivots = np.abs(lu.U.diagonal())
    if pivots.min() <= rtol * pivots.max():
        raise SingularSystemError(hint)
    return lu.solve(design.T @ ratios)


def _deconvolve_cluster(
    X,
    lib_sizes: np.ndarray,
    sizes: tuple[int, ...],
    min_pool_size: float,
    cluster: str,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Estimate size factors of the cells of one cluster.

    Returns:
        Tuple of per-cell factors and the average library-normalized
        profile used as the reference pseudo-cell.
    """
    from scipy import optimize

    n_cells = X.shape[0]
    _sizes = tuple(s for s in sizes if s <= n_cells)
    if len(_sizes) == 0:
        raise DegenerateClusterError(
            f"cluster {cluster} has {n_cells} cells, fewer than the smallest pool "
            f"size {min(sizes)}; use smaller 'sizes' or merge clusters."
        )

    Y = to_dense(X) / lib_sizes[:, None]
    ave_cell = Y.mean(axis=0)
    design, ratios = _pool_design(Y, lib_sizes, _sizes, min_pool_size)
    if design.shape[0] == 0:
        raise DegenerateClusterError(
            f"no pool of cluster {cluster} reaches a summed library size of "
            f"{min_pool_size}; lower 'min_pool_size' or merge clusters."
        )

    theta = _solve_pool_design(design, ratios, cluster, _sizes)

    if np.any(theta <= 0):
        logg.warning(
            f"encountered non-positive size factor estimates in cluster {cluster}, "
            "re-solving with positivity constraints"
        )
        theta = optimize.lsq_linear(design, ratios, bounds=(0, np.inf)).x
        if np.any(theta <= 0):
            raise DegenerateClusterError(
                f"could not estimate positive size factors for {np.sum(theta <= 0)} "
                f"cell(s) of cluster {cluster}; increase 'sizes' or merge clusters."
            )
    return theta * lib_sizes, ave_cell


def _rescale_clusters(
    ave_cells: dict[str, np.ndarray],
    ref_cluster: str,
) -> dict[str, float]:
    ref = ave_cells[ref_cluster]
    rescaling = dict()
    for k, ave in ave_cells.items():
        valid = (ave > 0) & (ref > 0)
        if not valid.any():
            raise DegenerateClusterError(
                f"cluster {k} shares no expressed genes with reference cluster "
                f"{ref_cluster}."
            )
        rescaling[k] = float(np.median(ave[valid] / ref[valid]))
    return rescaling


def pooled_size_factors(
    adata: sc.AnnData,
    clusters: Optional[Union[str, Iterable]] = None,
    layer: Optional[str] = None,
    config: Optional[PoolingConfig] = None,
    **kwargs: Any,
) -> SizeFactors:
    """
    Size factors by deconvolution of pooled cells.

    Within each cluster, cells are summed into overlapping pools; each pool's
    size factor relative to the cluster's average cell is the median ratio
    over genes, which is robust to a minority of differentially expressed
    genes. The pooled factors are deconvolved into per-cell factors by
    least squares, clusters are put on a common scale by the median ratio of
    their average profiles, and the factors are centered to a mean of 1.

    Args:
        adata: Annotated data matrix of counts.
        clusters: Column of ``adata.obs`` or one label per cell, e.g. from
            :func:`~scanpy_scran.pp.quick_cluster`. Defaults to a single cluster.
        layer: Layer holding counts, defaults to ``.X``.
        config: Pooling options, see :class:`~scanpy_scran.PoolingConfig`.
        **kwargs: Overrides of single ``config`` fields.

    Returns:
        Endogenous size factors with a mean of 1.
    """
    validate_adata(adata, "pooled_size_factors")
    _config = resolve_config(PoolingConfig, config, **kwargs)
    assert len(_config.sizes) > 0 and min(_config.sizes) >= 1, (
        f"'sizes' must be positive integers: {_config.sizes}"
    )
    sizes = tuple(sorted(set(int(s) for s in _config.sizes)))

    start = logg.info("computing pooled size factors")
    X = _get_obs_rep(adata, layer=layer)
    if sparse.issparse(X):
        X = sparse.csr_matrix(X)
    lib_sizes = row_sums(X)
    zero = lib_sizes <= 0
    if zero.any():
        raise ZeroSizeFactorError(
            f"{zero.sum()} cell(s) have a zero total count, e.g. "
            f"{list(adata.obs_names[zero][:5])}; remove them before computing "
            "size factors."
        )

    # Filter out low-abundance genes
    scaled = lib_sizes / np.mean(lib_sizes)
    ave_counts = np.asarray(
        (sparse.diags(1.0 / scaled) @ X).mean(axis=0)
        if sparse.issparse(X)
        else (X / scaled[:, None]).mean(axis=0)
    ).ravel()
    keep_genes = ave_counts >= _config.min_mean
    if not keep_genes.any():
        raise InsufficientDataError(
            f"no genes with an average count of at least {_config.min_mean}."
        )
    logg.debug(
        f"using {keep_genes.sum()} genes with average count >= {_config.min_mean}"
    )
    X = X[:, keep_genes]

    if clusters is None:
        labels = np.full(adata.n_obs, "0")
        levels = ["0"]
    else:
        labels, levels = validate_groups(adata, clusters, name="clusters")

    tasks = dict()
    for k in levels:
        idx = labels == k
        tasks[k] = (
            subset_rows(X, idx),
            lib_sizes[idx],
            sizes,
            _config.min_pool_size,
            k,
        )
    res_collector = parallel_map(_deconvolve_cluster, tasks, n_jobs=_config.n_jobs)

    if _config.ref_cluster is None:
        ref_cluster = max(levels, key=lambda k: (np.sum(labels == k), -levels.index(k)))
    else:
        ref_cluster = str(_config.ref_cluster)
        if ref_cluster not in levels:
            raise InvalidArgumentError(f"'ref_cluster' {ref_cluster} is not a cluster.")
    rescaling = _rescale_clusters(
        {k: res_collector[k][1] for k in levels}, ref_cluster
    )

    factors = np.zeros(adata.n_obs, dtype=np.float64)
    for k in levels:
        factors[labels == k] = res_collector[k][0] * rescaling[k]
    factors = factors / np.mean(factors)

    logg.info(
        "    finished",
        time=start,
        deep=f"deconvolved {len(levels)} cluster(s), reference cluster {ref_cluster}",
    )
    return SizeFactors(
        pd.Series(factors, index=adata.obs_names),
        feature_class=FeatureClass.ENDOGENOUS,
        method="deconvolution",
    )


__all__ = [
    "FeatureClass",
    "SizeFactors",
    "library_size_factors",
    "compute_spike_factors",
    "pooled_size_factors",
]
