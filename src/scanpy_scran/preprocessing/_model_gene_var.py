"""
Decomposition of per-gene variance into technical and biological parts.
"""

from dataclasses import dataclass, fields, replace
from typing import Any, Iterable, Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg
from scanpy.get import _get_obs_rep

from .._config import (
    ModelGeneVarConfig,
    TrendFitConfig,
    VarianceMode,
    resolve_config,
    resolve_mode,
)
from .._errors import InsufficientDataError, InvalidSpikeSetError
from .._utilities import parallel_map, subset_rows
from .._validate import validate_adata, validate_groups
from ..get import GeneSelection, var_mask
from ._loess_fit import TrendFunction, fit_trend_var
from ._normalization import _check_feature_class, _log_normalize
from ._size_factors import FeatureClass, SizeFactors, library_size_factors

STAT_COLS = ["mean", "total", "tech", "bio"]


@dataclass(frozen=True)
class VarianceModel:
    """
    Result of :func:`model_gene_var`.

    Attributes:
        stats: Per-gene ``mean``, ``total``, ``tech``, ``bio``, ``p_value``
            and ``FDR``, combined across blocks.
        per_block: The same statistics for every block.
        trends: The fitted trend of every block.
        mode: Source of the trend's training points.
        config: Options used for the fit.
    """

    stats: pd.DataFrame
    per_block: dict[str, pd.DataFrame]
    trends: dict[str, TrendFunction]
    mode: VarianceMode
    config: ModelGeneVarConfig

    @property
    def trend(self) -> TrendFunction:
        if len(self.trends) != 1:
            raise KeyError(
                f"model has {len(self.trends)} blocks, use `.trends[block]` instead."
            )
        return next(iter(self.trends.values()))


def _get_mean_var(X) -> tuple[np.ndarray, np.ndarray]:
    from scanpy.preprocessing._utils import _get_mean_var as _sc_get_mean_var

    means, vars = _sc_get_mean_var(X, axis=0)
    return np.asarray(means, dtype=np.float64), np.asarray(vars, dtype=np.float64)


def _decompose(
    means: np.ndarray,
    vars: np.ndarray,
    trend: TrendFunction,
) -> dict[str, np.ndarray]:
    from scipy import stats

    tech = trend(means)
    bio = vars - tech
    with np.errstate(divide="ignore", invalid="ignore"):
        p_value = stats.norm.sf(bio / tech, scale=trend.std_dev)
    p_value[~(tech > 0)] = np.nan
    return dict(
        mean=means,
        total=vars,
        tech=tech,
        bio=bio,
        p_value=p_value,
        FDR=_adjust_pvalues(p_value),
    )


def _adjust_pvalues(p_value: np.ndarray) -> np.ndarray:
    from scipy.stats import false_discovery_control

    fdr = np.full_like(p_value, np.nan)
    mask = ~np.isnan(p_value)
    if np.any(mask):
        fdr[mask] = false_discovery_control(p_value[mask], method="bh")
    return fdr


def _model_block(
    X,
    fit_mask: Optional[np.ndarray],
    trend_config: TrendFitConfig,
) -> tuple[dict[str, np.ndarray], TrendFunction]:
    means, vars = _get_mean_var(X)
    fm, fv = (means, vars) if fit_mask is None else (means[fit_mask], vars[fit_mask])
    trend = fit_trend_var(fm, fv, config=trend_config)
    return _decompose(means, vars, trend), trend


def _get_sim_mean_vars(
    mean_llim: float,
    mean_ulim: float,
    size_factors: np.ndarray,
    npts: int = 1000,
    dispersion: float = 0,
    pseudo_count: float = 1.0,
    random_state: Optional[int] = 0,
) -> tuple[np.ndarray, np.ndarray]:
    # log-spaced mean counts covering the observed range
    pts = np.exp2(np.linspace(np.log2(mean_llim), np.log2(mean_ulim), npts))
    _X = np.outer(size_factors, pts)

    rng = np.random.default_rng(seed=random_state)
    if dispersion == 0:
        sim_X = rng.poisson(lam=_X)
    else:
        size = 1.0 / dispersion
        prob = size / (size + _X)
        sim_X = rng.negative_binomial(n=size, p=prob)

    return _get_mean_var(
        _log_normalize(sim_X, size_factors=size_factors, pseudo_count=pseudo_count)
    )


def _model_block_poisson(
    X,
    size_factors: np.ndarray,
    config: ModelGeneVarConfig,
    random_state: Optional[int],
) -> tuple[dict[str, np.ndarray], TrendFunction]:
    means, vars = _get_mean_var(X)
    _means = means[means > 0.0]
    if _means.shape[0] == 0:
        raise InsufficientDataError("no gene with a positive mean in block.")

    mean_lim = np.exp2([np.nanmin(_means), np.nanmax(_means)]) - config.pseudo_count
    mean_lim = np.clip(mean_lim, 1e-3, None)
    if mean_lim[1] <= mean_lim[0]:
        mean_lim[1] = mean_lim[0] * 2
    sim_means, sim_vars = _get_sim_mean_vars(
        mean_lim[0],
        mean_lim[1],
        size_factors=size_factors,
        npts=config.npts,
        dispersion=config.dispersion,
        pseudo_count=config.pseudo_count,
        random_state=random_state,
    )
    trend = fit_trend_var(sim_means, sim_vars, config=config.trend)
    return _decompose(means, vars, trend), trend


def _combine_blocks(
    per_block: dict[str, pd.DataFrame],
    ncells: dict[str, int],
    equiweight: bool = True,
    method: str = "fisher",
) -> pd.DataFrame:
    from scipy import stats

    blocks = list(per_block.keys())
    if len(blocks) == 1:
        return per_block[blocks[0]].copy()

    weights = np.ones(len(blocks)) if equiweight else np.array(
        [ncells[b] for b in blocks], dtype=np.float64
    )
    weights = weights / np.sum(weights)

    res = dict()
    for x in STAT_COLS:
        res_pool = np.column_stack([per_block[b][x].to_numpy() for b in blocks])
        res[x] = res_pool @ weights

    pvals = np.column_stack([per_block[b]["p_value"].to_numpy() for b in blocks])
    valid = ~np.isnan(pvals)
    n_valid = valid.sum(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        if method == "fisher":
            statistic = -2 * np.nansum(np.log(pvals), axis=1)
            p_value = stats.chi2.sf(statistic, 2 * n_valid)
        else:
            p_value = np.minimum(np.nanmin(pvals, axis=1) * n_valid, 1.0)
    p_value[n_valid == 0] = np.nan
    res["p_value"] = p_value
    res["FDR"] = _adjust_pvalues(p_value)
    return pd.DataFrame(res, index=per_block[blocks[0]].index)


def _split_kwargs(
    config: Optional[ModelGeneVarConfig], kwargs: dict[str, Any]
) -> ModelGeneVarConfig:
    trend_keys = {f.name for f in fields(TrendFitConfig)}
    trend_kwargs = {k: kwargs.pop(k) for k in list(kwargs) if k in trend_keys}
    _config = resolve_config(ModelGeneVarConfig, config, **kwargs)
    if trend_kwargs:
        _config = replace(
            _config, trend=resolve_config(TrendFitConfig, _config.trend, **trend_kwargs)
        )
    return _config


def model_gene_var(
    adata: sc.AnnData,
    mode: Union[VarianceMode, str] = VarianceMode.ALL_GENES,
    spike_rows: Optional[GeneSelection] = None,
    block: Optional[Union[str, Iterable]] = None,
    size_factors: Optional[SizeFactors] = None,
    layer: Optional[str] = None,
    config: Optional[ModelGeneVarConfig] = None,
    **kwargs: Any,
) -> VarianceModel:
    """
    Model the per-gene variance of log-expression profiles.

    The variance of each gene is decomposed into a technical component,
    given by a mean-variance trend, and a biological component, the residual
    from the trend. The trend is fitted to all genes, to spike-in transcripts
    only, or to simulated Poisson counts.

    Args:
        adata: Annotated data matrix. Holds log-expression values, or counts
            when ``mode="poisson"``.
        mode: Source of the trend's training points.
        spike_rows: Spike-in genes, required when ``mode="spike_ins"``.
        block: Column of ``adata.obs`` or one label per cell. Statistics are
            computed within each block and averaged.
        size_factors: Endogenous size factors for ``mode="poisson"``,
            defaults to library size factors.
        layer: Layer to use, defaults to ``.X``.
        config: Options, see :class:`~scanpy_scran.ModelGeneVarConfig`.
        **kwargs: Overrides of single ``config`` or trend fields.

    Returns:
        The fitted :class:`VarianceModel`.
    """
    validate_adata(adata, "model_gene_var")
    _mode = resolve_mode(mode)
    _config = _split_kwargs(config, dict(kwargs))

    X = _get_obs_rep(adata, layer=layer)
    fit_mask = None
    if _mode == VarianceMode.SPIKE_INS:
        fit_mask = var_mask(adata, spike_rows)
        if fit_mask is None or not fit_mask.any():
            raise InvalidSpikeSetError("mode 'spike_ins' requires spike-in rows.")
    elif spike_rows is not None:
        logg.warning(f"ignoring 'spike_rows' in mode {_mode.value!r}")

    if _mode == VarianceMode.POISSON:
        _sf = (
            library_size_factors(adata, layer=layer)
            if size_factors is None
            else size_factors
        )
        _check_feature_class(_sf, FeatureClass.ENDOGENOUS, "endogenous")
        sf = _sf.aligned(adata.obs_names)
        sf = sf / np.mean(sf)
        X = _log_normalize(X, sf, pseudo_count=_config.pseudo_count)

    if block is None:
        labels = np.full(adata.n_obs, "all")
        levels = ["all"]
        start = logg.info(f"modelling gene variance using {_mode.value}")
    else:
        labels, levels = validate_groups(adata, block, name="block")
        start = logg.info(
            f"modelling gene variance using {_mode.value} in {len(levels)} blocks"
        )

    ncells = {b: int(np.sum(labels == b)) for b in levels}
    for b, n in ncells.items():
        if n < max(2, _config.min_cells):
            raise InsufficientDataError(
                f"block {b} has {n} cell(s), at least {max(2, _config.min_cells)} "
                "are required for variance estimation."
            )

    tasks = dict()
    if _mode == VarianceMode.POISSON:
        seeds = np.random.SeedSequence(_config.random_state).spawn(len(levels))
        for b, seed in zip(levels, seeds):
            idx = labels == b
            tasks[b] = (
                subset_rows(X, idx),
                sf[idx],
                _config,
                int(seed.generate_state(1)[0]),
            )
        res_collector = parallel_map(_model_block_poisson, tasks, n_jobs=_config.n_jobs)
    else:
        for b in levels:
            tasks[b] = (subset_rows(X, labels == b), fit_mask, _config.trend)
        res_collector = parallel_map(_model_block, tasks, n_jobs=_config.n_jobs)

    per_block = {
        b: pd.DataFrame(res_collector[b][0], index=adata.var_names) for b in levels
    }
    trends = {b: res_collector[b][1] for b in levels}
    stats = _combine_blocks(
        per_block,
        ncells,
        equiweight=_config.equiweight,
        method=_config.combine_pvalues,
    )

    logg.info("    finished", time=start)
    return VarianceModel(
        stats=stats,
        per_block=per_block,
        trends=trends,
        mode=_mode,
        config=_config,
    )


__all__ = [
    "VarianceModel",
    "model_gene_var",
]
