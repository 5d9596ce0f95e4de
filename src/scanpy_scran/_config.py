"""
Per-operation configuration.

Every operation takes one frozen dataclass enumerating the options it
recognizes. Configurations are passed by value: callers either build one
explicitly or override single fields with keyword arguments, which are
resolved into a fresh instance by :func:`resolve_config`.
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Literal, Optional, Type, TypeVar

from ._errors import InvalidArgumentError

ConfigT = TypeVar("ConfigT")


class VarianceMode(Enum):
    """Source of the training points for the mean-variance trend."""

    ALL_GENES = "all_genes"
    SPIKE_INS = "spike_ins"
    POISSON = "poisson"


@dataclass(frozen=True)
class TrendFitConfig:
    """
    Options of :func:`~scanpy_scran.pp.fit_trend_var`.

    Attributes:
        flavor: Fit a parametric curve, a LOWESS curve, or a parametric curve
            refined by LOWESS.
        span: LOWESS span. Controls the effective degrees of freedom of the
            fit, smaller spans follow individual genes more closely.
        use_density_weights: Weight points by the inverse density of means.
        min_mean: Points with lower means are not used for fitting.
        iterations: Robustness iterations of the LOWESS fit.
    """

    flavor: Literal["parametric", "lowess", "both"] = "both"
    span: float = 0.3
    use_density_weights: bool = True
    min_mean: float = 0.1
    iterations: int = 3


@dataclass(frozen=True)
class ModelGeneVarConfig:
    """
    Options of :func:`~scanpy_scran.pp.model_gene_var`.

    Attributes:
        trend: Options forwarded to the trend fit of every block.
        min_cells: Minimum number of cells per block.
        equiweight: Average blocks with equal weight, otherwise weight each
            block by its number of cells.
        combine_pvalues: Combine per-block p-values with Fisher's method or
            with a Bonferroni-adjusted minimum.
        npts: Number of simulated mean counts in Poisson mode.
        dispersion: Negative binomial dispersion of the simulated counts,
            0 for Poisson noise.
        pseudo_count: Pseudo-count of the log-transform in Poisson mode.
        random_state: Seed of the Poisson simulation.
        n_jobs: Number of parallel jobs, defaults to ``scanpy.settings.n_jobs``.
    """

    trend: TrendFitConfig = field(default_factory=TrendFitConfig)
    min_cells: int = 2
    equiweight: bool = True
    combine_pvalues: Literal["fisher", "min"] = "fisher"
    npts: int = 1000
    dispersion: float = 0.0
    pseudo_count: float = 1.0
    random_state: Optional[int] = 0
    n_jobs: Optional[int] = None


@dataclass(frozen=True)
class QuickClusterConfig:
    """
    Options of :func:`~scanpy_scran.pp.quick_cluster`.

    Attributes:
        min_size: Minimum number of cells per cluster.
        max_clusters: Largest number of clusters considered.
        n_pcs: Number of principal components.
        linkage_method: Linkage used for hierarchical clustering.
        min_silhouette: Cuts with a lower mean silhouette width are treated
            as unstructured and collapse to a single cluster.
        silhouette_sample_size: Number of cells used to compute silhouettes.
        random_state: Seed of the PCA and of the silhouette sub-sampling.
    """

    min_size: int = 100
    max_clusters: int = 20
    n_pcs: int = 50
    linkage_method: Literal["ward", "complete", "average"] = "ward"
    min_silhouette: float = 0.25
    silhouette_sample_size: int = 2000
    random_state: Optional[int] = 0


@dataclass(frozen=True)
class PoolingConfig:
    """
    Options of :func:`~scanpy_scran.pp.pooled_size_factors`.

    Attributes:
        sizes: Numbers of cells per pool. Sizes larger than a cluster are
            dropped for that cluster; a cluster left with a single size
            (21 to 25 cells with the defaults) has a singular pool design,
            so pass smaller sizes together with a small ``min_size`` of
            :func:`~scanpy_scran.pp.quick_cluster`.
        min_pool_size: Minimum summed library size of a pool.
        min_mean: Minimum library-size-adjusted average count of a gene.
        ref_cluster: Cluster used as reference for inter-cluster rescaling,
            defaults to the largest cluster.
        n_jobs: Number of parallel jobs, defaults to ``scanpy.settings.n_jobs``.
    """

    sizes: tuple[int, ...] = tuple(range(21, 102, 5))
    min_pool_size: float = 0.0
    min_mean: float = 0.1
    ref_cluster: Optional[str] = None
    n_jobs: Optional[int] = None


@dataclass(frozen=True)
class NormalizationConfig:
    """
    Options of :func:`~scanpy_scran.pp.log_norm_counts`.

    Attributes:
        log: Apply ``log2(x + pseudo_count)`` after scaling.
        pseudo_count: Pseudo-count added before the log-transform.
        center_size_factors: Rescale size factors to a mean of 1 first.
    """

    log: bool = True
    pseudo_count: float = 1.0
    center_size_factors: bool = True


def resolve_config(
    cls: Type[ConfigT], config: Optional[ConfigT] = None, **kwargs: Any
) -> ConfigT:
    """Return ``config`` (or the defaults of ``cls``) with ``kwargs`` applied."""
    _config = cls() if config is None else config
    if not isinstance(_config, cls):
        raise InvalidArgumentError(
            f"expected a {cls.__name__}, got {type(_config).__name__}."
        )
    known = {f.name for f in fields(cls)}
    unknown = set(kwargs) - known
    if unknown:
        raise InvalidArgumentError(
            f"unknown {cls.__name__} option(s): {', '.join(sorted(unknown))}."
        )
    return replace(_config, **kwargs) if kwargs else _config


def resolve_mode(mode) -> VarianceMode:
    if isinstance(mode, VarianceMode):
        return mode
    try:
        return VarianceMode(str(mode).lower())
    except ValueError:
        raise InvalidArgumentError(
            f"invalid 'mode' provided: {mode}, expected one of "
            f"{[m.value for m in VarianceMode]}."
        ) from None


__all__ = [
    "VarianceMode",
    "TrendFitConfig",
    "ModelGeneVarConfig",
    "QuickClusterConfig",
    "PoolingConfig",
    "NormalizationConfig",
    "resolve_config",
    "resolve_mode",
]
