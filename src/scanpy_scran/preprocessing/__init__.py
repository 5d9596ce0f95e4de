from ._highly_variable_genes import get_top_hvgs, highly_variable_genes
from ._loess_fit import TrendFunction, fit_trend_var
from ._model_gene_var import VarianceModel, model_gene_var
from ._normalization import log_norm_counts
from ._quick_cluster import quick_cluster
from ._size_factors import (
    FeatureClass,
    SizeFactors,
    compute_spike_factors,
    library_size_factors,
    pooled_size_factors,
)

__all__ = [
    "fit_trend_var",
    "model_gene_var",
    "get_top_hvgs",
    "highly_variable_genes",
    "quick_cluster",
    "library_size_factors",
    "compute_spike_factors",
    "pooled_size_factors",
    "log_norm_counts",
    "TrendFunction",
    "VarianceModel",
    "FeatureClass",
    "SizeFactors",
]
