import math
from typing import Any, Iterable, Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg

from .._config import VarianceMode
from .._errors import InvalidArgumentError
from .._validate import validate_adata
from ..get import GeneSelection
from ._model_gene_var import VarianceModel, model_gene_var


def get_top_hvgs(
    stats: Union[VarianceModel, pd.DataFrame],
    n: Optional[int] = None,
    prop: Optional[float] = None,
    var_threshold: Optional[float] = None,
    fdr_threshold: Optional[float] = None,
) -> list[str]:
    """
    Identifiers of the genes with the largest biological components.

    Genes are ranked by decreasing ``bio``; ties keep the original gene
    order and undefined values come last. Negative components are ranked
    like any other value unless ``var_threshold`` is set.

    Args:
        stats: Result of :func:`model_gene_var` or its ``stats`` frame.
        n: Number of genes to return, or all genes if fewer exist.
        prop: Proportion of genes to return, rounded up.
        var_threshold: Only keep genes with ``bio`` above this value.
        fdr_threshold: Only keep genes with ``FDR`` at or below this value.

    Returns:
        Gene identifiers sorted by decreasing ``bio``.
    """
    if (n is None) == (prop is None):
        raise InvalidArgumentError("exactly one of 'n' and 'prop' must be provided.")
    if n is not None and (isinstance(n, bool) or int(n) != n or n < 0):
        raise InvalidArgumentError(f"'n' must be a non-negative integer: {n}")
    if prop is not None and not (0.0 <= prop <= 1.0):
        raise InvalidArgumentError(f"'prop' must be between 0 and 1: {prop}")

    df = stats.stats if isinstance(stats, VarianceModel) else stats
    if "bio" not in df.columns:
        raise KeyError("Could not find column 'bio' in the gene statistics.")

    n_genes = df.shape[0]
    _n = int(n) if n is not None else math.ceil(prop * n_genes)

    bio = df["bio"].to_numpy(dtype=np.float64)
    keep = np.ones(n_genes, dtype=bool)
    if var_threshold is not None:
        keep &= bio > var_threshold
    if fdr_threshold is not None:
        if "FDR" not in df.columns:
            raise KeyError("Could not find column 'FDR' in the gene statistics.")
        keep &= df["FDR"].to_numpy(dtype=np.float64) <= fdr_threshold

    # stable sort on the negated values keeps the original order of ties
    order = np.argsort(np.where(np.isnan(bio), np.inf, -bio), kind="stable")
    order = order[keep[order]]
    return df.index[order[:_n]].to_list()


def highly_variable_genes(
    adata: sc.AnnData,
    layer: Optional[str] = None,
    n_top_genes: Optional[int] = 2000,
    prop: Optional[float] = None,
    mode: Union[VarianceMode, str] = VarianceMode.ALL_GENES,
    spike_rows: Optional[GeneSelection] = None,
    batch_key: Optional[Union[str, Iterable]] = None,
    var_threshold: Optional[float] = None,
    subset: bool = False,
    inplace: bool = True,
    **kwargs: Any,
) -> Optional[pd.DataFrame]:
    """
    Annotate highly variable genes by their biological variance component.

    Args:
        adata: Annotated data matrix of log-expression values, or counts when
            ``mode="poisson"``.
        layer: Layer to use, defaults to ``.X``.
        n_top_genes: Number of genes to select, ignored if ``prop`` is set.
        prop: Proportion of genes to select.
        mode: Source of the trend's training points.
        spike_rows: Spike-in genes for ``mode="spike_ins"``.
        batch_key: Column of ``adata.obs`` or labels used for blocking.
        var_threshold: Only select genes with ``bio`` above this value.
        subset: Subset to highly variable genes.
        inplace: Annotate ``adata.var`` instead of returning a frame.
        **kwargs: Passed to :func:`model_gene_var`.

    Returns:
        The gene statistics if ``inplace=False``, else ``None``.
    """
    validate_adata(adata, "highly_variable_genes")

    if batch_key is None:
        start = logg.info("extracting highly variable genes")
    else:
        start = logg.info(
            "extracting highly variable genes per batch"
            + (f" using batch key: {batch_key}" if isinstance(batch_key, str) else "")
        )
    res = model_gene_var(
        adata, mode=mode, spike_rows=spike_rows, block=batch_key, layer=layer, **kwargs
    )
    df = res.stats.copy()
    sel_genes = get_top_hvgs(
        df,
        n=(None if prop is not None else n_top_genes),
        prop=prop,
        var_threshold=var_threshold,
    )
    df["highly_variable"] = df.index.isin(sel_genes)
    logg.info(f"    finished, selected {len(sel_genes)} genes", time=start)

    if not inplace:
        if subset:
            df = df.loc[df["highly_variable"]]
        return df

    adata.uns["hvg"] = {"flavor": "scran", "mode": res.mode.value}
    logg.hint(
        "added\n"
        "    'highly_variable', boolean vector (adata.var)\n"
        "    'means', float vector (adata.var)\n"
        "    'variances', float vector (adata.var)\n"
        "    'tech', float vector (adata.var)\n"
        "    'bio', float vector (adata.var)\n"
        "    'p_value', float vector (adata.var)\n"
        "    'FDR', float vector (adata.var)"
    )
    adata.var["highly_variable"] = df["highly_variable"]
    adata.var["means"] = df["mean"]
    adata.var["variances"] = df["total"]
    adata.var["tech"] = df["tech"]
    adata.var["bio"] = df["bio"]
    adata.var["p_value"] = df["p_value"]
    adata.var["FDR"] = df["FDR"]

    if subset:
        adata._inplace_subset_var(df["highly_variable"].to_numpy())
