from collections.abc import Iterable, Mapping
from typing import Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from pandas.api.types import is_bool_dtype

from ._errors import InvalidArgumentError
from ._validate import isiterable

GeneSelection = Union[str, Iterable[str], Iterable[bool], np.ndarray, pd.Series]


def var_mask(
    adata: sc.AnnData,
    genes: Optional[GeneSelection],
) -> Optional[np.ndarray]:
    """
    Resolve a gene selection into a boolean mask over ``adata.var_names``.

    Args:
        adata: Annotated data matrix.
        genes: Boolean column of ``adata.var``, boolean mask, or gene identifiers.

    Returns:
        Boolean mask, or ``None`` if ``genes`` is ``None``.
    """
    if genes is None:
        return None
    if isinstance(genes, str):
        if genes in adata.var.columns and is_bool_dtype(adata.var[genes]):
            return adata.var[genes].to_numpy(dtype=bool)
        genes = [genes]
    if not isiterable(genes):
        raise InvalidArgumentError("gene selection must be identifiers or a mask.")
    _genes = genes.to_numpy() if isinstance(genes, pd.Series) else np.asarray(
        list(genes) if not isinstance(genes, np.ndarray) else genes
    )
    if _genes.dtype == bool:
        if _genes.shape[0] != adata.n_vars:
            raise InvalidArgumentError(
                f"Length of mask ({_genes.shape[0]}) does not match the number of "
                f"genes ({adata.n_vars})."
            )
        return _genes
    if _genes.size == 0:
        return np.zeros(adata.n_vars, dtype=bool)
    missing = pd.Index(_genes).difference(adata.var_names)
    if len(missing) > 0:
        raise KeyError(f"Could not find keys {list(missing)[:5]} in .var_names.")
    return adata.var_names.isin(_genes)


def add_row_subset(
    subsets: Optional[Mapping[str, frozenset]],
    name: str,
    genes: Iterable[str],
) -> dict[str, frozenset]:
    """
    Return a copy of ``subsets`` with ``genes`` stored under ``name``.

    Named gene sets (e.g. ``"HVG"``) are owned by the caller and passed to
    the functions that need them, instead of being attached to the data.
    """
    if isinstance(genes, str):
        raise InvalidArgumentError("'genes' must be an iterable of identifiers.")
    ret = dict() if subsets is None else dict(subsets)
    ret[name] = frozenset(genes)
    return ret


def row_subset(subsets: Mapping[str, frozenset], name: str) -> frozenset:
    if name not in subsets:
        raise KeyError(f"Could not find row subset {name}.")
    return subsets[name]


__all__ = [
    "var_mask",
    "add_row_subset",
    "row_subset",
]
