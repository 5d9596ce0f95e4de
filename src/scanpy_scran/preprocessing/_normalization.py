from typing import Any, Optional

import numpy as np
import scanpy as sc
from scanpy import logging as logg
from scanpy.get import _get_obs_rep
from scipy import sparse

from .._config import NormalizationConfig, resolve_config
from .._errors import (
    FeatureClassMismatchError,
    InvalidArgumentError,
    ZeroSizeFactorError,
)
from .._utilities import to_dense
from .._validate import validate_adata
from ..get import GeneSelection, var_mask
from ._size_factors import FeatureClass, SizeFactors


def _log_normalize(
    X,
    size_factors: np.ndarray,
    log: bool = True,
    pseudo_count: float = 1.0,
):
    """Scale each cell by its size factor, then ``log2(x + pseudo_count)``."""
    if np.any(~np.isfinite(size_factors) | (size_factors <= 0)):
        raise ZeroSizeFactorError("size factors must be strictly positive.")
    if sparse.issparse(X):
        ret = sparse.csr_matrix(sparse.diags(1.0 / size_factors) @ X, dtype=np.float64)
        if not log:
            return ret
        if pseudo_count == 1.0:
            ret.data = np.log1p(ret.data) / np.log(2)
            return ret
        ret = ret.toarray()
    else:
        ret = np.asarray(X, dtype=np.float64) / size_factors[:, None]
        if not log:
            return ret
    return np.log2(ret + pseudo_count)


def _check_feature_class(sf: SizeFactors, expected: FeatureClass, rows: str) -> None:
    if not isinstance(sf, SizeFactors):
        raise InvalidArgumentError(
            f"size factors must be a SizeFactors object, got {type(sf).__name__}."
        )
    if sf.feature_class != expected:
        raise FeatureClassMismatchError(
            f"refusing to normalize {rows} rows with {sf.feature_class.value} "
            f"size factors ({sf.method})."
        )


def log_norm_counts(
    adata: sc.AnnData,
    size_factors: Optional[SizeFactors] = None,
    spike_rows: Optional[GeneSelection] = None,
    spike_factors: Optional[SizeFactors] = None,
    layer: Optional[str] = None,
    config: Optional[NormalizationConfig] = None,
    inplace: bool = False,
    key_added: str = "logcounts",
    **kwargs: Any,
):
    """
    Log-normalized expression values.

    Every cell is divided by its size factor and, unless ``log=False``,
    transformed with ``log2(x + pseudo_count)``. Endogenous genes are scaled
    with endogenous ``size_factors`` and spike-in genes with ``spike_factors``;
    any other pairing is rejected.

    Args:
        adata: Annotated data matrix of counts.
        size_factors: Endogenous size factors, required unless every gene is
            a spike-in.
        spike_rows: Spike-in genes.
        spike_factors: Spike-in size factors, required with ``spike_rows``.
        layer: Layer holding counts, defaults to ``.X``.
        config: Normalization options, see
            :class:`~scanpy_scran.NormalizationConfig`.
        inplace: Store the result in ``adata.layers[key_added]``.
        key_added: Layer written when ``inplace=True``.
        **kwargs: Overrides of single ``config`` fields.

    Returns:
        The normalized matrix if ``inplace=False``, else ``None``.
    """
    validate_adata(adata, "log_norm_counts")
    _config = resolve_config(NormalizationConfig, config, **kwargs)

    spike_mask = var_mask(adata, spike_rows)
    if spike_mask is None:
        spike_mask = np.zeros(adata.n_vars, dtype=bool)
    if spike_factors is not None and not spike_mask.any():
        raise InvalidArgumentError("'spike_factors' given without 'spike_rows'.")

    X = _get_obs_rep(adata, layer=layer)
    parts = []
    if (~spike_mask).any():
        if size_factors is None:
            raise InvalidArgumentError("'size_factors' required for endogenous genes.")
        _check_feature_class(size_factors, FeatureClass.ENDOGENOUS, "endogenous")
        parts.append((~spike_mask, size_factors))
    if spike_mask.any():
        if spike_factors is None:
            raise FeatureClassMismatchError(
                "spike-in rows require spike-in size factors; "
                "endogenous size factors are never applied to spike-ins."
            )
        _check_feature_class(spike_factors, FeatureClass.SPIKE_IN, "spike-in")
        parts.append((spike_mask, spike_factors))

    start = logg.info("normalizing counts per cell")
    if len(parts) == 1:
        sf = parts[0][1].aligned(adata.obs_names)
        if _config.center_size_factors:
            sf = sf / np.mean(sf)
        ret = _log_normalize(X, sf, log=_config.log, pseudo_count=_config.pseudo_count)
    else:
        pieces, cols = [], []
        for mask, factors in parts:
            sf = factors.aligned(adata.obs_names)
            if _config.center_size_factors:
                sf = sf / np.mean(sf)
            pieces.append(
                _log_normalize(
                    X[:, mask], sf, log=_config.log, pseudo_count=_config.pseudo_count
                )
            )
            cols.append(np.flatnonzero(mask))
        if all(sparse.issparse(p) for p in pieces):
            stacked = sparse.hstack(pieces, format="csr")
        else:
            stacked = np.hstack([to_dense(p) for p in pieces])
        # restore the original gene order
        ret = stacked[:, np.argsort(np.concatenate(cols))]
    logg.info("    finished", time=start)

    if not inplace:
        return ret
    adata.layers[key_added] = ret
    logg.hint(f"added\n    {key_added!r}, normalized expression values (adata.layers)")
