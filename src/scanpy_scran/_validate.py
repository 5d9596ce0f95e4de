from collections.abc import Iterable
from typing import Union

import numpy as np
import pandas as pd
import scanpy as sc
from pandas.api.types import is_bool_dtype, is_numeric_dtype

from ._errors import InvalidArgumentError


def isiterable(x) -> bool:
    return not isinstance(x, str) and isinstance(x, Iterable)


def validate_adata(adata, fname: str) -> None:
    if not isinstance(adata, sc.AnnData):
        raise InvalidArgumentError(
            f"`{fname}` expects an `AnnData` argument, got {type(adata).__name__}."
        )


def validate_groups(
    adata: sc.AnnData,
    groups: Union[str, Iterable],
    name: str = "block",
) -> tuple[np.ndarray, list]:
    """
    Resolve a per-cell partition into labels and their ordered levels.

    Args:
        adata: Annotated data matrix.
        groups: Column of ``adata.obs`` or one label per cell. A
            :class:`pandas.Series` indexed by cell names is aligned to
            ``adata.obs_names``.
        name: Argument name used in error messages.

    Returns:
        Tuple of the per-cell labels as strings and the ordered levels.
    """
    if isinstance(groups, str):
        if groups not in adata.obs.keys():
            raise KeyError(f"Could not find key {groups} in .obs.columns.")
        values = adata.obs[groups]
    elif isinstance(groups, pd.Series) and not isinstance(groups.index, pd.RangeIndex):
        # labels indexed by cell are matched by name, not by position
        missing = adata.obs_names.difference(groups.index)
        if len(missing) > 0:
            raise KeyError(f"No '{name}' labels for cells {list(missing)[:5]}.")
        if not groups.index.is_unique:
            raise InvalidArgumentError(f"'{name}' has duplicated cell names.")
        values = groups.loc[adata.obs_names]
    elif isiterable(groups):
        values = groups if isinstance(groups, pd.Series) else pd.Series(list(groups))
    else:
        raise InvalidArgumentError(
            f"'{name}' must be a key of .obs or a sequence of labels."
        )
    if len(values) != adata.n_obs:
        raise InvalidArgumentError(
            f"Length of '{name}' ({len(values)}) does not match the number of "
            f"cells ({adata.n_obs})."
        )
    if pd.isna(values).any():
        raise InvalidArgumentError(f"'{name}' contains missing labels.")
    if isinstance(values.dtype, pd.CategoricalDtype):
        levels = [str(x) for x in values.cat.categories if (values == x).any()]
    else:
        levels = [str(x) for x in pd.unique(values)]
        if is_numeric_dtype(values) and not is_bool_dtype(values):
            levels = [str(x) for x in np.sort(pd.unique(values))]
    return np.asarray(values.astype(str)), levels


__all__ = [
    "isiterable",
    "validate_adata",
    "validate_groups",
]
