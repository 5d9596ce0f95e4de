import contextlib
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Optional

import joblib
import numpy as np
import scanpy as sc
from joblib import Parallel, delayed
from scipy import sparse
from tqdm import tqdm


@contextlib.contextmanager
def tqdm_joblib(tqdm_object):
    """Context manager to patch joblib to report into tqdm progress bar given as argument"""

    def tqdm_print_progress(self):
        if self.n_completed_tasks > tqdm_object.n:
            n_completed = self.n_completed_tasks - tqdm_object.n
            tqdm_object.update(n=n_completed)

    original_print_progress = joblib.parallel.Parallel.print_progress
    joblib.parallel.Parallel.print_progress = tqdm_print_progress

    try:
        yield tqdm_object
    finally:
        joblib.parallel.Parallel.print_progress = original_print_progress
        tqdm_object.close()


def parallel_map(
    func: Callable,
    tasks: Mapping[str, tuple],
    n_jobs: Optional[int] = None,
    **kwargs: Any,
) -> dict[str, Any]:
    """
    Apply ``func`` to every task and collect the results by task key.

    Tasks are independent, so they are dispatched with joblib in any order.
    The returned dictionary follows the iteration order of ``tasks``
    regardless of when each task completes.

    Args:
        func: Function called as ``func(*args, **kwargs)``.
        tasks: Mapping of task key to positional arguments.
        n_jobs: Number of jobs, defaults to ``scanpy.settings.n_jobs``.
        **kwargs: Keyword arguments shared by every call.

    Returns:
        Dict of task key to result.
    """
    _n_jobs = sc.settings.n_jobs if n_jobs is None else n_jobs
    keys = list(tasks.keys())
    with tqdm_joblib(
        tqdm(
            total=len(keys),
            mininterval=0.5,
            miniters=1,
            disable=(len(keys) < 2 or sc.settings.verbosity < 3),
        )
    ) as _:
        res_collector = Parallel(n_jobs=_n_jobs, return_as="generator")(
            delayed(_keyed_call)(func, k, tasks[k], kwargs) for k in keys
        )
        res_collector = dict(res_collector)
    return {k: res_collector[k] for k in keys}


def _keyed_call(func: Callable, key: str, args: tuple, kwargs: dict) -> tuple:
    return key, func(*args, **kwargs)


def to_dense(X) -> np.ndarray:
    if sparse.issparse(X):
        return X.toarray()
    return np.asarray(X)


def row_sums(X) -> np.ndarray:
    return np.asarray(X.sum(axis=1), dtype=np.float64).ravel()


def subset_rows(X, mask: Iterable[bool]):
    _mask = np.asarray(mask, dtype=bool)
    if sparse.issparse(X):
        return sparse.csr_matrix(X)[_mask]
    return np.asarray(X)[_mask]


__all__ = [
    "tqdm_joblib",
    "parallel_map",
    "to_dense",
    "row_sums",
    "subset_rows",
]
