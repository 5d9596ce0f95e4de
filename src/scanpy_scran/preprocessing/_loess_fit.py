from typing import Any, Dict, Literal, Optional, Union

import numba
import numpy as np

from .._config import TrendFitConfig, resolve_config
from .._errors import InsufficientDataError, InvalidArgumentError


@numba.njit()
def _weighted_median(x: np.ndarray, w: np.ndarray) -> float:
    sorted_idx = np.argsort(x)
    x_sorted = x[sorted_idx]
    w_cum = np.cumsum(w[sorted_idx])
    w_total = w_cum[-1]

    med_idx = np.searchsorted(w_cum, (w_total / 2))
    if med_idx >= (len(x) - 1):
        return x_sorted[-1]
    elif w_cum[med_idx] == (w_total / 2):
        return np.mean(x_sorted[med_idx : med_idx + 2])
    else:
        return x_sorted[med_idx]


def weighted_median(
    x: np.ndarray, w: Optional[np.ndarray] = None, na_rm: bool = False
) -> float:
    _x = np.asarray(x, dtype=np.float64)
    _w = None if w is None else np.asarray(w, dtype=np.float64)
    if na_rm:
        mask = ~np.isnan(_x)
        _x = _x[mask]
        _w = None if _w is None else _w[mask]
    if _x.size == 0:
        return np.nan
    if _w is None:
        return float(np.median(_x))
    return float(_weighted_median(_x, _w))


def inverse_density_weights(
    x: np.ndarray,
    bw_method: Union[Literal["scott", "silverman"], float] = "silverman",
) -> np.ndarray:
    from scipy.stats import gaussian_kde

    _x = np.asarray(x)
    density = gaussian_kde(_x, bw_method=bw_method)(x)
    w = 1.0 / np.clip(density, a_min=1e-10, a_max=None)
    return w / np.mean(w)


def weighted_lowess(
    x: np.ndarray,
    y: np.ndarray,
    w: Optional[np.ndarray] = None,
    span: float = 0.3,
    iter: int = 3,
) -> Dict[str, np.ndarray]:
    from skmisc import loess

    _x = np.asarray(x)
    _y = np.asarray(y)
    _w = None if w is None else np.asarray(w)
    params = dict(weights=_w, span=span, degree=1, iterations=iter)

    # Create and fit the LOESS model
    try:
        model = loess.loess(_x, _y, **params)
        model.fit()
        fitted = model.predict(_x, stderror=False).values
    except (ValueError, RuntimeError) as err:
        raise InsufficientDataError(
            f"LOWESS fit failed on {_x.shape[0]} points with span {span}: {err}"
        ) from err

    return {
        "fitted": fitted,
        "residual": _y - fitted,
        "x": _x,
        "y": _y,
        "weights": _w,
    }


class TrendFunction:
    """
    Fitted mean-variance trend.

    The trend is the product of a parametric baseline, an optional LOWESS
    correction interpolated between the fitted means, and a scale factor
    that corrects for fitting on the log-scale. Outside the range of the
    training means the LOWESS correction is held at its edge value, so only
    the parametric baseline extrapolates.

    Attributes:
        means: Means used to fit the trend.
        vars: Variances used to fit the trend.
        weights: Weights of the training points, if any.
        flavor: Fitting flavor.
        params: Parameters ``a``, ``b`` and ``n`` of the parametric curve, or
            ``left_edge`` of the linear baseline.
        scale: Multiplicative correction for fitting to log-values.
        std_dev: Robust relative standard deviation of variances around the trend.
    """

    def __init__(
        self,
        means: np.ndarray,
        vars: np.ndarray,
        weights: Optional[np.ndarray],
        flavor: str,
        params: Dict[str, float],
        lowess_x: Optional[np.ndarray] = None,
        lowess_y: Optional[np.ndarray] = None,
    ):
        self.means = means
        self.vars = vars
        self.weights = weights
        self.flavor = flavor
        self.params = params
        self.scale = 1.0
        self.std_dev = np.nan
        self._lowess = None
        if lowess_x is not None:
            from scipy.interpolate import PchipInterpolator

            self._lowess = PchipInterpolator(x=lowess_x, y=lowess_y, extrapolate=False)
            self._lowess_range = (lowess_x[0], lowess_x[-1])

    @property
    def mean_range(self) -> tuple[float, float]:
        return float(np.min(self.means)), float(np.max(self.means))

    @staticmethod
    def _nls_model(x, a: float, b: float, n: float):
        # y = (a*x)/(x^(1+n) + b)
        return (a * x) / (b + np.power(x, 1 + n))

    def _param(self, x: np.ndarray) -> np.ndarray:
        if "left_edge" in self.params:
            # straight line from 0 to min(means)
            return np.minimum(1.0, x / self.params["left_edge"])
        return TrendFunction._nls_model(
            x, a=self.params["a"], b=self.params["b"], n=self.params["n"]
        )

    def _unscaled(self, x: np.ndarray) -> np.ndarray:
        ret = self._param(x)
        if self._lowess is not None:
            _x = np.clip(x, self._lowess_range[0], self._lowess_range[1])
            ret = np.exp(self._lowess(_x)) * ret
        return ret

    def evaluate(self, mean) -> Union[float, np.ndarray]:
        """Technical variance expected at ``mean``."""
        x = np.asarray(mean, dtype=np.float64)
        ret = self._unscaled(np.atleast_1d(x)) * self.scale
        return ret.reshape(x.shape) if x.ndim > 0 else float(ret[0])

    __call__ = evaluate

    def is_extrapolated(self, mean) -> Union[bool, np.ndarray]:
        """Whether ``mean`` lies outside the range of the training means."""
        lo, hi = self.mean_range
        x = np.asarray(mean, dtype=np.float64)
        return (x < lo) | (x > hi)

    def __repr__(self) -> str:
        lo, hi = self.mean_range
        return (
            f"TrendFunction(flavor={self.flavor!r}, n_points={len(self.means)}, "
            f"mean_range=({lo:.3g}, {hi:.3g}), std_dev={self.std_dev:.3g})"
        )


class LOWESSTrendFitter:
    """Class for fitting mean-variance trends."""

    do_parametric: bool = True
    do_lowess: bool = True
    use_density_weights: bool = True
    span: float = 0.3
    iterations: int = 3

    def __init__(
        self,
        flavor: Literal["parametric", "lowess", "both"] = "both",
        use_density_weights: bool = True,
        span: float = 0.3,
        iterations: int = 3,
    ):
        assert flavor in ["parametric", "lowess", "both"], (
            f"invalid 'flavor' provided: {flavor}."
        )
        assert (span > 0.0) and (span <= 1.0), f"'span' must be between 0 and 1: {span}"
        self.flavor = flavor
        if flavor == "parametric":
            self.do_lowess = False
        elif flavor == "lowess":
            self.do_parametric = False
        self.use_density_weights = use_density_weights
        self.span = span
        self.iterations = iterations

    @staticmethod
    def correct_logged_expectation(
        x: np.ndarray, y: np.ndarray, w: Optional[np.ndarray], trend: TrendFunction
    ) -> TrendFunction:
        """
        Adjust for scale shift due to fitting to log-values.

        Args:
            x: x values
            y: y values
            w: Weights
            trend: Unscaled trend

        Returns:
            The trend with its scale and standard deviation set
        """

        # Calculate leftovers
        with np.errstate(divide="ignore", invalid="ignore"):
            leftovers = y / trend._unscaled(np.asarray(x))
        leftovers[~np.isfinite(leftovers)] = np.nan

        # Calculate weighted median
        med = weighted_median(leftovers, w, na_rm=True)

        trend.scale = med
        trend.std_dev = (
            weighted_median(np.abs(leftovers / med - 1), w, na_rm=True) * 1.4826
        )
        return trend

    @staticmethod
    def get_init_params(
        vars: np.ndarray,
        means: np.ndarray,
        left_n: int = 100,
        left_prop: float = 0.1,
        grid_length: int = 10,
        b_grid_range: float = 5,
        n_grid_max: float = 7,
    ) -> Dict[str, float]:
        """
        Get starting parameters for non-linear curve fitting.

        Args:
            vars: Variances
            means: Means
            left_n: Number of points to use from left
            left_prop: Proportion of points to use from left
            grid_length: Number of grid points
            b_grid_range: Range for B parameter grid
            n_grid_max: Maximum value for n parameter grid

        Returns:
            Dict with starting parameters
        """

        # Sort by means
        n = len(vars)
        sorted_idx = np.argsort(means)

        # Estimate gradient from left
        _left_n = min(left_n, int(n * left_prop))
        keep_idx = sorted_idx[: max(1, _left_n)]
        _vars = vars[keep_idx]
        _means = means[keep_idx]

        # Linear regression through origin
        slope = np.sum(_means * _vars) / np.sum(_means**2)

        # Grid search for remaining parameters
        b_grid, n_grid = np.meshgrid(
            np.exp2(np.linspace(-b_grid_range, b_grid_range, grid_length)),
            np.exp2(np.linspace(0, n_grid_max, grid_length)),
        )
        b_flat = b_grid.flatten()
        n_flat = n_grid.flatten()

        # Evaluate sum of squares for each parameter combination
        best_ss = np.inf
        best_idx = 0
        for i in range(b_flat.shape[0]):
            _b = b_flat[i]
            _n = n_flat[i]
            pred = (slope * _b * means) / (_b + np.power(means, _n))
            resd = vars - pred
            _ss = np.dot(resd, resd)
            if _ss < best_ss:
                best_ss = _ss
                best_idx = i
        return dict(
            n=max(1e-8, n_flat[best_idx] - 1),
            b=b_flat[best_idx],
            a=b_flat[best_idx] * slope,
        )

    def _fit_parametric(
        self, means: np.ndarray, vars: np.ndarray, w: Optional[np.ndarray]
    ) -> Dict[str, float]:
        from scanpy import logging as logg
        from scipy import optimize

        # Get initial parameters
        model_params = LOWESSTrendFitter.get_init_params(vars, means)
        try:
            opt_params, _ = optimize.curve_fit(
                TrendFunction._nls_model,
                means,
                vars,
                p0=[model_params["a"], model_params["b"], model_params["n"]],
                sigma=(None if w is None else (1 / np.sqrt(w))),
                method="trf",
                bounds=([0, 0, 0], [np.inf, np.inf, np.inf]),
                ftol=1e-8,
                xtol=1e-8,
                gtol=1e-8,
                max_nfev=500,
            )
            return dict(a=opt_params[0], b=opt_params[1], n=opt_params[2])
        except RuntimeError:
            # Use initial estimates if fitting fails
            logg.debug("non-linear fit did not converge, using initial estimates")
            return dict(
                a=model_params["a"], b=model_params["b"], n=(model_params["n"] + 1)
            )

    def fit_trend_var(
        self,
        means: np.ndarray,
        vars: np.ndarray,
    ) -> TrendFunction:
        means = np.asarray(means, dtype=np.float64)
        vars = np.asarray(vars, dtype=np.float64)
        if len(vars) < 2 or np.unique(means).shape[0] < 2:
            raise InsufficientDataError(
                "need at least 2 points with distinct means for fitting."
            )
        w = (
            inverse_density_weights(means, bw_method=1.0)
            if self.use_density_weights
            else None
        )

        # Default parametric trend is a straight line from 0 to min(m)
        to_fit = np.log(vars)
        params = dict(left_edge=float(np.min(means)))

        # Fit parametric curve if requested
        if self.do_parametric:
            if len(vars) < 4:
                raise InsufficientDataError(
                    "need at least 4 points for non-linear curve fitting."
                )
            params = self._fit_parametric(means, vars, w)
        trend = TrendFunction(means, vars, w, flavor=self.flavor, params=params)
        # Update to_fit with residuals
        to_fit = to_fit - np.log(trend._param(means))

        if self.do_lowess:
            lfit = weighted_lowess(
                means, to_fit, w=w, span=self.span, iter=self.iterations
            )
            # Average fitted values of tied means for the interpolator
            ux, inv = np.unique(means, return_inverse=True)
            uy = np.bincount(inv, weights=lfit["fitted"]) / np.bincount(inv)
            trend = TrendFunction(
                means,
                vars,
                w,
                flavor=self.flavor,
                params=params,
                lowess_x=ux,
                lowess_y=uy,
            )

        # Adjust for scale shift
        return LOWESSTrendFitter.correct_logged_expectation(means, vars, w, trend)


def fit_trend_var(
    means: np.ndarray,
    vars: np.ndarray,
    config: Optional[TrendFitConfig] = None,
    **kwargs: Any,
) -> TrendFunction:
    """
    Fit a trend of variance against mean.

    Only points with a variance above ``1e-8`` and a mean of at least
    ``min_mean`` are used for fitting; the returned trend can be evaluated
    at any mean.

    Args:
        means: Per-gene means of log-expression values.
        vars: Per-gene variances of log-expression values.
        config: Trend options, see :class:`~scanpy_scran.TrendFitConfig`.
        **kwargs: Overrides of single ``config`` fields.

    Returns:
        The fitted :class:`TrendFunction`.
    """
    _config = resolve_config(TrendFitConfig, config, **kwargs)
    means = np.asarray(means, dtype=np.float64)
    vars = np.asarray(vars, dtype=np.float64)
    if means.shape != vars.shape:
        raise InvalidArgumentError(
            f"'means' and 'vars' differ in length: {means.shape[0]} != {vars.shape[0]}."
        )

    # Filter out low-abundance genes
    valid_idx = (
        ~np.isnan(vars) & ~np.isnan(means) & (vars > 1e-8) & (means >= _config.min_mean)
    )
    tfit = LOWESSTrendFitter(
        flavor=_config.flavor,
        use_density_weights=_config.use_density_weights,
        span=_config.span,
        iterations=_config.iterations,
    )
    return tfit.fit_trend_var(means=means[valid_idx], vars=vars[valid_idx])
