import numpy as np
import pandas as pd
from scipy.optimize import minimize_scalar
from reliability.Utils import colorprint

from .CDF_estimators import CDFMethod, estimate_cdf, johnson
from .life_utils import (
    DEFAULT_CI,
    MLE_MAX_ITER,
    ConvergenceError,
    DistributionParameters,
    Family,
    FittedLine,
    InsufficientDataError,
    NumericalError,
    SampleTable,
    check_optimizer,
    coerce_table,
    information_criteria,
    log_likelihood,
    numerical_hessian,
    print_goodness_of_fit,
    print_sample_summary,
    print_warning,
    resolve_family,
    run_optimizer,
    transform_probability,
    transform_value,
)

"""
Single-population fitters for right-censored life data.

Two estimators are provided, each as a pure function returning an immutable
DistributionParameters and as a Fit_ class that runs the function in its
constructor, mirrors the result onto attributes and prints a results table:

1) Rank regression (`rank_regression`, `Fit_Rank_Regression`): an "x on y"
   least-squares line through the linearized plotting positions, i.e. the
   log-value is regressed on the probability transform so that horizontal
   deviations are minimised.
2) Maximum likelihood (`fit_mle`, `Fit_MLE`): failures contribute log f(t),
   right-censored units log S(t). Observations may carry weights, which is
   how the EM mixture fitter re-uses it for its M-step.

Supported families are Weibull and Lognormal, each optionally with a
threshold (gamma) that is either fixed or searched for. The 3-parameter tags
"weibull3" / "lognormal3" request the search.

Parameters (Fit_ classes)
-------------------------
failures : array, list, optional
    Failure times.
right_censored : array, list, optional
    Right-censored times.
data : SampleTable or iterable of (value, status), optional
    Alternative to failures/right_censored.
family : {"weibull", "weibull3", "lognormal", "lognormal3"}
threshold : None, float or "search"
    No threshold, a fixed threshold, or a threshold search over (0, min value).
CI : float
    Confidence level for the parameter bounds of Fit_MLE.
optimizer : str or callable, optional
    "L-BFGS-B" (default), "TNC", "powell", "nelder-mead" or a callable
    optimizer(fun, x0, bounds, max_iter).
print_results : bool
    Print the results tables.
"""

_BAD_NLL = 1e100
_GRID_SIZE = 60


def _check_threshold(threshold):
    """Returns (mode, value) with mode in {"none", "fixed", "search"}."""
    if threshold is None:
        return "none", None
    if isinstance(threshold, str):
        if threshold.strip().lower() in ("search", "auto"):
            return "search", None
        raise ValueError(f"threshold must be None, a number or 'search', got {threshold!r}.")
    gamma = float(threshold)
    if not np.isfinite(gamma):
        raise ValueError("A fixed threshold must be finite.")
    return "fixed", gamma


# ---------------------------------------------------------------------
# Rank regression
# ---------------------------------------------------------------------

def _regress_x_on_y(x, y):
    """
    Least squares x = a + b*y.

    Returns a, b, r (correlation coefficient) and the residual sum of
    squares measured along x.
    """
    xm, ym = np.mean(x), np.mean(y)
    dx, dy = x - xm, y - ym
    Syy = np.sum(dy ** 2)
    Sxx = np.sum(dx ** 2)
    Sxy = np.sum(dx * dy)
    b = Sxy / Syy
    a = xm - b * ym
    r = Sxy / np.sqrt(Sxx * Syy) if Sxx > 0 else np.nan
    SSR = float(np.sum((x - a - b * y) ** 2))
    return float(a), float(b), float(r), SSR


def _search_threshold(values, y):
    """
    Threshold maximising the correlation of the x-on-y line.

    A geometric grid towards min(values) locates the best region, then a
    bounded scalar search refines it. Deterministic.
    """
    upper = float(np.min(values))
    gaps = upper * np.geomspace(1.0, 1e-6, _GRID_SIZE)
    grid = upper - gaps

    def neg_r(gamma):
        x = np.log(values - gamma)
        r = _regress_x_on_y(x, y)[2]
        return -r if np.isfinite(r) else 1.0

    scores = np.array([neg_r(g) for g in grid])
    i = int(np.argmin(scores))
    lo = grid[max(i - 1, 0)]
    hi = grid[min(i + 1, len(grid) - 1)]
    if hi > lo:
        res = minimize_scalar(neg_r, bounds=(lo, hi), method="bounded", options={"xatol": 1e-10 * upper})
        if res.fun <= scores[i]:
            return float(res.x)
    return float(grid[i])


def rank_regression(points, family=Family.WEIBULL, threshold=None):
    """
    Fit a distribution to plotting positions by x-on-y rank regression.

    slope b = Sxy / Syy, intercept a = x_bar - b * y_bar, mu = a, sigma = b.

    Parameters
    ----------
    points : sequence of CDFPoint
        Failure plotting positions (any CDFMethod). Points with probability 1
        are not linearizable and are skipped.
    family : Family or str
    threshold : None, float or "search"

    Returns
    -------
    DistributionParameters
        method "RR", with the correlation coefficient and residual sum of
        squares as goodness of fit.

    Raises
    ------
    InsufficientDataError
        Fewer than 2 distinct failure values.
    NumericalError
        Fixed threshold not below every value.
    """
    family, threshold = resolve_family(family, threshold)
    mode, gamma = _check_threshold(threshold)

    values = np.array([p.value for p in points], dtype=float)
    F = np.array([p.probability for p in points], dtype=float)
    keep = F < 1.0
    values, F = values[keep], F[keep]
    if np.unique(values).size < 2:
        raise InsufficientDataError(
            "Rank regression requires at least 2 distinct failure values; "
            f"got {np.unique(values).size}.",
            required=2,
        )

    y = transform_probability(F, family)
    if mode == "search":
        gamma = _search_threshold(values, y)
    x = transform_value(values, gamma)

    a, b, r, SSR = _regress_x_on_y(x, y)
    if not (b > 0):
        raise NumericalError(f"Rank regression produced a non-positive scale ({b}).")
    return DistributionParameters(
        family=family,
        mu=a,
        sigma=b,
        gamma=gamma,
        method="RR",
        correlation=r,
        SSR=SSR,
    )


def fitted_line(params, value_min, value_max):
    """Plot-ready line of a fitted distribution over [value_min, value_max]."""
    return FittedLine(
        family=params.family,
        slope=params.sigma,
        intercept=params.mu,
        value_min=float(value_min),
        value_max=float(value_max),
        gamma=params.gamma,
    )


# ---------------------------------------------------------------------
# Maximum likelihood
# ---------------------------------------------------------------------

def _moment_guess(values, weights, family, gamma=None):
    """Starting (mu, sigma) from weighted moments of the log failure values."""
    lx = transform_value(values, gamma)
    w = np.asarray(weights, dtype=float)
    m = np.sum(w * lx) / np.sum(w)
    s = np.sqrt(np.sum(w * (lx - m) ** 2) / np.sum(w))
    if not (s > 1e-6):
        s = 0.5
    if family is Family.WEIBULL:
        # smallest extreme value: mean = mu - 0.5772*sigma, sd = pi*sigma/sqrt(6)
        sigma = s * np.sqrt(6.0) / np.pi
        return float(m + 0.5772156649 * sigma), float(sigma)
    return float(m), float(s)


def fit_mle(
    table,
    family=Family.WEIBULL,
    threshold=None,
    weights=None,
    initial=None,
    optimizer=None,
    max_iter=MLE_MAX_ITER,
    compute_covariance=True,
):
    """
    Maximum likelihood fit of a censored sample.

    log L = sum_i w_i * [failed_i * log f(t_i) + (1 - failed_i) * log S(t_i)]

    sigma is optimised as log(sigma); a searched threshold is bounded to
    [0, min value). The covariance is the inverse of the observed information
    matrix in (mu, sigma[, gamma]).

    Parameters
    ----------
    table : SampleTable
    family : Family or str
    threshold : None, float or "search"
    weights : array-like, optional
        One non-negative weight per observation, in table order.
    initial : DistributionParameters, optional
        Starting point. By default the rank regression fit on Johnson
        plotting positions (unweighted) or weighted log-moments.
    optimizer : str or callable, optional
    max_iter : int
        Iteration budget of the optimizer.
    compute_covariance : bool

    Returns
    -------
    DistributionParameters
        method "MLE" with loglik, AIC, BIC and covariance.

    Raises
    ------
    InsufficientDataError
        Fewer than 2 distinct failure values (unweighted) or no weighted
        failure mass.
    NumericalError
        Fixed threshold not below the minimum value.
    ConvergenceError
        Iteration budget exhausted, or the information matrix is singular or
        not positive definite. `err.parameters` holds the best iterate.
    """
    if not isinstance(table, SampleTable):
        table = SampleTable(table)
    family, threshold = resolve_family(family, threshold)
    mode, gamma_fixed = _check_threshold(threshold)
    optimizer = check_optimizer(optimizer)
    values, failed = table.values, table.failed

    if weights is None:
        w = None
        n_distinct = np.unique(table.failure_values).size
        if n_distinct < 2:
            raise InsufficientDataError(
                "Maximum likelihood requires at least 2 distinct failure values; "
                f"got {n_distinct}.",
                required=2,
            )
    else:
        w = np.asarray(weights, dtype=float).ravel()
        if w.shape != values.shape:
            raise ValueError(f"weights must have one entry per observation ({table.n}), got {w.size}.")
        if np.any(~np.isfinite(w)) or np.any(w < 0):
            raise ValueError("weights must be finite and non-negative.")
        if np.sum(w[failed]) <= 1e-12:
            raise InsufficientDataError(
                "Weighted maximum likelihood requires a positive weighted failure count.",
                required=1,
            )

    if mode == "fixed" and gamma_fixed >= table.min_value:
        raise NumericalError(
            f"Fixed threshold {gamma_fixed} must be below the minimum value {table.min_value}."
        )

    fit_gamma = mode == "search"
    gamma_upper = table.min_value * (1.0 - 1e-9)

    # --- starting point ---
    if initial is not None:
        mu0, sigma0 = initial.mu, initial.sigma
        gamma0 = initial.gamma
    elif w is None:
        seed = rank_regression(johnson(table), family, threshold)
        mu0, sigma0, gamma0 = seed.mu, seed.sigma, seed.gamma
    else:
        gamma0 = gamma_fixed
        if fit_gamma:
            gamma0 = rank_regression(johnson(table), family, "search").gamma
        mu0, sigma0 = _moment_guess(values[failed], w[failed], family, gamma0)

    if fit_gamma:
        gamma0 = 0.5 * table.min_value if gamma0 is None else float(np.clip(gamma0, 0.0, gamma_upper))

    def unpack(theta):
        mu, sigma = theta[0], np.exp(theta[1])
        gamma = theta[2] if fit_gamma else gamma_fixed
        return mu, sigma, gamma

    def negll(theta):
        mu, sigma, gamma = unpack(theta)
        ll = log_likelihood(values, failed, mu, sigma, family, gamma, w)
        return -ll if np.isfinite(ll) else _BAD_NLL

    x0 = [mu0, np.log(sigma0)] + ([gamma0] if fit_gamma else [])
    bounds = [(None, None), (np.log(1e-6), np.log(1e3))]
    if fit_gamma:
        bounds.append((0.0, gamma_upper))

    res = run_optimizer(negll, x0, bounds=bounds, optimizer=optimizer, max_iter=max_iter)

    theta = np.asarray(res.x, dtype=float)
    nll = float(negll(theta))
    nll0 = float(negll(np.asarray(x0, dtype=float)))
    if nll0 < nll:
        theta, nll = np.asarray(x0, dtype=float), nll0
    mu, sigma, gamma = unpack(theta)
    mu, sigma = float(mu), float(sigma)
    gamma = None if gamma is None else float(gamma)

    k = 3 if fit_gamma else 2
    n_eff = table.n if w is None else float(np.sum(w))
    loglik = -nll
    AIC, BIC = information_criteria(loglik, k, n_eff)

    nit = getattr(res, "nit", None)
    diagnostics = {
        "optimizer": optimizer if isinstance(optimizer, str) else getattr(optimizer, "__name__", "callable"),
        "success": bool(getattr(res, "success", False)),
        "message": str(getattr(res, "message", "")),
        "nit": nit,
        "max_iter": int(max_iter),
    }

    def build(covariance=None):
        return DistributionParameters(
            family=family,
            mu=mu,
            sigma=sigma,
            gamma=gamma,
            method="MLE",
            loglik=loglik,
            AIC=AIC,
            BIC=BIC,
            covariance=covariance,
        )

    if nll >= _BAD_NLL:
        raise ConvergenceError(
            "Maximum likelihood found no finite log-likelihood.",
            parameters=None,
            diagnostics=diagnostics,
        )
    if nit is not None and nit >= max_iter:
        raise ConvergenceError(
            f"Maximum likelihood did not converge within {max_iter} iterations.",
            parameters=build(),
            diagnostics=diagnostics,
        )
    if not compute_covariance:
        return build()

    # --- observed information in (mu, sigma[, gamma]) ---
    h_gamma = 1e-4 * max(abs(gamma), 1e-2) if fit_gamma else 0.0
    gamma_at_bound = fit_gamma and (
        gamma <= 1e-8 * table.min_value or gamma + 2.0 * h_gamma >= table.min_value
    )
    diagnostics["gamma_at_bound"] = bool(gamma_at_bound)
    free_gamma = fit_gamma and not gamma_at_bound

    def negll_natural(p):
        g = p[2] if free_gamma else gamma
        ll = log_likelihood(values, failed, p[0], p[1], family, g, w)
        return -ll

    point = [mu, sigma] + ([gamma] if free_gamma else [])
    H = numerical_hessian(negll_natural, point)
    diagnostics["hessian"] = H
    if not np.all(np.isfinite(H)):
        raise ConvergenceError(
            "The observed information matrix is not finite at the optimum.",
            parameters=build(),
            diagnostics=diagnostics,
        )
    eig = np.linalg.eigvalsh(H)
    if eig[0] <= 0:
        raise ConvergenceError(
            "The log-likelihood is not concave at the optimum "
            "(observed information is not positive definite).",
            parameters=build(),
            diagnostics=diagnostics,
        )
    if eig[-1] / eig[0] > 1e12:
        raise ConvergenceError(
            "The observed information matrix is singular at the optimum.",
            parameters=build(),
            diagnostics=diagnostics,
        )

    cov = np.linalg.inv(H)
    if gamma_at_bound:
        padded = np.full((3, 3), np.nan)
        padded[:2, :2] = cov
        cov = padded
    return build(cov)


# ---------------------------------------------------------------------
# Fit_ classes
# ---------------------------------------------------------------------

def _parameter_rows(params):
    rows = []
    if params.family is Family.WEIBULL:
        rows.append(["Alpha", params.alpha])
        rows.append(["Beta", params.beta])
    rows.append(["Mu", params.mu])
    rows.append(["Sigma", params.sigma])
    if params.gamma is not None:
        rows.append(["Gamma", params.gamma])
    return pd.DataFrame(rows, columns=["Parameter", "Point Estimate"])


def _goodness_of_fit_table(params):
    names, vals = [], []
    for label, attr in (("Log-likelihood", "loglik"), ("AIC", "AIC"), ("BIC", "BIC"),
                        ("Correlation (r)", "correlation"), ("Residual SS", "SSR")):
        v = getattr(params, attr)
        if v is not None:
            names.append(label)
            vals.append(v)
    return pd.DataFrame({"Goodness of fit": names, "Value": vals})


class _FitMixin:
    """Mirror DistributionParameters onto the fitter as plain attributes."""

    def _mirror(self, params):
        self.parameters = params
        self.family = params.family
        self.mu = params.mu
        self.sigma = params.sigma
        self.gamma = params.gamma
        if params.family is Family.WEIBULL:
            self.alpha = params.alpha
            self.beta = params.beta
        self.goodness_of_fit = _goodness_of_fit_table(params)


class Fit_Rank_Regression(_FitMixin):
    """
    Rank regression fit of a Weibull or Lognormal distribution.

    Either pass ready-made `points` (CDFPoints, e.g. from `estimate_cdf`) or
    the data, in which case plotting positions are computed with `method`
    ("Johnson" by default; "MR" needs uncensored data).

    Attributes
    ----------
    parameters : DistributionParameters
    mu, sigma, gamma, alpha, beta : float
        alpha/beta only for Weibull.
    correlation, SSR : float
    line : FittedLine
        Plot-ready line x = intercept + slope * y.
    points : tuple of CDFPoint
    results : pandas.DataFrame
    """

    def __init__(
        self,
        failures=None,
        right_censored=None,
        data=None,
        points=None,
        family="weibull",
        threshold=None,
        method=CDFMethod.JOHNSON,
        print_results=True,
    ):
        self.table = None
        if points is None:
            self.table = coerce_table(data, failures, right_censored)
            points = estimate_cdf(self.table, method)
        self.points = tuple(points)
        if len(self.points) == 0:
            raise InsufficientDataError("No plotting positions supplied.", required=2)
        self.method = self.points[0].method

        params = rank_regression(self.points, family, threshold)
        self._mirror(params)
        self.correlation = params.correlation
        self.SSR = params.SSR

        values = [p.value for p in self.points]
        self.line = fitted_line(params, min(values), max(values))
        self.results = _parameter_rows(params)

        if print_results:
            title = f"Results from {self.__class__.__name__} ({params.tag}):"
            analysis = f"Least Squares Estimation (RRX, {self.method.value} plotting positions)"
            if self.table is not None:
                print_sample_summary(title, analysis, self.table)
            else:
                colorprint(title, bold=True, underline=True)
                print(f"Analysis method: {analysis}")
                print(f"Plotting positions: {len(self.points)}\n")
            print(self.results.to_string(index=False), "\n")
            print_goodness_of_fit(params)


class Fit_MLE(_FitMixin):
    """
    Maximum likelihood fit of a Weibull or Lognormal distribution to
    right-censored data.

    A ConvergenceError from the optimizer does not abort the fit: a warning
    is printed, `success` is set to False and the best iterate is kept, with
    the solver details in `diagnostics`.

    Attributes
    ----------
    parameters : DistributionParameters
    mu, sigma, gamma, alpha, beta : float
    mu_SE, sigma_SE, gamma_SE : float
    loglik, AIC, BIC : float
    covariance : numpy.ndarray or None
    success : bool
    diagnostics : dict
    results : pandas.DataFrame
        Point estimates, standard errors and CI bounds.
    """

    def __init__(
        self,
        failures=None,
        right_censored=None,
        data=None,
        family="weibull",
        threshold=None,
        CI=DEFAULT_CI,
        optimizer=None,
        max_iter=MLE_MAX_ITER,
        print_results=True,
    ):
        if not (0 < CI < 1):
            raise ValueError("CI must be in (0,1)")
        self.CI = float(CI)
        self.optimizer = check_optimizer(optimizer)
        self.table = coerce_table(data, failures, right_censored)

        try:
            params = fit_mle(
                self.table,
                family=family,
                threshold=threshold,
                optimizer=self.optimizer,
                max_iter=max_iter,
            )
            self.success = True
            self.diagnostics = {}
        except ConvergenceError as err:
            if err.parameters is None:
                raise
            print_warning(f"MLE did not converge: {err}")
            params = err.parameters
            self.success = False
            self.diagnostics = err.diagnostics

        self._mirror(params)
        self.loglik = params.loglik
        self.AIC = params.AIC
        self.BIC = params.BIC
        self.covariance = params.covariance
        for p, se in params.standard_errors().items():
            setattr(self, f"{p}_SE", se)

        self.results = params.confidence_table(self.CI)

        if print_results:
            CI_pct = int(round(100 * self.CI))
            print_sample_summary(
                f"Results from {self.__class__.__name__} ({params.tag}, {CI_pct}% CI):",
                "Maximum Likelihood Estimation (MLE)",
                self.table,
            )
            print(self.results.to_string(index=False), "\n")
            print_goodness_of_fit(params)
