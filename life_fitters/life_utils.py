# life_utils.py

from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import pandas as pd
from scipy.optimize import minimize
from scipy.stats import norm
from reliability.Utils import colorprint, round_and_string


DEFAULT_CI = 0.95
DEFAULT_OPTIMIZER = "L-BFGS-B"
MLE_MAX_ITER = 500

_OPTIMIZERS = ("L-BFGS-B", "TNC", "powell", "nelder-mead")


# ---------------------------------------------------------------------
# 1. Errors
# ---------------------------------------------------------------------

class LifeDataError(Exception):
    """Base class for every error raised by life_fitters."""


class InputError(LifeDataError, ValueError):
    """Malformed observations: bad value, unknown status code or empty sample."""


class InsufficientDataError(LifeDataError, ValueError):
    """Too few failures (or distinct failure values) for the requested method."""

    def __init__(self, message, required=None):
        super().__init__(message)
        self.required = required


class ConvergenceError(LifeDataError, RuntimeError):
    """
    Iterative fit stopped without a usable optimum.

    The best iterate found is kept on `parameters` (or `model` for mixtures)
    and the solver details on `diagnostics`, so callers can inspect the
    partial result.
    """

    def __init__(self, message, parameters=None, diagnostics=None):
        super().__init__(message)
        self.parameters = parameters
        self.diagnostics = {} if diagnostics is None else dict(diagnostics)


class NumericalError(LifeDataError, ArithmeticError):
    """Transform outside its domain, e.g. log of a non-positive shifted value."""


# ---------------------------------------------------------------------
# 2. Observations and the sample table
# ---------------------------------------------------------------------

class Status(str, Enum):
    FAILED = "F"
    CENSORED = "C"

    @classmethod
    def parse(cls, code):
        """Map a status code ("F"/"C", "failed"/"censored" or a member) to a Status."""
        if isinstance(code, cls):
            return code
        if isinstance(code, str):
            key = code.strip().lower()
            if key in ("f", "failed"):
                return cls.FAILED
            if key in ("c", "censored"):
                return cls.CENSORED
        raise InputError(f"Unrecognized status code {code!r}; use 'F' (failed) or 'C' (censored).")


@dataclass(frozen=True)
class Observation:
    value: float
    status: Status

    @property
    def failed(self):
        return self.status is Status.FAILED


@dataclass(frozen=True)
class RiskRow:
    """Counts at one distinct value: units at risk, failures and censorings there."""
    value: float
    at_risk: int
    failures: int
    censored: int


def _as_observation(item):
    if isinstance(item, Observation):
        value, status = item.value, item.status
    else:
        try:
            value, status = item
        except (TypeError, ValueError):
            raise InputError(f"Expected an Observation or a (value, status) pair, got {item!r}.") from None

    if isinstance(value, (bool, np.bool_)):
        raise InputError(f"Observation value must be a number, got {value!r}.")
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise InputError(f"Observation value must be a number, got {value!r}.") from None
    if not np.isfinite(value) or value <= 0:
        raise InputError(f"Observation values must be finite and > 0, got {value!r}.")

    return Observation(value=value, status=Status.parse(status))


class SampleTable:
    """
    Ordered, validated life-data sample.

    Observations are sorted ascending by value. At equal value, failures are
    placed before censorings, so a censoring that coincides with a failure is
    treated as happening just after it (it is still at risk at that failure).

    Parameters
    ----------
    observations : iterable
        `Observation` objects or (value, status) pairs. Status codes are
        "F"/"failed" or "C"/"censored" (case-insensitive), or `Status` members.

    Raises
    ------
    InputError
        Empty sample, non-positive or non-numeric value, unknown status.
    """

    def __init__(self, observations):
        obs = [_as_observation(item) for item in observations]
        if len(obs) == 0:
            raise InputError("A sample must contain at least one observation.")

        obs.sort(key=lambda o: (o.value, 0 if o.failed else 1))
        self._observations = tuple(obs)

        values = np.array([o.value for o in obs], dtype=float)
        failed = np.array([o.failed for o in obs], dtype=bool)
        values.setflags(write=False)
        failed.setflags(write=False)
        self._values = values
        self._failed = failed

        distinct, inverse, counts = np.unique(values, return_inverse=True, return_counts=True)
        n_failed = np.bincount(inverse.ravel(), weights=failed.astype(float), minlength=distinct.size)
        n_failed = np.rint(n_failed).astype(int)
        # units at or above each distinct value
        at_risk = np.cumsum(counts[::-1])[::-1]
        self._risk_set = tuple(
            RiskRow(value=float(v), at_risk=int(r), failures=int(d), censored=int(c - d))
            for v, r, d, c in zip(distinct, at_risk, n_failed, counts)
        )
        distinct.setflags(write=False)
        self._distinct = distinct

    @classmethod
    def from_failures(cls, failures, right_censored=None):
        """Build a table from separate failure and right-censored value lists."""
        failures = [] if failures is None else list(np.asarray(failures, dtype=object).ravel())
        right_censored = [] if right_censored is None else list(np.asarray(right_censored, dtype=object).ravel())
        pairs = [(v, Status.FAILED) for v in failures] + [(v, Status.CENSORED) for v in right_censored]
        return cls(pairs)

    # ------------------------------------------------------------------
    # Sequence protocol
    # ------------------------------------------------------------------
    def __len__(self):
        return len(self._observations)

    def __iter__(self):
        return iter(self._observations)

    def __getitem__(self, idx):
        return self._observations[idx]

    def __repr__(self):
        return (
            f"SampleTable(n={self.n}, failures={self.n_failures}, "
            f"right_censored={self.n_censored})"
        )

    # ------------------------------------------------------------------
    # Derived counts
    # ------------------------------------------------------------------
    @property
    def observations(self):
        return self._observations

    @property
    def values(self):
        return self._values

    @property
    def failed(self):
        return self._failed

    @property
    def n(self):
        return len(self._observations)

    @property
    def n_failures(self):
        return int(np.sum(self._failed))

    @property
    def n_censored(self):
        return self.n - self.n_failures

    @property
    def min_value(self):
        return float(self._values[0])

    @property
    def distinct_values(self):
        return self._distinct

    @property
    def failure_values(self):
        return self._values[self._failed]

    @property
    def censored_values(self):
        return self._values[~self._failed]

    @property
    def risk_set(self):
        return self._risk_set

    def n_below(self, value):
        """Number of units whose value is strictly less than `value`."""
        return int(np.searchsorted(self._values, value, side="left"))

    def failures_only(self):
        """New table holding only the failures."""
        if self.n_failures == 0:
            raise InsufficientDataError("The sample contains no failures.", required=1)
        return SampleTable(o for o in self._observations if o.failed)


def coerce_table(data=None, failures=None, right_censored=None):
    """
    Resolve the `data` / `failures` + `right_censored` inputs of the Fit_ classes
    into a SampleTable.
    """
    if data is not None:
        if failures is not None or right_censored is not None:
            raise ValueError("Supply either data or failures/right_censored, not both.")
        if isinstance(data, SampleTable):
            return data
        return SampleTable(data)
    if failures is None:
        raise InputError("No data supplied: pass data or failures.")
    return SampleTable.from_failures(failures, right_censored)


# ---------------------------------------------------------------------
# 3. Distribution families and the linearizer
# ---------------------------------------------------------------------

class Family(str, Enum):
    WEIBULL = "weibull"
    LOGNORMAL = "lognormal"


# Standardised log-location-scale pieces, z = (log(t - gamma) - mu) / sigma.
# Weibull uses the smallest-extreme-value distribution, lognormal the normal.

def _sev_logpdf(z):
    return z - np.exp(z)


def _sev_logsf(z):
    return -np.exp(z)


def _sev_cdf(z):
    return -np.expm1(-np.exp(z))


def _sev_ppf(F):
    return np.log(-np.log1p(-F))


@dataclass(frozen=True)
class _FamilyFuncs:
    logpdf: object
    logsf: object
    cdf: object
    ppf: object
    label: str


_FAMILY_TABLE = {
    Family.WEIBULL: _FamilyFuncs(
        logpdf=_sev_logpdf,
        logsf=_sev_logsf,
        cdf=_sev_cdf,
        ppf=_sev_ppf,
        label="Weibull",
    ),
    Family.LOGNORMAL: _FamilyFuncs(
        logpdf=norm.logpdf,
        logsf=norm.logsf,
        cdf=norm.cdf,
        ppf=norm.ppf,
        label="Lognormal",
    ),
}


def family_funcs(family):
    family = Family(family)
    return _FAMILY_TABLE[family]


def resolve_family(family, threshold=None):
    """
    Parse a family tag.

    "weibull" / "lognormal" keep `threshold` as given; the 3-parameter tags
    "weibull3" / "lognormal3" request a threshold search unless a threshold
    was supplied explicitly.

    Returns
    -------
    (Family, threshold)
    """
    if isinstance(family, Family):
        return family, threshold
    key = str(family).strip().lower().replace("_", "")
    three_p = False
    for suffix, is_3p in (("3p", True), ("3", True), ("2p", False), ("2", False)):
        if key.endswith(suffix):
            key = key[: -len(suffix)]
            three_p = is_3p
            break
    try:
        fam = Family(key)
    except ValueError:
        raise ValueError(
            f"Unknown distribution family {family!r}; use 'weibull', 'weibull3', "
            "'lognormal' or 'lognormal3'."
        ) from None
    if three_p and threshold is None:
        threshold = "search"
    return fam, threshold


def transform_value(value, gamma=None):
    """x = log(value - gamma)."""
    value = np.asarray(value, dtype=float)
    shifted = value if gamma is None else value - gamma
    if np.any(shifted <= 0):
        raise NumericalError(
            f"Threshold {gamma} is not below every value (minimum {np.min(value)}); "
            "cannot take the log of a non-positive shifted value."
        )
    return np.log(shifted)


def transform_probability(F, family):
    """y = log(-log(1-F)) for Weibull, y = Phi^-1(F) for lognormal."""
    F = np.asarray(F, dtype=float)
    if np.any((F <= 0) | (F >= 1)):
        raise NumericalError("Probabilities must lie strictly inside (0, 1) to be linearized.")
    return family_funcs(family).ppf(F)


def inverse_transform_probability(y, family):
    return family_funcs(family).cdf(np.asarray(y, dtype=float))


def inverse_transform_value(x, gamma=None):
    t = np.exp(np.asarray(x, dtype=float))
    return t if gamma is None else t + gamma


def linearize(values, F, family, gamma=None):
    """Map (value, F) pairs to straight-line coordinates (x, y)."""
    return transform_value(values, gamma), transform_probability(F, family)


def weibull_from_location_scale(mu, sigma):
    """(mu, sigma) -> (eta, beta) with eta = exp(mu), beta = 1/sigma."""
    return float(np.exp(mu)), float(1.0 / sigma)


def location_scale_from_weibull(alpha, beta):
    return float(np.log(alpha)), float(1.0 / beta)


# ---------------------------------------------------------------------
# 4. Likelihood helpers
# ---------------------------------------------------------------------

def log_likelihood(values, failed, mu, sigma, family, gamma=None, weights=None):
    """
    Censored log-likelihood.

    Failures contribute log f(t), right-censored units log S(t). With
    `weights`, each contribution is multiplied by its weight (used by the
    EM M-step). Returns -inf outside the parameter domain.
    """
    if not (sigma > 0) or not np.isfinite(mu):
        return -np.inf
    values = np.asarray(values, dtype=float)
    shifted = values if gamma is None else values - gamma
    if np.any(shifted <= 0):
        return -np.inf

    funcs = family_funcs(family)
    log_t = np.log(shifted)
    z = (log_t - mu) / sigma
    lp = funcs.logpdf(z) - np.log(sigma) - log_t
    ls = funcs.logsf(z)
    contrib = np.where(failed, lp, ls)
    if weights is not None:
        contrib = np.asarray(weights, dtype=float) * contrib
    ll = float(np.sum(contrib))
    return ll if np.isfinite(ll) else -np.inf


def observation_logdensity(values, failed, params):
    """Per-observation log f (failures) or log S (censored) under `params`."""
    values = np.asarray(values, dtype=float)
    return np.where(failed, params.logpdf(values), params.logsf(values))


def numerical_hessian(fun, x, rel_step=1e-4):
    """
    Central-difference Hessian of a scalar function.

    Step sizes are relative to |x_i| with a floor so that parameters close
    to zero still get a usable step.
    """
    x = np.asarray(x, dtype=float)
    p = len(x)
    h = rel_step * np.maximum(np.abs(x), 1e-2)
    H = np.zeros((p, p))
    f0 = fun(x)
    for i in range(p):
        ei = np.zeros(p)
        ei[i] = h[i]
        H[i, i] = (fun(x + ei) - 2.0 * f0 + fun(x - ei)) / h[i] ** 2
        for j in range(i + 1, p):
            ej = np.zeros(p)
            ej[j] = h[j]
            H[i, j] = (
                fun(x + ei + ej) - fun(x + ei - ej) - fun(x - ei + ej) + fun(x - ei - ej)
            ) / (4.0 * h[i] * h[j])
            H[j, i] = H[i, j]
    return H


# ---------------------------------------------------------------------
# 5. Solver interface
# ---------------------------------------------------------------------

def check_optimizer(optimizer):
    if optimizer is None:
        return DEFAULT_OPTIMIZER
    if callable(optimizer):
        return optimizer
    for name in _OPTIMIZERS:
        if str(optimizer).lower() == name.lower():
            return name
    raise ValueError(f"optimizer must be one of {_OPTIMIZERS} or a callable, got {optimizer!r}.")


def run_optimizer(fun, x0, bounds=None, optimizer=None, max_iter=MLE_MAX_ITER):
    """
    Minimise `fun` from `x0`.

    Parameters
    ----------
    optimizer : str or callable or None
        A scipy.optimize.minimize method name, or a callable
        optimizer(fun, x0, bounds, max_iter) returning an object with
        `x`, `fun`, `success`, `message` and `nit` attributes.

    Returns
    -------
    scipy.optimize.OptimizeResult (or whatever the callable returns)
    """
    optimizer = check_optimizer(optimizer)
    x0 = np.asarray(x0, dtype=float)
    if callable(optimizer):
        return optimizer(fun, x0, bounds, max_iter)

    options = {"maxiter": int(max_iter)}
    if optimizer == "L-BFGS-B":
        options.update(ftol=1e-12, gtol=1e-8)
    elif optimizer == "TNC":
        # TNC budgets function evaluations, not iterations
        options = {"maxfun": 50 * int(max_iter), "ftol": 1e-12, "gtol": 1e-8}
    elif optimizer == "nelder-mead":
        options.update(xatol=1e-8, fatol=1e-10)
    elif optimizer == "powell":
        options.update(xtol=1e-8, ftol=1e-10)
    # nelder-mead and powell honour bounds in current scipy releases
    return minimize(fun, x0, method=optimizer, bounds=bounds, options=options)


# ---------------------------------------------------------------------
# 6. Fitted parameters
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class DistributionParameters:
    """
    Fitted log-location-scale distribution.

    mu, sigma are the location and scale of log(t - gamma). For Weibull
    `alpha` (eta) and `beta` give the usual scale/shape view.

    covariance, when present, is ordered (mu, sigma[, gamma]).
    """
    family: Family
    mu: float
    sigma: float
    gamma: float = None
    method: str = "MLE"
    correlation: float = None
    SSR: float = None
    loglik: float = None
    AIC: float = None
    BIC: float = None
    covariance: np.ndarray = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if not (self.sigma > 0):
            raise NumericalError(f"sigma must be > 0, got {self.sigma}.")
        if self.covariance is not None:
            cov = np.array(self.covariance, dtype=float)
            cov.setflags(write=False)
            object.__setattr__(self, "covariance", cov)

    # --- parameter views ------------------------------------------------
    @property
    def tag(self):
        return self.family.value + ("3" if self.gamma is not None else "")

    @property
    def alpha(self):
        """Weibull scale eta = exp(mu)."""
        return float(np.exp(self.mu))

    @property
    def beta(self):
        """Weibull shape = 1/sigma."""
        return float(1.0 / self.sigma)

    @property
    def n_params(self):
        return 2 if self.gamma is None else 3

    def _z(self, t):
        t = np.asarray(t, dtype=float)
        shifted = t if self.gamma is None else t - self.gamma
        with np.errstate(divide="ignore", invalid="ignore"):
            log_t = np.log(np.where(shifted > 0, shifted, np.nan))
        return (log_t - self.mu) / self.sigma, log_t

    # --- distribution functions ----------------------------------------
    def cdf(self, t):
        z, _ = self._z(t)
        F = family_funcs(self.family).cdf(z)
        return np.where(np.isnan(z), 0.0, F)

    def sf(self, t):
        return 1.0 - self.cdf(t)

    def logpdf(self, t):
        z, log_t = self._z(t)
        lp = family_funcs(self.family).logpdf(z) - np.log(self.sigma) - log_t
        return np.where(np.isnan(z), -np.inf, lp)

    def logsf(self, t):
        z, _ = self._z(t)
        ls = family_funcs(self.family).logsf(z)
        return np.where(np.isnan(z), 0.0, ls)

    def pdf(self, t):
        return np.exp(self.logpdf(t))

    def quantile(self, F):
        """Value below which a fraction F of the population has failed."""
        F = np.asarray(F, dtype=float)
        y = family_funcs(self.family).ppf(F)
        return inverse_transform_value(self.mu + self.sigma * y, self.gamma)

    def b_life(self, percent):
        """B-life, e.g. b_life(10) is the B10 life."""
        return float(self.quantile(percent / 100.0))

    # --- uncertainty -----------------------------------------------------
    def standard_errors(self):
        """dict of standard errors for mu, sigma (and gamma); NaN when unknown."""
        names = ["mu", "sigma"] + (["gamma"] if self.gamma is not None else [])
        se = {nm: np.nan for nm in names}
        if self.covariance is None:
            return se
        # a fixed threshold has no row in the covariance matrix
        for nm, v in zip(names, np.diag(self.covariance)):
            se[nm] = float(np.sqrt(v)) if v >= 0 else np.nan
        return se

    def confidence_table(self, CI=DEFAULT_CI):
        """
        Parameter table with standard errors and two-sided confidence bounds.

        mu and gamma use symmetric normal bounds; the positive parameters
        (sigma, and the Weibull alpha/beta) use bounds on the log scale.
        """
        if not (0 < CI < 1):
            raise ValueError("CI must be in (0,1)")
        z = norm.ppf(0.5 + CI / 2.0)
        se = self.standard_errors()
        rows = []

        def _sym(name, v, s):
            rows.append([name, v, s, v - z * s, v + z * s])

        def _log(name, v, s):
            rows.append([name, v, s, v * np.exp(-z * s / v), v * np.exp(z * s / v)])

        if self.family is Family.WEIBULL:
            # delta method: se(alpha) = alpha*se(mu), se(beta) = se(sigma)/sigma^2
            _log("Alpha", self.alpha, self.alpha * se["mu"])
            _log("Beta", self.beta, se["sigma"] / self.sigma ** 2)
        _sym("Mu", self.mu, se["mu"])
        _log("Sigma", self.sigma, se["sigma"])
        if self.gamma is not None:
            _sym("Gamma", self.gamma, se["gamma"])

        CI_pct = int(round(100 * CI))
        cols = ["Parameter", "Point Estimate", "Standard Error",
                f"Lower {CI_pct}% CI", f"Upper {CI_pct}% CI"]
        return pd.DataFrame(rows, columns=cols)


@dataclass(frozen=True)
class FittedLine:
    """
    Plot-ready straight line in linearized coordinates, x = intercept + slope * y,
    valid for values in [value_min, value_max].
    """
    family: Family
    slope: float
    intercept: float
    value_min: float
    value_max: float
    gamma: float = None

    def x_at(self, y):
        return self.intercept + self.slope * np.asarray(y, dtype=float)

    def y_at(self, x):
        return (np.asarray(x, dtype=float) - self.intercept) / self.slope

    def endpoints(self):
        """((x0, y0), (x1, y1)) at the ends of the valid value domain."""
        x = transform_value([self.value_min, self.value_max], self.gamma)
        y = self.y_at(x)
        return (float(x[0]), float(y[0])), (float(x[1]), float(y[1]))


# ---------------------------------------------------------------------
# 7. Printing helpers
# ---------------------------------------------------------------------

def information_criteria(loglik, k, n):
    """(AIC, BIC) from a maximised log-likelihood with k free parameters."""
    AIC = -2.0 * loglik + 2.0 * k
    BIC = -2.0 * loglik + np.log(n) * k
    return float(AIC), float(BIC)


def print_warning(message):
    colorprint(f"WARNING: {message}", text_color="red")


def print_sample_summary(title, method, table):
    """Heading plus the failures / right-censored line used by every Fit_ class."""
    colorprint(title, bold=True, underline=True)
    print(f"Analysis method: {method}")
    frac_cens = table.n_censored / table.n * 100.0
    print("Failures / Right censored:", f"{table.n_failures}/{table.n_censored}",
          f"({round_and_string(frac_cens)}% right censored)\n")


def print_goodness_of_fit(params):
    rows = []
    if params.loglik is not None:
        rows.append(["Log-likelihood", round_and_string(params.loglik)])
    if params.AIC is not None:
        rows.append(["AIC", round_and_string(params.AIC)])
        rows.append(["BIC", round_and_string(params.BIC)])
    if params.correlation is not None:
        rows.append(["Correlation (r)", round_and_string(params.correlation)])
    if params.SSR is not None:
        rows.append(["Residual SS", round_and_string(params.SSR)])
    if rows:
        gof = pd.DataFrame(rows, columns=["Goodness of fit", "Value"])
        print(gof.to_string(index=False), "\n")
