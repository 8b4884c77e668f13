from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.special import logsumexp
from reliability.Utils import colorprint, round_and_string

from .CDF_estimators import CDFMethod, estimate_cdf, median_ranks
from .Life_fitters import fit_mle, rank_regression
from .life_utils import (
    ConvergenceError,
    Family,
    InsufficientDataError,
    SampleTable,
    check_optimizer,
    coerce_table,
    information_criteria,
    linearize,
    observation_logdensity,
    print_sample_summary,
    print_warning,
    resolve_family,
)

"""
Separation of mixed failure-mode populations.

Two algorithms produce a MixtureModel of k subgroups:

1) Segmented regression (`segmented_regression`, `Fit_Segmented_Mixture`)
   splits the ordered plotting positions at k-1 breakpoints so that the
   summed residual sum of squares of independent x-on-y lines per segment is
   minimal. Membership is a hard partition of the failures by value;
   censored units are not assigned.
2) EM (`em_mixture`, `Fit_EM_Mixture`) keeps a responsibility per
   observation and subgroup. Failures contribute the subgroup density,
   censored units the subgroup survival, so censored units get a soft
   membership too. The M-step is a weighted maximum likelihood fit per
   subgroup.

Automatic choice of k in segmented regression uses a penalised criterion and
can still overestimate the number of subgroups; a warning is attached to
every automatically selected model.
"""

SEGMENT_MAX_K = 4
EM_TOL = 1e-6
EM_MAX_ITER = 200

_MIN_WEIGHT = 1e-6
_AUTO_K_WARNING = (
    "The number of subgroups was selected automatically; the penalised criterion "
    "can overestimate it. Check the subgroups against the physical failure modes."
)


@dataclass(frozen=True)
class Subgroup:
    """
    One failure-mode subpopulation.

    Segmented subgroups hold the failures with lower < value <= upper.
    EM subgroups are described by column `index` of the responsibility
    matrix; `n_members` is then the summed responsibility.
    """
    parameters: object
    weight: float
    index: int
    n_members: float
    lower: float = None
    upper: float = None


@dataclass(frozen=True)
class MixtureModel:
    subgroups: tuple
    method: str
    breakpoints: tuple = ()
    breakpoint_indices: tuple = ()
    responsibilities: np.ndarray = field(default=None, compare=False, repr=False)
    loglik: float = None
    AIC: float = None
    BIC: float = None
    SSR: float = None
    selection: tuple = ()
    converged: bool = True
    n_iter: int = None
    warnings: tuple = ()

    def __post_init__(self):
        if self.responsibilities is not None:
            R = np.array(self.responsibilities, dtype=float)
            R.setflags(write=False)
            object.__setattr__(self, "responsibilities", R)

    @property
    def k(self):
        return len(self.subgroups)

    @property
    def weights(self):
        return np.array([s.weight for s in self.subgroups])

    def cdf(self, t):
        """Population CDF, sum of weight * subgroup CDF."""
        return sum(s.weight * s.parameters.cdf(t) for s in self.subgroups)

    def sf(self, t):
        return 1.0 - self.cdf(t)

    def pdf(self, t):
        return sum(s.weight * s.parameters.pdf(t) for s in self.subgroups)

    def assign(self, values=None):
        """
        Subgroup index per value.

        Segmented models use the value bounds. EM models return the most
        responsible subgroup of each fitted observation when `values` is None,
        otherwise the most probable subgroup of a failure at each value.
        """
        if self.method == "segmented":
            if values is None:
                raise ValueError("Segmented models need the values to assign.")
            uppers = np.array([s.upper for s in self.subgroups[:-1]])
            return np.searchsorted(uppers, np.asarray(values, dtype=float), side="left")
        if values is None:
            return np.argmax(self.responsibilities, axis=1)
        values = np.asarray(values, dtype=float)
        logd = np.column_stack(
            [np.log(s.weight) + s.parameters.logpdf(values) for s in self.subgroups]
        )
        return np.argmax(logd, axis=1)


# ---------------------------------------------------------------------
# Segmented regression
# ---------------------------------------------------------------------

class _SegmentCosts:
    """
    Residual sum of squares of the x-on-y line over any run of consecutive
    value groups, in O(1) from prefix sums.
    """

    def __init__(self, x, y, group_starts):
        self.starts = np.append(group_starts, len(x))
        pad = lambda a: np.concatenate([[0.0], np.cumsum(a)])
        self.cn = pad(np.ones_like(x))
        self.cx = pad(x)
        self.cy = pad(y)
        self.cxx = pad(x * x)
        self.cyy = pad(y * y)
        self.cxy = pad(x * y)

    def __call__(self, g0, g1):
        """SSR for value groups g0..g1-1 (at least 2 groups)."""
        if g1 - g0 < 2:
            return np.inf
        s, e = self.starts[g0], self.starts[g1]
        n = self.cn[e] - self.cn[s]
        Sx, Sy = self.cx[e] - self.cx[s], self.cy[e] - self.cy[s]
        Sxx = self.cxx[e] - self.cxx[s] - Sx * Sx / n
        Syy = self.cyy[e] - self.cyy[s] - Sy * Sy / n
        Sxy = self.cxy[e] - self.cxy[s] - Sx * Sy / n
        if Syy <= 0:
            return np.inf
        return max(Sxx - Sxy * Sxy / Syy, 0.0)


def _optimal_partitions(cost, m, k_max):
    """
    Dynamic programme over value groups.

    best[j][g] is the minimal SSR of j segments covering groups 0..g-1.
    Returns {j: (SSR, [segment start groups])} for every feasible j <= k_max.
    """
    best = np.full((k_max + 1, m + 1), np.inf)
    back = np.zeros((k_max + 1, m + 1), dtype=int)
    best[0][0] = 0.0
    for j in range(1, k_max + 1):
        for g in range(2 * j, m + 1):
            for g0 in range(2 * (j - 1), g - 1):
                if not np.isfinite(best[j - 1][g0]):
                    continue
                c = best[j - 1][g0] + cost(g0, g)
                if c < best[j][g]:
                    best[j][g] = c
                    back[j][g] = g0

    partitions = {}
    for j in range(1, k_max + 1):
        if not np.isfinite(best[j][m]):
            continue
        starts, g = [], m
        for jj in range(j, 0, -1):
            g = back[jj][g]
            starts.append(g)
        partitions[j] = (float(best[j][m]), starts[::-1])
    return partitions


def segmented_regression(points, family=Family.WEIBULL, k=None, max_k=SEGMENT_MAX_K):
    """
    Split failure plotting positions into k ordered segments of at least 2 distinct values each.

    Breakpoints fall between distinct values and minimise the summed
    residual sum of squares of the per-segment x-on-y regressions on the
    common plotting positions. Each segment needs at least 2 distinct values.
    Subgroup parameters are then fitted by rank regression on Benard ranks
    recomputed within each segment, and the weight of a subgroup is its
    share of all supplied failures. Points with F = 1 (last Kaplan-Meier
    step) are kept out of the regression cost and counted in the last segment.

    Parameters
    ----------
    points : sequence of CDFPoint
    family : Family or str
    k : int or None
        Number of subgroups; None selects k in 1..max_k by
        N*log(SSR/N) + (3k - 1)*log(N) and attaches a warning.
    max_k : int

    Returns
    -------
    MixtureModel
        method "segmented".

    Raises
    ------
    InsufficientDataError
        k larger than the number of distinct failure values, or than half of
        it (2 distinct values per segment).
    """
    family, threshold = resolve_family(family)
    if threshold is not None:
        raise ValueError("Segmented regression does not support a threshold.")

    values = np.array([p.value for p in points], dtype=float)
    F = np.array([p.probability for p in points], dtype=float)
    order = np.argsort(values, kind="stable")
    values, F = values[order], F[order]
    # F = 1 points sit at the top of the order; they join the last segment
    # but are left out of the regression cost
    all_values = values
    keep = F < 1.0
    values, F = values[keep], F[keep]

    distinct, group_starts = np.unique(values, return_index=True)
    m = distinct.size
    if k is not None:
        k = int(k)
        if k < 1:
            raise ValueError("k must be at least 1.")
        if k > m:
            raise InsufficientDataError(
                f"Requested {k} subgroups but there are only {m} distinct failure values.",
                required=k,
            )
        if 2 * k > m:
            raise InsufficientDataError(
                f"{k} segments need at least {2 * k} distinct failure values "
                f"(2 per segment); got {m}.",
                required=2 * k,
            )
    elif m < 2:
        raise InsufficientDataError(
            f"Segmented regression requires at least 2 distinct failure values; got {m}.",
            required=2,
        )

    x, y = linearize(values, F, family)
    cost = _SegmentCosts(x, y, group_starts)
    k_max = k if k is not None else max(1, min(int(max_k), m // 2))
    partitions = _optimal_partitions(cost, m, k_max)

    warnings = []
    selection = []
    if k is None:
        N = len(x)
        floor = 1e-12 * max(float(np.sum((x - x.mean()) ** 2)), 1e-300)
        best_crit = np.inf
        for j, (SSR, _) in sorted(partitions.items()):
            crit = N * np.log(max(SSR, floor) / N) + (3 * j - 1) * np.log(N)
            selection.append((j, SSR, float(crit)))
            if crit < best_crit:
                best_crit, k = crit, j
        warnings.append(_AUTO_K_WARNING)

    SSR, start_groups = partitions[k]
    bounds = [int(group_starts[g]) for g in start_groups] + [len(all_values)]

    subgroups = []
    lower = 0.0
    for j in range(k):
        seg_values = all_values[bounds[j]:bounds[j + 1]]
        seg_points = median_ranks(SampleTable.from_failures(seg_values))
        params = rank_regression(seg_points, family)
        upper = float(seg_values[-1]) if j < k - 1 else np.inf
        subgroups.append(
            Subgroup(
                parameters=params,
                weight=seg_values.size / all_values.size,
                index=j,
                n_members=float(seg_values.size),
                lower=lower,
                upper=upper,
            )
        )
        lower = float(seg_values[-1])

    return MixtureModel(
        subgroups=tuple(subgroups),
        method="segmented",
        breakpoints=tuple(s.upper for s in subgroups[:-1]),
        breakpoint_indices=tuple(bounds[1:-1]),
        SSR=SSR,
        selection=tuple(selection),
        warnings=tuple(warnings),
    )


# ---------------------------------------------------------------------
# EM algorithm
# ---------------------------------------------------------------------

def _initial_responsibilities(table, k, seed, init):
    """
    "quantile": hard partition of the distinct failure values into k runs of
    (near) equal size; each censored unit joins the run covering its value.
    "random": Dirichlet(1, ..., 1) rows from numpy.random.default_rng(seed).
    """
    n = table.n
    if init == "random":
        rng = np.random.default_rng(seed)
        return rng.dirichlet(np.ones(k), size=n)
    if init != "quantile":
        raise ValueError(f"init must be 'quantile' or 'random', got {init!r}.")

    distinct = np.unique(table.failure_values)
    lowers = np.array([chunk[0] for chunk in np.array_split(distinct, k)])
    group = np.clip(np.searchsorted(lowers, table.values, side="right") - 1, 0, k - 1)
    R = np.zeros((n, k))
    R[np.arange(n), group] = 1.0
    return R


def em_mixture(
    table,
    k=2,
    family=Family.WEIBULL,
    seed=0,
    init="quantile",
    tol=EM_TOL,
    max_iter=EM_MAX_ITER,
    optimizer=None,
):
    """
    Mixture of k distributions by expectation-maximisation.

    M-step: weight_j = mean responsibility, parameters_j = weighted maximum
    likelihood with the responsibilities as weights (warm started).
    E-step: r_ij proportional to weight_j * f_j(t_i) for failures and
    weight_j * S_j(t_i) for censored units.

    Iterates until the log-likelihood changes by less than `tol`. When
    `max_iter` is reached the best model seen is returned with
    converged=False. With k=1 the result equals `fit_mle`.

    Parameters
    ----------
    table : SampleTable
    k : int
    family : Family or str
        Two-parameter families only.
    seed : int
        Seed of the "random" initialisation.
    init : {"quantile", "random"}
    tol : float
    max_iter : int
    optimizer : str or callable, optional

    Returns
    -------
    MixtureModel
        method "EM", subgroups ordered by median life.

    Raises
    ------
    InsufficientDataError
        Fewer than 2*k distinct failure values.
    """
    if not isinstance(table, SampleTable):
        table = SampleTable(table)
    family, threshold = resolve_family(family)
    if threshold is not None:
        raise ValueError("EM mixtures do not support a threshold.")
    optimizer = check_optimizer(optimizer)
    k = int(k)
    if k < 1:
        raise ValueError("k must be at least 1.")
    if max_iter < 1:
        raise ValueError("max_iter must be at least 1.")
    m = np.unique(table.failure_values).size
    if m < 2 * k:
        raise InsufficientDataError(
            f"An EM mixture of {k} subgroups needs at least {2 * k} distinct failure "
            f"values; got {m}.",
            required=2 * k,
        )

    values, failed = table.values, table.failed
    R = _initial_responsibilities(table, k, seed, init)
    params = [None] * k
    warnings = []
    best = None
    ll_prev = -np.inf
    converged = False
    it = 0

    while it < max_iter:
        it += 1

        # --- M-step ---
        weights = R.mean(axis=0)
        collapsed = [
            j for j in range(k)
            if weights[j] < _MIN_WEIGHT or np.sum(R[failed, j]) < _MIN_WEIGHT
        ]
        if collapsed:
            warnings.append(
                f"Subgroup(s) {[j + 1 for j in collapsed]} collapsed at iteration {it}; "
                "returning the best model found before."
            )
            break
        for j in range(k):
            try:
                params[j] = fit_mle(
                    table,
                    family,
                    weights=R[:, j],
                    initial=params[j],
                    optimizer=optimizer,
                    compute_covariance=False,
                )
            except ConvergenceError as err:
                if err.parameters is None:
                    raise
                params[j] = err.parameters
                warnings.append(f"M-step for subgroup {j + 1} did not converge at iteration {it}: {err}")

        # --- E-step ---
        logd = np.column_stack(
            [np.log(weights[j]) + observation_logdensity(values, failed, params[j]) for j in range(k)]
        )
        row_ll = logsumexp(logd, axis=1)
        ll = float(np.sum(row_ll))
        R = np.exp(logd - row_ll[:, None])

        if best is None or ll > best[3]:
            best = (tuple(params), weights.copy(), R.copy(), ll, it)

        if abs(ll - ll_prev) < tol:
            converged = True
            break
        ll_prev = ll

    if best is None:
        raise ConvergenceError("EM stopped before completing an iteration.", diagnostics={"warnings": warnings})
    if not converged and not any("collapsed" in w for w in warnings):
        warnings.append(
            f"EM did not converge within {max_iter} iterations; returning the best model found."
        )

    params_b, weights_b, R_b, ll_b, it_b = best
    order = np.argsort([p.quantile(0.5) for p in params_b], kind="stable")
    R_b = R_b[:, order]
    subgroups = tuple(
        Subgroup(
            parameters=params_b[j],
            weight=float(weights_b[j]),
            index=i,
            n_members=float(np.sum(R_b[:, i])),
        )
        for i, j in enumerate(order)
    )
    n_free = 2 * k + (k - 1)
    AIC, BIC = information_criteria(ll_b, n_free, table.n)
    return MixtureModel(
        subgroups=subgroups,
        method="EM",
        responsibilities=R_b,
        loglik=ll_b,
        AIC=AIC,
        BIC=BIC,
        converged=converged,
        n_iter=it,
        warnings=tuple(warnings),
    )


def best_em_mixture(table, k=2, family=Family.WEIBULL, seeds=(0, 1, 2, 3, 4), init="random", **kwargs):
    """
    Run `em_mixture` once per seed and keep the highest log-likelihood.

    EM only finds a local optimum; comparing restarts from different seeds is
    the usual remedy. Runs are independent and may equally be spread over
    threads or processes by the caller.
    """
    models = [em_mixture(table, k, family, seed=s, init=init, **kwargs) for s in seeds]
    if not models:
        raise ValueError("At least one seed is required.")
    return max(models, key=lambda mdl: mdl.loglik)


# ---------------------------------------------------------------------
# Fit_ classes
# ---------------------------------------------------------------------

def _subgroup_table(model):
    rows = []
    for s in model.subgroups:
        p = s.parameters
        row = {"Subgroup": s.index + 1, "Weight": s.weight, "Members": s.n_members}
        if p.family is Family.WEIBULL:
            row["Alpha"] = p.alpha
            row["Beta"] = p.beta
        row["Mu"] = p.mu
        row["Sigma"] = p.sigma
        if model.method == "segmented":
            row["Lower"] = s.lower
            row["Upper"] = s.upper
        rows.append(row)
    return pd.DataFrame(rows)


class _MixtureMixin:
    def _mirror(self, model):
        self.model = model
        self.k = model.k
        self.subgroups = model.subgroups
        self.weights = model.weights
        self.parameters = tuple(s.parameters for s in model.subgroups)
        self.warnings = model.warnings
        self.results = _subgroup_table(model)


class Fit_Segmented_Mixture(_MixtureMixin):
    """
    Mixture separation by segmented rank regression.

    Pass plotting positions as `points`, or the data (plotting positions are
    then computed with `method`, Johnson by default).

    Attributes
    ----------
    model : MixtureModel
    k : int
    breakpoints : tuple of float
        Upper value bound of every segment but the last.
    breakpoint_indices : tuple of int
        Position (in ascending failure order) where each later segment starts.
    SSR : float
    results : pandas.DataFrame
    warnings : tuple of str
    """

    def __init__(
        self,
        failures=None,
        right_censored=None,
        data=None,
        points=None,
        family="weibull",
        k=None,
        max_k=SEGMENT_MAX_K,
        method=CDFMethod.JOHNSON,
        print_results=True,
    ):
        self.table = None
        if points is None:
            self.table = coerce_table(data, failures, right_censored)
            points = estimate_cdf(self.table, method)
        self.points = tuple(points)

        model = segmented_regression(self.points, family, k=k, max_k=max_k)
        self._mirror(model)
        self.breakpoints = model.breakpoints
        self.breakpoint_indices = model.breakpoint_indices
        self.SSR = model.SSR

        if print_results:
            title = f"Results from {self.__class__.__name__} (k={self.k}):"
            analysis = "Segmented rank regression"
            if self.table is not None:
                print_sample_summary(title, analysis, self.table)
            else:
                colorprint(title, bold=True, underline=True)
                print(f"Analysis method: {analysis}")
                print(f"Plotting positions: {len(self.points)}\n")
            print(self.results.to_string(index=False), "\n")
            print("Residual SS:", round_and_string(self.SSR))
            if model.breakpoints:
                print("Breakpoints:", ", ".join(round_and_string(b) for b in model.breakpoints), "\n")
        for w in self.warnings:
            print_warning(w)


class Fit_EM_Mixture(_MixtureMixin):
    """
    Mixture of k Weibull or Lognormal subgroups fitted by EM.

    Censored units receive fractional membership through the
    responsibilities. A run that hits `max_iter` is returned with
    `converged = False` and a printed warning.

    Attributes
    ----------
    model : MixtureModel
    responsibilities : numpy.ndarray
        n x k, rows sum to 1, in SampleTable order.
    loglik, AIC, BIC : float
    converged : bool
    n_iter : int
    results : pandas.DataFrame
    warnings : tuple of str
    """

    def __init__(
        self,
        failures=None,
        right_censored=None,
        data=None,
        family="weibull",
        k=2,
        seed=0,
        init="quantile",
        tol=EM_TOL,
        max_iter=EM_MAX_ITER,
        optimizer=None,
        print_results=True,
    ):
        if tol <= 0:
            raise ValueError("tol must be > 0")
        self.table = coerce_table(data, failures, right_censored)
        model = em_mixture(
            self.table,
            k=k,
            family=family,
            seed=seed,
            init=init,
            tol=tol,
            max_iter=max_iter,
            optimizer=optimizer,
        )
        self._mirror(model)
        self.responsibilities = model.responsibilities
        self.loglik = model.loglik
        self.AIC = model.AIC
        self.BIC = model.BIC
        self.converged = model.converged
        self.n_iter = model.n_iter

        if print_results:
            print_sample_summary(
                f"Results from {self.__class__.__name__} (k={self.k}):",
                "Expectation-Maximisation (weighted MLE)",
                self.table,
            )
            print(self.results.to_string(index=False), "\n")
            print(f"Log-likelihood: {round_and_string(self.loglik)}")
            print(f"AIC: {round_and_string(self.AIC)}")
            print(f"BIC: {round_and_string(self.BIC)}")
            print(f"Iterations: {self.n_iter} ({'converged' if self.converged else 'not converged'})\n")
        for w in self.warnings:
            print_warning(w)
