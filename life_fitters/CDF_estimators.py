"""
Non-parametric failure-probability estimates for right-censored life data.

Four interchangeable plotting-position methods map a SampleTable to one
CDFPoint per failure (censored units never receive a point):

    MR       Benard's median rank (i - 0.3) / (n + 0.4), uncensored data only
    Johnson  adjusted ranks for multiply right-censored data, then Benard
    KM       Kaplan-Meier product-limit estimate
    NA       Nelson-Aalen cumulative hazard, F = 1 - exp(-H)

Tie policy shared by all four: failures at the same value share a single
estimate, and a censoring at a failure value counts as still at risk at that
failure (it is taken to occur just after it). The SampleTable ordering
(failures before censorings at equal value) encodes the same convention.
"""

from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd
from scipy.stats import norm

from .life_utils import (
    DEFAULT_CI,
    InsufficientDataError,
    SampleTable,
    linearize,
)


class CDFMethod(str, Enum):
    MR = "MR"
    JOHNSON = "Johnson"
    KM = "KM"
    NA = "NA"

    @classmethod
    def parse(cls, method):
        if isinstance(method, cls):
            return method
        key = str(method).strip().lower().replace("_", "-").replace(" ", "-")
        aliases = {
            "mr": cls.MR, "median-rank": cls.MR, "benard": cls.MR,
            "johnson": cls.JOHNSON,
            "km": cls.KM, "kaplan-meier": cls.KM,
            "na": cls.NA, "nelson-aalen": cls.NA,
        }
        if key not in aliases:
            raise ValueError(f"Unknown CDF method {method!r}; use 'MR', 'Johnson', 'KM' or 'NA'.")
        return aliases[key]


@dataclass(frozen=True)
class CDFPoint:
    """Plotting position of one failure. `rank` is the (adjusted) rank for MR/Johnson."""
    value: float
    probability: float
    method: CDFMethod
    rank: float = None


def _require_failures(table):
    if not isinstance(table, SampleTable):
        table = SampleTable(table)
    if table.n_failures == 0:
        raise InsufficientDataError(
            "At least 1 failure is required to estimate the CDF; the sample has none.", required=1
        )
    return table


def _expand(table, estimates, method):
    """One point per failure, tied failures repeating the estimate of their value."""
    points = []
    for row in table.risk_set:
        if row.failures == 0:
            continue
        F, rank = estimates[row.value]
        points.extend(
            CDFPoint(value=row.value, probability=float(F), method=method, rank=rank)
            for _ in range(row.failures)
        )
    return tuple(points)


def benard(rank, n):
    """Benard's approximation to the median rank."""
    return (rank - 0.3) / (n + 0.4)


# ---------------------------------------------------------------------
# Rank based estimators
# ---------------------------------------------------------------------

def median_ranks(table):
    """
    Median ranks (Benard) for an uncensored sample.

    Tied failures take the rank of the last failure in the tie, which is also
    what Johnson's recurrence produces when nothing is censored.

    Raises
    ------
    InsufficientDataError
        If the table mixes censored units with failures. Use
        `table.failures_only()` first, or the Johnson method.
    """
    table = _require_failures(table)
    if table.n_censored > 0:
        raise InsufficientDataError(
            "Median ranks require uncensored data "
            f"({table.n_censored} right censored units found); filter the sample "
            "with failures_only() or use Johnson's method.",
            required=0,
        )
    n = table.n
    estimates = {}
    rank = 0
    for row in table.risk_set:
        rank += row.failures
        estimates[row.value] = (benard(rank, n), float(rank))
    return _expand(table, estimates, CDFMethod.MR)


def johnson_adjusted_ranks(table):
    """
    Johnson's adjusted ranks, one per distinct failure value.

        j_0 = 0
        I_i = ((n + 1) - j_{i-1}) / (1 + (n - n_i))
        j_i = j_{i-1} + x_i * I_i

    n_i is the number of units strictly below the value and x_i the number of
    failures tied at it.

    Returns
    -------
    list of (value, adjusted_rank)
    """
    table = _require_failures(table)
    n = table.n
    j = 0.0
    ranks = []
    for row in table.risk_set:
        if row.failures == 0:
            continue
        n_i = table.n_below(row.value)
        increment = ((n + 1) - j) / (1 + (n - n_i))
        j = j + row.failures * increment
        ranks.append((row.value, j))
    return ranks


def johnson(table):
    """Johnson's adjusted ranks fed through Benard's formula."""
    table = _require_failures(table)
    estimates = {v: (benard(j, table.n), j) for v, j in johnson_adjusted_ranks(table)}
    return _expand(table, estimates, CDFMethod.JOHNSON)


# ---------------------------------------------------------------------
# Product-limit and cumulative hazard
# ---------------------------------------------------------------------

def kaplan_meier(table):
    """
    Kaplan-Meier product-limit estimate, F = 1 - S.

    F reaches 1 when the largest value is a failure; that point cannot be
    linearized and is skipped by the regression fitters.
    """
    table = _require_failures(table)
    S = 1.0
    estimates = {}
    for row in table.risk_set:
        if row.failures == 0:
            continue
        S *= 1.0 - row.failures / row.at_risk
        estimates[row.value] = (1.0 - S, None)
    return _expand(table, estimates, CDFMethod.KM)


def nelson_aalen(table):
    """Nelson-Aalen estimate, F = 1 - exp(-H), H = sum of d_j / n_j."""
    table = _require_failures(table)
    H = 0.0
    estimates = {}
    for row in table.risk_set:
        if row.failures == 0:
            continue
        H += row.failures / row.at_risk
        estimates[row.value] = (-np.expm1(-H), None)
    return _expand(table, estimates, CDFMethod.NA)


_METHODS = {
    CDFMethod.MR: median_ranks,
    CDFMethod.JOHNSON: johnson,
    CDFMethod.KM: kaplan_meier,
    CDFMethod.NA: nelson_aalen,
}


def estimate_cdf(table, method=CDFMethod.JOHNSON):
    """
    Plotting positions for the failures of `table`.

    Parameters
    ----------
    table : SampleTable
    method : CDFMethod or str
        "MR", "Johnson" (default), "KM" or "NA".

    Returns
    -------
    tuple of CDFPoint, ascending by value
    """
    return _METHODS[CDFMethod.parse(method)](table)


# ---------------------------------------------------------------------
# Views for reporting / plotting
# ---------------------------------------------------------------------

def kaplan_meier_bounds(table, CI=DEFAULT_CI):
    """
    Kaplan-Meier CDF with Greenwood confidence bounds at each failure value.

    Var(S) = S^2 * sum d_j / (n_j (n_j - d_j)); the bounds are symmetric on
    the CDF scale and clipped to [0, 1]. Where every unit at risk fails the
    variance is undefined and the bounds are NaN.
    """
    if not (0 < CI < 1):
        raise ValueError("CI must be in (0,1)")
    table = _require_failures(table)
    z = norm.ppf(0.5 + CI / 2.0)
    S = 1.0
    greenwood = 0.0
    rows = []
    for row in table.risk_set:
        if row.failures == 0:
            continue
        d, n_j = row.failures, row.at_risk
        S *= 1.0 - d / n_j
        if n_j > d and np.isfinite(greenwood):
            greenwood += d / (n_j * (n_j - d))
        else:
            greenwood = np.inf
        if np.isfinite(greenwood):
            se = S * np.sqrt(greenwood)
            lo, hi = max(0.0, 1.0 - S - z * se), min(1.0, 1.0 - S + z * se)
        else:
            lo = hi = np.nan
        rows.append([row.value, n_j, d, row.censored, 1.0 - S, lo, hi])

    CI_pct = int(round(100 * CI))
    cols = ["Value", "At risk", "Failures", "Censored", "CDF",
            f"Lower {CI_pct}% CI", f"Upper {CI_pct}% CI"]
    return pd.DataFrame(rows, columns=cols)


def cdf_table(points):
    """DataFrame view of a sequence of CDFPoints."""
    rows = [[p.value, p.rank, p.probability, p.method.value] for p in points]
    return pd.DataFrame(rows, columns=["Value", "Rank", "CDF", "Method"])


def linearize_points(points, family, gamma=None):
    """
    Straight-line coordinates (x, y) of the points for the given family.

    Points whose probability is 1 (last Kaplan-Meier step) are left out.
    """
    values = np.array([p.value for p in points], dtype=float)
    F = np.array([p.probability for p in points], dtype=float)
    keep = F < 1.0
    return linearize(values[keep], F[keep], family, gamma)
