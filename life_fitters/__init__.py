"""
life_fitters: failure-time distribution fitting for right-censored life data.

  1. life_utils.py         sample table, errors, linearizer, likelihood, parameters
  2. CDF_estimators.py     MR, Johnson, Kaplan-Meier and Nelson-Aalen plotting positions
  3. Life_fitters.py       rank regression and maximum likelihood fits
  4. Mixture_fitters.py    segmented regression and EM mixture separation
"""

from .life_utils import (
    ConvergenceError,
    DistributionParameters,
    Family,
    FittedLine,
    InputError,
    InsufficientDataError,
    LifeDataError,
    NumericalError,
    Observation,
    RiskRow,
    SampleTable,
    Status,
    linearize,
    log_likelihood,
)
from .CDF_estimators import (
    CDFMethod,
    CDFPoint,
    cdf_table,
    estimate_cdf,
    johnson,
    johnson_adjusted_ranks,
    kaplan_meier,
    kaplan_meier_bounds,
    linearize_points,
    median_ranks,
    nelson_aalen,
)
from .Life_fitters import Fit_MLE, Fit_Rank_Regression, fit_mle, fitted_line, rank_regression
from .Mixture_fitters import (
    Fit_EM_Mixture,
    Fit_Segmented_Mixture,
    MixtureModel,
    Subgroup,
    best_em_mixture,
    em_mixture,
    segmented_regression,
)

__all__ = [
    "ConvergenceError",
    "DistributionParameters",
    "Family",
    "FittedLine",
    "InputError",
    "InsufficientDataError",
    "LifeDataError",
    "NumericalError",
    "Observation",
    "RiskRow",
    "SampleTable",
    "Status",
    "linearize",
    "log_likelihood",
    "CDFMethod",
    "CDFPoint",
    "cdf_table",
    "estimate_cdf",
    "johnson",
    "johnson_adjusted_ranks",
    "kaplan_meier",
    "kaplan_meier_bounds",
    "linearize_points",
    "median_ranks",
    "nelson_aalen",
    "Fit_MLE",
    "Fit_Rank_Regression",
    "fit_mle",
    "fitted_line",
    "rank_regression",
    "Fit_EM_Mixture",
    "Fit_Segmented_Mixture",
    "MixtureModel",
    "Subgroup",
    "best_em_mixture",
    "em_mixture",
    "segmented_regression",
]
