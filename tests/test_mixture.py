import numpy as np
import pytest

from life_fitters import (
    CDFMethod,
    CDFPoint,
    Family,
    Fit_EM_Mixture,
    Fit_Segmented_Mixture,
    InsufficientDataError,
    SampleTable,
    best_em_mixture,
    em_mixture,
    fit_mle,
    kaplan_meier,
    segmented_regression,
)
from life_fitters.life_utils import transform_probability


def two_mode_points():
    """20 common Benard positions, the first 10 on one line and the last 10 on another."""
    n = 20
    F = (np.arange(1, n + 1) - 0.3) / (n + 0.4)
    y = transform_probability(F, Family.WEIBULL)
    x = np.where(np.arange(n) < 10, np.log(100.0) + 1.0 * y, np.log(2000.0) + 0.25 * y)
    return [CDFPoint(float(v), float(p), CDFMethod.MR, rank=i + 1) for i, (v, p) in enumerate(zip(np.exp(x), F))]


def two_mode_table(seed=0, n=300):
    rng = np.random.default_rng(seed)
    early = 100.0 * rng.weibull(3.0, size=n)
    late = 2000.0 * rng.weibull(3.0, size=n)
    t = np.concatenate([early, late])
    return SampleTable.from_failures(t[t <= 2500.0], np.full(np.sum(t > 2500.0), 2500.0))


def test_segmented_breakpoint_recovery():
    points = two_mode_points()
    model = segmented_regression(points, "weibull", k=2)
    assert model.k == 2
    assert model.method == "segmented"
    assert model.breakpoint_indices == (10,)
    assert model.breakpoints == (points[9].value,)
    assert model.SSR == pytest.approx(0.0, abs=1e-8)
    np.testing.assert_allclose(model.weights, [0.5, 0.5])
    early, late = model.subgroups
    assert early.upper == points[9].value
    assert late.lower == points[9].value
    assert late.upper == np.inf
    assert late.parameters.beta > early.parameters.beta
    assert model.warnings == ()


def test_segmented_automatic_k_warns():
    model = segmented_regression(two_mode_points(), "weibull")
    assert model.k == 2
    assert model.breakpoint_indices == (10,)
    assert len(model.warnings) == 1
    assert "selected automatically" in model.warnings[0]
    assert [row[0] for row in model.selection] == [1, 2, 3, 4]


def test_segmented_needs_two_values_per_segment():
    points = two_mode_points()
    with pytest.raises(InsufficientDataError):
        segmented_regression(points, "weibull", k=21)
    with pytest.raises(InsufficientDataError) as info:
        segmented_regression(points, "weibull", k=11)
    assert info.value.required == 22
    with pytest.raises(ValueError):
        segmented_regression(points, "weibull", k=0)
    with pytest.raises(ValueError):
        segmented_regression(points, "weibull3", k=2)


def test_segmented_assign_and_cdf():
    points = two_mode_points()
    model = segmented_regression(points, "weibull", k=2)
    labels = model.assign([p.value for p in points])
    assert list(labels) == [0] * 10 + [1] * 10
    assert model.cdf(1e6) == pytest.approx(1.0)
    assert model.cdf(1e-3) == pytest.approx(0.0, abs=1e-6)
    with pytest.raises(ValueError):
        model.assign()


def test_fit_segmented_mixture(capsys):
    fit = Fit_Segmented_Mixture(points=two_mode_points(), k=2)
    assert fit.breakpoint_indices == (10,)
    assert sum(fit.weights) == pytest.approx(1.0)
    assert list(fit.results["Subgroup"]) == [1, 2]
    out = capsys.readouterr().out
    assert "Results from Fit_Segmented_Mixture (k=2)" in out
    assert "Breakpoints" in out


def test_em_single_subgroup_equals_mle():
    table = two_mode_table(seed=3, n=100)
    model = em_mixture(table, k=1, family="weibull")
    ref = fit_mle(table, "weibull")
    p = model.subgroups[0].parameters
    assert p.mu == pytest.approx(ref.mu, rel=1e-4)
    assert p.sigma == pytest.approx(ref.sigma, rel=1e-4)
    assert model.loglik == pytest.approx(ref.loglik, rel=1e-6)
    assert model.subgroups[0].weight == pytest.approx(1.0)


def test_em_separates_two_weibull_modes():
    table = two_mode_table()
    model = em_mixture(table, k=2, family="weibull")
    assert model.converged
    assert model.method == "EM"
    np.testing.assert_allclose(model.responsibilities.sum(axis=1), 1.0)
    assert model.responsibilities.shape == (table.n, 2)
    early, late = model.subgroups
    assert early.parameters.alpha == pytest.approx(100.0, rel=0.1)
    assert late.parameters.alpha == pytest.approx(2000.0, rel=0.1)
    assert early.weight == pytest.approx(0.5, abs=0.05)
    assert sum(model.weights) == pytest.approx(1.0)
    # censored units at 2500 belong to the late mode
    labels = model.assign()
    assert np.all(labels[~table.failed] == 1)
    assert list(model.assign([50.0, 1800.0])) == [0, 1]
    assert model.AIC == pytest.approx(-2 * model.loglik + 2 * 5)


def test_em_random_initialisation_is_seeded():
    table = two_mode_table(seed=1, n=150)
    a = em_mixture(table, k=2, init="random", seed=7)
    b = em_mixture(table, k=2, init="random", seed=7)
    assert a.loglik == b.loglik
    assert a.subgroups == b.subgroups
    np.testing.assert_array_equal(a.responsibilities, b.responsibilities)


def test_em_iteration_budget():
    table = two_mode_table(seed=2, n=100)
    model = em_mixture(table, k=2, max_iter=1)
    assert not model.converged
    assert model.n_iter == 1
    assert any("did not converge" in w for w in model.warnings)


def test_em_input_checks():
    table = SampleTable.from_failures([10.0, 20.0, 30.0], right_censored=[40.0])
    with pytest.raises(InsufficientDataError):
        em_mixture(table, k=2)
    big = two_mode_table(seed=4, n=50)
    with pytest.raises(ValueError):
        em_mixture(big, k=2, family="weibull3")
    with pytest.raises(ValueError):
        em_mixture(big, k=2, init="kmeans")


def test_best_em_mixture_keeps_highest_likelihood():
    table = two_mode_table(seed=6, n=120)
    seeds = (0, 1, 2)
    best = best_em_mixture(table, k=2, seeds=seeds)
    runs = [em_mixture(table, k=2, seed=s, init="random") for s in seeds]
    assert best.loglik == max(r.loglik for r in runs)


def test_fit_em_mixture_class(capsys):
    table = two_mode_table(seed=5, n=120)
    fit = Fit_EM_Mixture(data=table, k=2, family="lognormal")
    assert fit.k == 2
    assert fit.responsibilities.shape == (table.n, 2)
    assert fit.parameters[0].quantile(0.5) < fit.parameters[1].quantile(0.5)
    out = capsys.readouterr().out
    assert "Results from Fit_EM_Mixture (k=2)" in out
    assert "Log-likelihood" in out
    with pytest.raises(ValueError):
        Fit_EM_Mixture(data=table, tol=0, print_results=False)


def test_segmented_counts_every_kaplan_meier_failure():
    rng = np.random.default_rng(40)
    table = SampleTable.from_failures(np.concatenate([
        100.0 * rng.weibull(1.0, size=20),
        2000.0 * rng.weibull(4.0, size=20),
    ]))
    points = kaplan_meier(table)
    assert points[-1].probability == 1.0
    model = segmented_regression(points, "weibull", k=2)
    assert sum(s.n_members for s in model.subgroups) == table.n_failures
    assert sum(model.weights) == pytest.approx(1.0)
    assert model.subgroups[-1].n_members == table.n_failures - model.breakpoint_indices[0]
    labels = model.assign(table.failure_values)
    assert np.bincount(labels, minlength=2).tolist() == [s.n_members for s in model.subgroups]


def test_segmented_warning_printed_without_results(capsys):
    fit = Fit_Segmented_Mixture(points=two_mode_points(), print_results=False)
    out = capsys.readouterr().out
    assert "WARNING" in out
    assert "Results from" not in out
    assert fit.k == 2
