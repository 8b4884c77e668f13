import numpy as np
import pytest
from scipy.optimize import minimize

from life_fitters import (
    ConvergenceError,
    Family,
    Fit_MLE,
    InsufficientDataError,
    NumericalError,
    SampleTable,
    fit_mle,
    log_likelihood,
)


def weibull_sample(n, alpha, beta, seed, censor_at=None, gamma=0.0):
    rng = np.random.default_rng(seed)
    t = alpha * rng.weibull(beta, size=n) + gamma
    if censor_at is None:
        return SampleTable.from_failures(t)
    return SampleTable.from_failures(t[t <= censor_at], np.full(np.sum(t > censor_at), censor_at))


@pytest.mark.parametrize("n", [500, 5000])
def test_weibull_recovery_improves_with_n(n):
    params = fit_mle(weibull_sample(n, 1200.0, 2.0, seed=11), "weibull")
    tol = 4.0 / np.sqrt(n)
    assert abs(params.alpha / 1200.0 - 1) < tol
    assert abs(params.beta / 2.0 - 1) < tol


def test_censored_weibull_recovery():
    table = weibull_sample(2000, 500.0, 1.5, seed=5, censor_at=600.0)
    assert table.n_censored > 0
    params = fit_mle(table, Family.WEIBULL)
    assert params.alpha == pytest.approx(500.0, rel=0.05)
    assert params.beta == pytest.approx(1.5, rel=0.08)

    # ignoring the survivors biases the scale downwards
    naive = fit_mle(table.failures_only(), Family.WEIBULL)
    assert naive.alpha < params.alpha


def test_lognormal_recovery():
    rng = np.random.default_rng(8)
    table = SampleTable.from_failures(np.exp(rng.normal(5.0, 0.8, size=1000)))
    params = fit_mle(table, "lognormal")
    assert abs(params.mu - 5.0) < 4 * 0.8 / np.sqrt(1000)
    assert params.sigma == pytest.approx(0.8, rel=0.1)
    assert params.family is Family.LOGNORMAL


def test_covariance_and_loglik():
    table = weibull_sample(300, 80.0, 3.0, seed=2, censor_at=95.0)
    params = fit_mle(table, "weibull")
    assert params.covariance.shape == (2, 2)
    assert np.all(np.linalg.eigvalsh(params.covariance) > 0)
    se = params.standard_errors()
    assert se["mu"] > 0 and se["sigma"] > 0
    ll = log_likelihood(table.values, table.failed, params.mu, params.sigma, Family.WEIBULL)
    assert params.loglik == pytest.approx(ll)
    assert params.AIC == pytest.approx(-2 * ll + 4)
    assert params.BIC == pytest.approx(-2 * ll + 2 * np.log(table.n))


def test_mle_is_a_local_maximum():
    table = weibull_sample(200, 80.0, 3.0, seed=9, censor_at=90.0)
    params = fit_mle(table, "weibull")
    best = params.loglik
    for dmu, dsigma in [(1e-3, 0), (-1e-3, 0), (0, 1e-3), (0, -1e-3)]:
        ll = log_likelihood(table.values, table.failed, params.mu + dmu, params.sigma + dsigma, "weibull")
        assert ll <= best + 1e-9


def test_iteration_budget_raises_with_partial_result():
    table = weibull_sample(200, 100.0, 2.0, seed=4)
    with pytest.raises(ConvergenceError) as info:
        fit_mle(table, "weibull", max_iter=1)
    err = info.value
    assert err.parameters is not None
    assert err.parameters.sigma > 0
    assert err.diagnostics["max_iter"] == 1


def test_fit_mle_class_reports_non_convergence(capsys):
    table = weibull_sample(200, 100.0, 2.0, seed=4)
    fit = Fit_MLE(data=table, max_iter=1, print_results=False)
    assert fit.success is False
    assert fit.diagnostics["nit"] >= 1
    assert "WARNING" in capsys.readouterr().out
    assert np.isnan(fit.mu_SE)


def test_fixed_threshold_must_be_below_minimum():
    table = SampleTable.from_failures([30.0, 42.0, 55.0, 71.0])
    with pytest.raises(NumericalError):
        fit_mle(table, "weibull", threshold=30.0)
    params = fit_mle(table, "weibull", threshold=10.0)
    assert params.gamma == 10.0
    assert params.covariance.shape == (2, 2)
    assert np.isnan(params.standard_errors()["gamma"])


def test_unit_weights_match_unweighted_fit():
    table = weibull_sample(150, 60.0, 1.8, seed=21, censor_at=70.0)
    plain = fit_mle(table, "weibull")
    weighted = fit_mle(table, "weibull", weights=np.ones(table.n))
    assert weighted.mu == pytest.approx(plain.mu, rel=1e-5)
    assert weighted.sigma == pytest.approx(plain.sigma, rel=1e-5)
    assert weighted.loglik == pytest.approx(plain.loglik, rel=1e-8)


def test_invalid_weights():
    table = SampleTable.from_failures([10.0, 20.0, 30.0], right_censored=[40.0])
    with pytest.raises(ValueError):
        fit_mle(table, weights=[1.0, 1.0])
    with pytest.raises(ValueError):
        fit_mle(table, weights=[1.0, -1.0, 1.0, 1.0])
    with pytest.raises(InsufficientDataError):
        fit_mle(table, weights=[0.0, 0.0, 0.0, 1.0])


def test_three_parameter_weibull():
    table = weibull_sample(5000, 500.0, 2.5, seed=17, gamma=100.0)
    params = fit_mle(table, "weibull3")
    assert params.n_params == 3
    assert 0.0 <= params.gamma < table.min_value
    assert params.gamma == pytest.approx(100.0, abs=50.0)
    assert params.covariance.shape == (3, 3)


def test_too_few_failures():
    with pytest.raises(InsufficientDataError):
        fit_mle(SampleTable.from_failures([25.0], right_censored=[40.0, 50.0]))
    with pytest.raises(InsufficientDataError):
        Fit_MLE(failures=[25.0, 25.0], print_results=False)


@pytest.mark.parametrize("optimizer", ["nelder-mead", "powell"])
def test_alternative_optimizers_agree(optimizer):
    table = weibull_sample(300, 150.0, 2.2, seed=13, censor_at=180.0)
    ref = fit_mle(table, "weibull")
    other = fit_mle(table, "weibull", optimizer=optimizer)
    assert other.mu == pytest.approx(ref.mu, rel=1e-3)
    assert other.sigma == pytest.approx(ref.sigma, rel=1e-3)


def test_callable_optimizer():
    calls = []

    def my_optimizer(fun, x0, bounds, max_iter):
        calls.append(max_iter)
        return minimize(fun, x0, method="L-BFGS-B", bounds=bounds, options={"maxiter": max_iter})

    table = weibull_sample(100, 150.0, 2.2, seed=1)
    params = fit_mle(table, "weibull", optimizer=my_optimizer, max_iter=300)
    assert calls == [300]
    assert params.beta > 0


def test_fit_mle_class():
    fit = Fit_MLE(
        failures=[45, 60, 75, 90, 110, 130, 155, 170],
        right_censored=[60, 75, 200],
        CI=0.9,
        print_results=False,
    )
    assert fit.success
    assert fit.alpha == pytest.approx(np.exp(fit.mu))
    assert fit.covariance.shape == (2, 2)
    assert fit.mu_SE > 0 and fit.sigma_SE > 0
    assert "Lower 90% CI" in fit.results.columns
    row = fit.results.set_index("Parameter").loc["Beta"]
    assert row["Lower 90% CI"] < fit.beta < row["Upper 90% CI"]
    with pytest.raises(ValueError):
        Fit_MLE(failures=[1, 2, 3], CI=95)


def test_fit_mle_printed_results(capsys):
    Fit_MLE(failures=[12, 25, 31, 48, 60, 77], right_censored=[80], family="lognormal")
    out = capsys.readouterr().out
    assert "Results from Fit_MLE (lognormal, 95% CI)" in out
    assert "Maximum Likelihood Estimation" in out
    assert "AIC" in out


@pytest.mark.parametrize(
    "hessian, message",
    [
        (np.array([[np.nan, 0.0], [0.0, 1.0]]), "not finite"),
        (np.array([[2.0, 0.0], [0.0, -1.0]]), "not concave"),
        (np.array([[1.0, 0.0], [0.0, 1e-14]]), "singular"),
    ],
)
def test_bad_information_matrix_raises_with_best_iterate(monkeypatch, hessian, message):
    import life_fitters.Life_fitters as fitters

    monkeypatch.setattr(fitters, "numerical_hessian", lambda fun, x: hessian)
    table = weibull_sample(100, 150.0, 2.2, seed=3)
    with pytest.raises(ConvergenceError, match=message) as info:
        fit_mle(table, "weibull")
    err = info.value
    assert err.parameters is not None
    assert err.parameters.covariance is None
    assert err.parameters.beta == pytest.approx(fit_mle(table, "weibull", compute_covariance=False).beta)
    np.testing.assert_array_equal(err.diagnostics["hessian"], hessian)


def test_fit_mle_class_keeps_estimate_when_information_is_singular(monkeypatch):
    import life_fitters.Life_fitters as fitters

    monkeypatch.setattr(fitters, "numerical_hessian", lambda fun, x: np.array([[1.0, 0.0], [0.0, -1.0]]))
    fit = Fit_MLE(data=weibull_sample(100, 150.0, 2.2, seed=3), print_results=False)
    assert fit.success is False
    assert "hessian" in fit.diagnostics
    assert np.isnan(fit.sigma_SE)
