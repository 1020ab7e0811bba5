# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Test QuapEstimator fitting, summaries and posterior sampling.

Covers the full model (a[dow] + bH * humidity + bT * temp + B @ w) and the
reduced model (a + B @ w) on synthetic ozone data, plus error paths.
"""

import pytest
import numpy as np
import pandas as pd
from scipy import optimize
from sklearn.exceptions import NotFittedError
from quap_estimator import (
    QuapEstimator,
    QuapEstimatorConfig,
    QuapInterceptConfig,
    QuapCategoryConfig,
    QuapLinearConfig,
    QuapSplineConfig,
    QuapNormalPrior,
    QuapSolverConfig,
    QuapFitError,
    SplineBasisError,
    SOLVER_METHODS,
    make_full_model_config,
    make_reduced_model_config,
    make_synthetic_observations,
    prepare_observations,
    quantile_knots,
)

FULL_COLUMNS = ['dow', 'humidity', 'temp', 'doy']


@pytest.fixture
def full_model(observations, doy_knots):
    config = make_full_model_config(doy_knots, random_state=11)
    return QuapEstimator(config=config).fit(observations[FULL_COLUMNS], observations['ozone'])


@pytest.fixture
def reduced_model(observations, doy_knots):
    config = make_reduced_model_config(doy_knots, random_state=11)
    return QuapEstimator(config=config).fit(observations[['doy']], observations['ozone'])


def test_full_model_parameters(full_model):
    """Test parameter names and counts: 7 intercepts, 2 slopes, 17 weights, sigma."""
    names = full_model.param_names_
    assert len(names) == 7 + 2 + 17 + 1
    assert names[:7] == [f"a[{d}]" for d in range(1, 8)]
    assert names[7:9] == ['bH', 'bT']
    assert names[9:26] == [f"w[{j}]" for j in range(1, 18)]
    assert names[-1] == 'sigma'
    assert full_model.grad_norm_ <= 1e-6
    assert full_model.sigma_ > 0


def test_reduced_model_parameters(reduced_model):
    names = reduced_model.param_names_
    assert names[0] == 'a'
    assert names[1:18] == [f"w[{j}]" for j in range(1, 18)]
    assert names[-1] == 'sigma'
    assert reduced_model.coef_.shape == (18,)


def test_full_model_recovers_temperature_effect(full_model, raw_observations):
    """Test that bT lands near the true standardized slope and bH near zero."""
    true_coef = 2.0 * raw_observations['temp'].std() / raw_observations['ozone'].std()
    weights = full_model.get_weights('bT')
    assert abs(weights['bT'] - true_coef) < 0.1
    assert abs(full_model.get_weights('bH')['bH']) < 0.15
    # the temperature effect dominates the residual scale
    assert full_model.sigma_ < 1.0


def test_fit_is_deterministic(observations, doy_knots):
    """Test that refitting with identical data and seed gives identical estimates."""
    fits = []
    for _ in range(2):
        full = QuapEstimator(config=make_full_model_config(doy_knots, random_state=5))
        reduced = QuapEstimator(config=make_reduced_model_config(doy_knots, random_state=5))
        full.fit(observations[FULL_COLUMNS], observations['ozone'])
        reduced.fit(observations[['doy']], observations['ozone'])
        fits.append((full, reduced))

    (full_a, reduced_a), (full_b, reduced_b) = fits
    np.testing.assert_allclose(full_a.mode_, full_b.mode_, rtol=0, atol=1e-12)
    np.testing.assert_allclose(full_a.covariance_, full_b.covariance_, rtol=0, atol=1e-12)
    np.testing.assert_allclose(reduced_a.mode_, reduced_b.mode_, rtol=0, atol=1e-12)
    pd.testing.assert_frame_equal(full_a.sample_posterior(100), full_b.sample_posterior(100))


def test_mode_matches_closed_form():
    """
    Test the mode of a linear model against the closed-form conditional mode.

    Given sigma, the coefficient mode solves (D'D / sigma^2 + I) beta = D'y / sigma^2
    under standard normal priors.
    """
    rng = np.random.RandomState(4)
    x = rng.normal(size=200)
    y = 0.5 + 1.5 * x + rng.normal(scale=0.7, size=200)
    config = QuapEstimatorConfig(
        term_config=[QuapLinearConfig(name='b')],
        intercept_config=QuapInterceptConfig(name='a'),
    )
    estimator = QuapEstimator(config=config).fit(x[:, None], y)

    D = np.column_stack([np.ones_like(x), x])
    sigma = estimator.sigma_
    expected = np.linalg.solve(D.T @ D / sigma**2 + np.eye(2), D.T @ y / sigma**2)
    np.testing.assert_allclose(estimator.coef_, expected, atol=1e-5)

    # sigma mode solves n / sigma - rss / sigma^3 + 1 = 0
    rss = np.sum((y - D @ estimator.coef_) ** 2)
    np.testing.assert_allclose(len(y) / sigma - rss / sigma**3 + 1.0, 0.0, atol=1e-4)


def test_covariance_is_symmetric_positive_definite(full_model):
    cov = full_model.covariance_
    np.testing.assert_allclose(cov, cov.T, atol=1e-10)
    assert np.all(np.linalg.eigvalsh(cov) > 0)


def test_precis_columns_follow_prob(full_model):
    summary = full_model.precis(prob=0.93)
    assert list(summary.columns) == ['mean', 'sd', '3.5%', '96.5%']
    assert summary.index.name == 'parameter'
    assert (summary['sd'] > 0).all()
    assert (summary['3.5%'] < summary['mean']).all()
    assert (summary['mean'] < summary['96.5%']).all()

    default = full_model.precis()
    assert list(default.columns) == ['mean', 'sd', '5.5%', '94.5%']
    # wider intervals at higher prob
    assert (summary['96.5%'] > default['94.5%']).all()

    with pytest.raises(ValueError):
        full_model.precis(prob=1.5)


def test_spline_knots_are_stored(observations, doy_knots):
    """Test that quantile knots learned in fit match quantile_knots and are reused."""
    config = QuapEstimatorConfig(
        term_config=[QuapSplineConfig(n_knots=15)],
        intercept_config=QuapInterceptConfig(),
    )
    estimator = QuapEstimator(config=config).fit(observations[['doy']], observations['ozone'])
    np.testing.assert_allclose(estimator.spline_knots_[0], doy_knots)
    assert estimator.boundary_knots_[0] == (observations['doy'].min(), observations['doy'].max())
    assert estimator.term_matrix(observations[['doy']], 'w').shape == (len(observations), 17)


def test_predict_and_score(full_model, observations):
    predictions = full_model.predict(observations[FULL_COLUMNS])
    assert predictions.shape == (len(observations),)
    np.testing.assert_allclose(
        predictions, full_model.design_matrix(observations[FULL_COLUMNS]) @ full_model.coef_
    )
    assert full_model.score(observations[FULL_COLUMNS], observations['ozone']) > 0.5


def test_get_weights(reduced_model):
    weights = reduced_model.get_weights('w')
    assert len(weights) == 17
    assert weights.index[0] == 'w[1]'
    np.testing.assert_array_equal(weights.to_numpy(), reduced_model.coef_[1:18])
    with pytest.raises(KeyError):
        reduced_model.get_weights('bT')


def test_sample_posterior(full_model):
    samples = full_model.sample_posterior(n_samples=5000, random_state=0)
    assert samples.shape == (5000, 27)
    assert list(samples.columns) == full_model.param_names_
    np.testing.assert_allclose(samples.mean().to_numpy(), full_model.mode_, atol=0.1)
    # seeded draws repeat
    pd.testing.assert_frame_equal(samples, full_model.sample_posterior(n_samples=5000, random_state=0))


def test_link_and_sim(reduced_model, observations):
    X = observations[['doy']]
    mu = reduced_model.link(X, n_samples=400, random_state=1)
    y_sim = reduced_model.sim(X, n_samples=400, random_state=1)

    assert mu.shape == (400, len(observations))
    assert y_sim.shape == (400, len(observations))
    np.testing.assert_allclose(mu.mean(axis=0), reduced_model.predict(X), atol=0.1)
    # simulated observations carry the residual noise as well
    assert y_sim.std(axis=0).mean() > mu.std(axis=0).mean()


def test_category_codes_learned_from_data():
    rng = np.random.RandomState(2)
    group = rng.choice([2, 5, 9], size=120)
    y = np.where(group == 2, -1.0, np.where(group == 5, 0.0, 1.0)) + rng.normal(scale=0.3, size=120)
    config = QuapEstimatorConfig(term_config=[QuapCategoryConfig(name='g')])
    estimator = QuapEstimator(config=config).fit(group[:, None], y)

    assert estimator.categories_[0] == [2, 5, 9]
    weights = estimator.get_weights('g')
    assert list(weights.index) == ['g[2]', 'g[5]', 'g[9]']
    assert weights['g[2]'] < weights['g[5]'] < weights['g[9]']

    with pytest.raises(ValueError, match="Unknown codes"):
        estimator.predict(np.array([[3]]))


def test_prior_pulls_unobserved_category_to_prior_mean():
    """Test that a listed category with no data keeps its prior mean."""
    rng = np.random.RandomState(3)
    group = rng.choice([1, 2], size=80)
    y = 2.0 + rng.normal(scale=0.5, size=80)
    config = QuapEstimatorConfig(term_config=[
        QuapCategoryConfig(name='a', categories=[1, 2, 3], prior=QuapNormalPrior(mean=0.5, sd=1.0)),
    ])
    estimator = QuapEstimator(config=config).fit(group[:, None], y)
    summary = estimator.precis()
    np.testing.assert_allclose(summary.loc['a[3]', 'mean'], 0.5, atol=1e-6)
    np.testing.assert_allclose(summary.loc['a[3]', 'sd'], 1.0, atol=1e-6)


def test_spline_start_values(observations, doy_knots):
    """Test that an explicit all-zero start for the weights gives the default fit."""
    config = make_reduced_model_config(doy_knots)
    config.term_config[0].start = [0.0] * 17
    estimator = QuapEstimator(config=config).fit(observations[['doy']], observations['ozone'])
    default = QuapEstimator(config=make_reduced_model_config(doy_knots)).fit(
        observations[['doy']], observations['ozone'])
    np.testing.assert_allclose(estimator.mode_, default.mode_)

    config.term_config[0].start = [0.0] * 3
    with pytest.raises(ValueError, match="expected 17"):
        QuapEstimator(config=config).fit(observations[['doy']], observations['ozone'])


def test_non_convergence_raises(observations, doy_knots):
    """Test that an optimizer stopped early surfaces as QuapFitError."""
    config = make_full_model_config(doy_knots, solver_config=QuapSolverConfig(maxiter=1))
    with pytest.raises(QuapFitError, match="did not converge"):
        QuapEstimator(config=config).fit(observations[FULL_COLUMNS], observations['ozone'])


@pytest.mark.parametrize("seed", [1059, 1153, 1196])
def test_full_model_fits_tables_where_trust_region_stalls(seed):
    """Test tables whose trust-region run stops just above gtol still fit."""
    df = prepare_observations(make_synthetic_observations(n=330, random_state=seed))
    knots = quantile_knots(df['doy'].to_numpy(), 15)
    estimator = QuapEstimator(config=make_full_model_config(knots)).fit(df[FULL_COLUMNS], df['ozone'])

    assert estimator.grad_norm_ <= 1e-6
    assert np.all(np.linalg.eigvalsh(estimator.covariance_) > 0)


def test_stalled_optimizer_is_finished_with_newton_steps(monkeypatch, observations, doy_knots):
    """Test that a run reported as failed for a reason other than maxiter is polished and kept."""
    X, y = observations[FULL_COLUMNS], observations['ozone']
    expected = QuapEstimator(config=make_full_model_config(doy_knots)).fit(X, y)

    minimize = optimize.minimize

    def stalled(*args, **kwargs):
        result = minimize(*args, **kwargs)
        result.success, result.status = False, 2
        result.message = 'A bad approximation caused failure to predict improvement.'
        return result

    monkeypatch.setattr(optimize, 'minimize', stalled)
    estimator = QuapEstimator(config=make_full_model_config(doy_knots)).fit(X, y)

    assert not estimator.optimize_result_.success
    assert estimator.grad_norm_ <= 1e-6
    np.testing.assert_allclose(estimator.mode_, expected.mode_, atol=1e-6)


@pytest.mark.parametrize("method", SOLVER_METHODS)
def test_every_solver_fits_both_models(method, observations, doy_knots):
    solver_config = QuapSolverConfig(method=method)
    full = QuapEstimator(config=make_full_model_config(doy_knots, solver_config=solver_config))
    full.fit(observations[FULL_COLUMNS], observations['ozone'])
    reduced = QuapEstimator(config=make_reduced_model_config(doy_knots, solver_config=solver_config))
    reduced.fit(observations[['doy']], observations['ozone'])

    reference = QuapEstimator(config=make_full_model_config(doy_knots))
    reference.fit(observations[FULL_COLUMNS], observations['ozone'])
    np.testing.assert_allclose(full.mode_, reference.mode_, atol=1e-4)
    assert reduced.grad_norm_ <= 1e-6


def test_positive_sigma_draws(reduced_model):
    """Test that sigma draws are mapped through log space and stay positive."""
    sigma = reduced_model.sigma_
    draws = np.array([[-3.0 * sigma], [0.0], [sigma], [2.0 * sigma]])
    mapped = reduced_model._positive_sigma(draws)

    assert np.all(mapped > 0)
    assert mapped[2, 0] == pytest.approx(sigma)
    assert np.all(np.diff(mapped[:, 0]) > 0)

    sd = np.sqrt(reduced_model.covariance_[-1, -1])
    samples = reduced_model.sample_posterior(n_samples=20000, random_state=4)['sigma'].to_numpy()
    log_sigma = np.log(reduced_model._positive_sigma(samples))
    assert np.mean(log_sigma) == pytest.approx(np.log(sigma), abs=0.01)
    assert np.std(log_sigma) == pytest.approx(sd / sigma, rel=0.05)


def test_term_slices_cover_parameters(full_model):
    """Test that term slices partition the coefficients in design-matrix order."""
    slices = full_model.term_slices_
    assert list(slices) == ['a', 'bH', 'bT', 'w']
    covered = np.concatenate([np.arange(len(full_model.coef_))[sl] for sl in slices.values()])
    np.testing.assert_array_equal(covered, np.arange(len(full_model.coef_)))
    for name in slices:
        assert all(p == name or p.startswith(f"{name}[") for p in full_model.get_weights(name).index)


def test_unsupported_solver(observations, doy_knots):
    config = make_reduced_model_config(doy_knots, solver_config=QuapSolverConfig(method='Nelder-Mead'))
    with pytest.raises(ValueError, match="Unsupported solver"):
        QuapEstimator(config=config).fit(observations[['doy']], observations['ozone'])


def test_rejects_nan(observations, doy_knots):
    X = observations[FULL_COLUMNS].copy()
    X.iloc[0, 1] = np.nan
    estimator = QuapEstimator(config=make_full_model_config(doy_knots))
    with pytest.raises(ValueError, match=".*NaN.*"):
        estimator.fit(X, observations['ozone'])

    y = observations['ozone'].copy()
    y.iloc[0] = np.nan
    with pytest.raises(ValueError):
        estimator.fit(observations[FULL_COLUMNS], y)


def test_rejects_wrong_column_count(observations, doy_knots):
    estimator = QuapEstimator(config=make_reduced_model_config(doy_knots))
    with pytest.raises(ValueError, match="1 terms"):
        estimator.fit(observations[['doy', 'temp']], observations['ozone'])

    estimator.fit(observations[['doy']], observations['ozone'])
    with pytest.raises(ValueError, match="expected 1"):
        estimator.predict(observations[['doy', 'temp']])


def test_predict_outside_spline_range(reduced_model):
    with pytest.raises(SplineBasisError, match="outside"):
        reduced_model.predict(np.array([[0.0], [400.0]]))


def test_not_fitted():
    estimator = QuapEstimator(config=make_reduced_model_config([100.0, 200.0]))
    with pytest.raises(NotFittedError):
        estimator.predict(np.array([[150.0]]))
    with pytest.raises(NotFittedError):
        estimator.precis()


def test_temperature_interval_coverage():
    """
    Test that the 93% interval for bT covers the true slope in at least 90% of
    synthetic trials.

    Each trial draws a fresh 330-day table with ozone = 2 * temp + noise, so the
    true slope in standardized units is 2 * sd(temp) / sd(ozone).
    """
    n_trials = 200
    covered = 0
    for seed in range(n_trials):
        raw = make_synthetic_observations(n=330, random_state=1000 + seed)
        df = prepare_observations(raw)
        knots = quantile_knots(df['doy'].to_numpy(), 15)
        estimator = QuapEstimator(config=make_full_model_config(knots, random_state=seed))
        estimator.fit(df[FULL_COLUMNS], df['ozone'])

        true_coef = 2.0 * raw['temp'].std() / raw['ozone'].std()
        summary = estimator.precis(prob=0.93)
        covered += summary.loc['bT', '3.5%'] <= true_coef <= summary.loc['bT', '96.5%']

    assert covered >= 0.9 * n_trials, f"bT interval covered the true slope in {covered}/{n_trials} trials"
