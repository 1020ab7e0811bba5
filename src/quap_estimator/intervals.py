# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Posterior predictive intervals and the plots that show them.
"""

from numpy import ndarray
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from .quap_estimator import QuapEstimator


def _check_prob(prob):
    if not 0 < prob < 1:
        raise ValueError(f"prob must be between 0 and 1, got {prob}.")


def percentile_interval(samples, prob: float = 0.89) -> tuple[ndarray, ndarray]:
    """
    Central interval holding ``prob`` of the samples, per column.

    Parameters
    ----------
    samples : array-like of shape (n_samples,) or (n_samples, n_columns)
        Draws, one row per draw.
    prob : float, default=0.89
        Interval width.

    Returns
    -------
    lower, upper : ndarray
        Bounds per column (scalars for 1-D input).
    """
    _check_prob(prob)
    lower, upper = np.quantile(np.asarray(samples, dtype=float), [(1 - prob) / 2, (1 + prob) / 2], axis=0)
    return lower, upper


def hpdi(samples, prob: float = 0.89) -> tuple[ndarray, ndarray]:
    """
    Narrowest interval holding ``prob`` of the samples, per column.

    Parameters
    ----------
    samples : array-like of shape (n_samples,) or (n_samples, n_columns)
        Draws, one row per draw.
    prob : float, default=0.89
        Interval width.

    Returns
    -------
    lower, upper : ndarray
        Bounds per column (scalars for 1-D input).
    """
    _check_prob(prob)
    samples = np.sort(np.asarray(samples, dtype=float), axis=0)
    n = samples.shape[0]
    width = int(np.floor(prob * n))
    if width < 1 or width >= n:
        raise ValueError(f"Need more samples for a {prob} interval, got {n}.")
    spans = samples[width:] - samples[:n - width]
    start = np.argmin(spans, axis=0)
    if samples.ndim == 1:
        return samples[start], samples[start + width]
    cols = np.arange(samples.shape[1])
    return samples[start, cols], samples[start + width, cols]


def _interval_frame(draws, prob, index):
    lower, upper = percentile_interval(draws, prob)
    return pd.DataFrame({'mean': draws.mean(axis=0), 'lower': lower, 'upper': upper}, index=index)


def mean_interval(estimator: QuapEstimator, X, prob: float = 0.93, n_samples: int = 1000,
                  random_state=None) -> pd.DataFrame:
    """
    Credible interval of the mean response for each row of X.

    Parameters
    ----------
    estimator : QuapEstimator
        Fitted model.
    X : array-like or DataFrame
        Predictors in the model's column order.
    prob : float, default=0.93
        Interval width.
    n_samples : int, default=1000
        Number of posterior draws.
    random_state : int, RandomState instance or None, default=None
        Random state for reproducible results.

    Returns
    -------
    interval : DataFrame
        Columns mean, lower, upper; indexed like X when X is a DataFrame.
    """
    _check_prob(prob)
    mu = estimator.link(X, n_samples=n_samples, random_state=random_state)
    return _interval_frame(mu, prob, X.index if isinstance(X, pd.DataFrame) else None)


def prediction_interval(estimator: QuapEstimator, X, prob: float = 0.93, n_samples: int = 1000,
                        random_state=None) -> pd.DataFrame:
    """Like mean_interval but for simulated observations, so residual noise is included."""
    _check_prob(prob)
    y_sim = estimator.sim(X, n_samples=n_samples, random_state=random_state)
    return _interval_frame(y_sim, prob, X.index if isinstance(X, pd.DataFrame) else None)


def plot_mean_interval(x, y, interval: pd.DataFrame, prediction: pd.DataFrame | None = None,
                       ax=None, title: str | None = None):
    """
    Observed points with the mean line and interval band, ordered by x.

    Parameters
    ----------
    x : array-like
        Predictor shown on the horizontal axis, e.g. day-of-year.
    y : array-like
        Observed response.
    interval : DataFrame
        Output of mean_interval, aligned with x.
    prediction : DataFrame or None, default=None
        Optional output of prediction_interval, drawn as a wider, lighter band.
    ax : Axes or None, default=None
        Axes to draw on. None creates a new figure.
    title : str or None, default=None

    Returns
    -------
    fig : Figure
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 4))
    else:
        fig = ax.figure

    x = np.asarray(x, dtype=float)
    order = np.argsort(x, kind='stable')
    xs = x[order]

    ax.scatter(x, np.asarray(y, dtype=float), s=12, alpha=0.4, color='tab:blue', label='observed')
    if prediction is not None:
        ax.fill_between(xs, prediction['lower'].to_numpy()[order], prediction['upper'].to_numpy()[order],
                        color='gray', alpha=0.15, label='prediction interval')
    ax.fill_between(xs, interval['lower'].to_numpy()[order], interval['upper'].to_numpy()[order],
                    color='black', alpha=0.3, label='mean interval')
    ax.plot(xs, interval['mean'].to_numpy()[order], color='black', linewidth=1)
    if title:
        ax.set_title(title)
    ax.legend(loc='best')
    return fig


def plot_weighted_basis(x, basis, weights, ax=None):
    """
    Each basis function scaled by its weight, plus their sum.

    Parameters
    ----------
    x : array-like of shape (n_samples,)
    basis : array-like of shape (n_samples, n_basis)
    weights : array-like of shape (n_basis,)
    ax : Axes or None, default=None

    Returns
    -------
    fig : Figure
    """
    basis = np.asarray(basis, dtype=float)
    weights = np.asarray(weights, dtype=float)
    if basis.shape[1] != weights.shape[0]:
        raise ValueError(f"basis has {basis.shape[1]} columns but {weights.shape[0]} weights were given.")
    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 4))
    else:
        fig = ax.figure

    x = np.asarray(x, dtype=float)
    order = np.argsort(x, kind='stable')
    weighted = basis[order] * weights
    for j in range(weighted.shape[1]):
        ax.plot(x[order], weighted[:, j], color='gray', linewidth=1)
    ax.plot(x[order], weighted.sum(axis=1), color='black', linewidth=2)
    return fig
