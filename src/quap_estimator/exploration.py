# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Summary statistics and exploratory plots for the observation table.

Plotting functions return matplotlib figures and leave showing or saving them
to the caller.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns


def summarize(df: pd.DataFrame, columns: list[str] | None = None, prob: float = 0.89) -> pd.DataFrame:
    """
    Per-column summary: count, mean, sd, min, central interval, median, max.

    Parameters
    ----------
    df : DataFrame
        Observation table.
    columns : list[str] or None, default=None
        Columns to summarize. None means every numeric column.
    prob : float, default=0.89
        Width of the central quantile interval reported next to the median.

    Returns
    -------
    summary : DataFrame
        One row per column. Quantile columns are labelled by percentile,
        e.g. '5.5%' and '94.5%' for prob=0.89.
    """
    if not 0 < prob < 1:
        raise ValueError(f"prob must be between 0 and 1, got {prob}.")
    if columns is None:
        columns = list(df.select_dtypes('number').columns)
    lower, upper = (1 - prob) / 2, (1 + prob) / 2

    rows = {}
    for name in columns:
        values = df[name].dropna().astype(float)
        rows[name] = {
            'count': len(values),
            'mean': values.mean(),
            'sd': values.std(ddof=1),
            'min': values.min(),
            f"{100 * lower:.1f}%": values.quantile(lower),
            '50%': values.median(),
            f"{100 * upper:.1f}%": values.quantile(upper),
            'max': values.max(),
        }
    return pd.DataFrame.from_dict(rows, orient='index')


def correlation_table(df: pd.DataFrame, columns: list[str] | None = None) -> pd.DataFrame:
    """Pearson correlations between the given (or all numeric) columns."""
    if columns is None:
        columns = list(df.select_dtypes('number').columns)
    return df[columns].corr()


def plot_densities(df: pd.DataFrame, columns: list[str], ncols: int = 3):
    """
    Kernel density estimate of each column, one panel per column.

    Returns
    -------
    fig : Figure
    """
    nrows = int(np.ceil(len(columns) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 3 * nrows), squeeze=False)
    for ax, name in zip(axes.flat, columns):
        sns.kdeplot(data=df, x=name, fill=True, ax=ax)
        ax.set_title(name)
    # hide unused panels
    for ax in list(axes.flat)[len(columns):]:
        ax.set_visible(False)
    fig.tight_layout()
    return fig


def plot_boxplot(df: pd.DataFrame, value: str, by: str):
    """
    Boxplot of ``value`` for each level of ``by``, e.g. ozone by day-of-week.

    Returns
    -------
    fig : Figure
    """
    fig, ax = plt.subplots(figsize=(8, 4))
    sns.boxplot(data=df, x=by, y=value, ax=ax)
    ax.set_title(f"{value} by {by}")
    fig.tight_layout()
    return fig


def plot_pairs(df: pd.DataFrame, columns: list[str]):
    """
    Pairwise scatter plots with histograms on the diagonal.

    Returns
    -------
    fig : Figure
    """
    grid = sns.pairplot(df[columns], plot_kws={'s': 12, 'alpha': 0.5})
    return grid.figure
