# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Quadratic-approximation (QUAP) Bayesian regression for daily ozone data.

This package provides:
- Loading and standardizing a daily ozone/humidity/temperature table
- Exploratory summaries and plots
- Cubic B-spline bases with quantile knots
- A Gaussian linear model fitted by quadratic (Laplace) posterior approximation,
  with per-category intercepts, linear coefficients and spline weights
- Posterior mean and prediction intervals and their plots
"""

from .quap_estimator import (
    # Main estimator class
    QuapEstimator,
    # Configuration classes
    QuapEstimatorConfig,
    QuapNormalPrior,
    QuapInterceptConfig,
    QuapCategoryConfig,
    QuapLinearConfig,
    QuapSplineConfig,
    QuapSigmaConfig,
    QuapSolverConfig,
    # Errors
    SplineBasisError,
    QuapFitError,
    # Spline basis
    quantile_knots,
    bspline_basis,
    # Model specifications
    make_full_model_config,
    make_reduced_model_config,
    DAYS_OF_WEEK,
    SOLVER_METHODS,
)
from .preprocessing import (
    OzoneColumns,
    StandardizationError,
    load_observations,
    standardize,
    complete_cases,
    prepare_observations,
    make_synthetic_observations,
)
from .exploration import (
    summarize,
    correlation_table,
    plot_densities,
    plot_boxplot,
    plot_pairs,
)
from .intervals import (
    percentile_interval,
    hpdi,
    mean_interval,
    prediction_interval,
    plot_mean_interval,
    plot_weighted_basis,
)

__all__ = [
    "QuapEstimator",
    "QuapEstimatorConfig",
    "QuapNormalPrior",
    "QuapInterceptConfig",
    "QuapCategoryConfig",
    "QuapLinearConfig",
    "QuapSplineConfig",
    "QuapSigmaConfig",
    "QuapSolverConfig",
    "SplineBasisError",
    "QuapFitError",
    "quantile_knots",
    "bspline_basis",
    "make_full_model_config",
    "make_reduced_model_config",
    "DAYS_OF_WEEK",
    "SOLVER_METHODS",
    "OzoneColumns",
    "StandardizationError",
    "load_observations",
    "standardize",
    "complete_cases",
    "prepare_observations",
    "make_synthetic_observations",
    "summarize",
    "correlation_table",
    "plot_densities",
    "plot_boxplot",
    "plot_pairs",
    "percentile_interval",
    "hpdi",
    "mean_interval",
    "prediction_interval",
    "plot_mean_interval",
    "plot_weighted_basis",
]
