# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Daily ozone report.

Loads the observation table, standardizes it, writes summary tables and
exploratory plots, fits the full model (day-of-week intercepts, humidity,
temperature and a day-of-year spline) and the reduced model (intercept and
spline only) by quadratic approximation, and plots posterior mean intervals
against day-of-year.

Usage:
    ozone-report --data-file ozone.csv --output-dir plots
    ozone-report --synthetic --seed 7
"""

from dataclasses import dataclass, field
from pathlib import Path
from numpy import ndarray
import numpy as np
import pandas as pd
import matplotlib
import matplotlib.pyplot as plt
import click

from .preprocessing import (
    OzoneColumns,
    load_observations,
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
from .quap_estimator import (
    QuapEstimator,
    QuapSolverConfig,
    SOLVER_METHODS,
    quantile_knots,
    make_full_model_config,
    make_reduced_model_config,
)
from .intervals import mean_interval, plot_mean_interval, plot_weighted_basis


@dataclass
class ReportConfig:
    """
    Settings for one report run.

    Parameters
    ----------
    data_file : Path or None, default=None
        CSV input. Required unless synthetic is True.
    synthetic : bool, default=False
        Use a generated table (330 days, ozone = 2 * temp + noise) instead of
        data_file.
    n_knots : int, default=15
        Quantile knots over day-of-year, boundaries included.
    degree : int, default=3
        Spline degree.
    prob : float, default=0.93
        Width of the plotted credible intervals.
    n_samples : int, default=1000
        Posterior draws per interval.
    seed : int, default=42
        Seed for every model fit and sampling call.
    output_dir : Path, default=Path('plots')
        Where figures and tables are written.
    solver : str, default='trust-exact'
        scipy.optimize.minimize method.
    verbose : bool, default=False
        Print optimizer messages.
    columns : OzoneColumns, default=OzoneColumns()
        Column names of the table.
    """
    data_file: Path | None = None
    synthetic: bool = False
    n_knots: int = 15
    degree: int = 3
    prob: float = 0.93
    n_samples: int = 1000
    seed: int = 42
    output_dir: Path = Path('plots')
    solver: str = 'trust-exact'
    verbose: bool = False
    columns: OzoneColumns = field(default_factory=OzoneColumns)


@dataclass
class ReportResult:
    observations: pd.DataFrame
    summary: pd.DataFrame
    knots: ndarray
    full_model: QuapEstimator
    reduced_model: QuapEstimator
    full_interval: pd.DataFrame
    reduced_interval: pd.DataFrame
    outputs: dict[str, Path] = field(default_factory=dict)


def _save(fig, path: Path, outputs: dict, key: str):
    fig.savefig(path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    outputs[key] = path


def run_report(config: ReportConfig) -> ReportResult:
    """
    Run the whole analysis once.

    Nothing is caught: a missing file, a degenerate column, a bad knot count or
    a failed fit aborts the run with its exception.

    Parameters
    ----------
    config : ReportConfig

    Returns
    -------
    result : ReportResult
        Prepared data, fitted models, intervals and the paths written.
    """
    cols = config.columns
    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    outputs: dict[str, Path] = {}

    # ============================================================================
    # Load and prepare data
    # ============================================================================

    if config.synthetic:
        click.echo("Generating synthetic observations...")
        raw = make_synthetic_observations(columns=cols, random_state=config.seed)
    else:
        if config.data_file is None:
            raise ValueError("data_file is required unless synthetic is set.")
        click.echo(f"Loading data from: {config.data_file}")
        raw = load_observations(config.data_file, columns=cols)
    click.echo(f"Raw table: {raw.shape[0]} rows, columns {list(raw.columns)}")

    df = prepare_observations(raw, columns=cols)
    click.echo(f"Complete standardized rows: {len(df)} (dropped {len(raw) - len(df)})")

    # ============================================================================
    # Exploratory summaries
    # ============================================================================

    summary = summarize(raw, cols.continuous)
    click.echo("\nSummary of raw continuous columns:")
    click.echo(summary.round(2).to_string())
    summary.to_csv(output_dir / 'summary.csv')
    outputs['summary'] = output_dir / 'summary.csv'

    corr = correlation_table(df, cols.continuous + [cols.day_of_year])
    click.echo("\nCorrelations (standardized):")
    click.echo(corr.round(2).to_string())

    _save(plot_densities(df, cols.continuous), output_dir / 'densities.png', outputs, 'densities')
    _save(plot_boxplot(df, cols.ozone, cols.day_of_week), output_dir / 'ozone_by_dow.png', outputs, 'boxplot')
    _save(plot_pairs(df, cols.continuous + [cols.day_of_year]), output_dir / 'pairs.png', outputs, 'pairs')

    # ============================================================================
    # Spline knots (computed once, shared by both models)
    # ============================================================================

    doy = df[cols.day_of_year].to_numpy(dtype=float)
    knots = quantile_knots(doy, config.n_knots)
    boundary = (float(doy.min()), float(doy.max()))
    click.echo(f"\nInterior knots over {cols.day_of_year}: {np.round(knots, 1).tolist()}")

    solver_config = QuapSolverConfig(method=config.solver, verbose=config.verbose)
    y = df[cols.ozone].to_numpy(dtype=float)

    # ============================================================================
    # Full model: a[dow] + bH * humidity + bT * temp + B @ w
    # ============================================================================

    X_full = df[[cols.day_of_week, cols.humidity, cols.temperature, cols.day_of_year]]
    click.echo("\nFitting full model...")
    full_model = QuapEstimator(config=make_full_model_config(
        knots, boundary_knots=boundary, degree=config.degree,
        solver_config=solver_config, random_state=config.seed,
    )).fit(X_full, y)
    full_precis = full_model.precis(prob=config.prob)
    click.echo(full_precis.round(3).to_string())
    full_precis.to_csv(output_dir / 'full_model_precis.csv')
    outputs['full_precis'] = output_dir / 'full_model_precis.csv'

    # ============================================================================
    # Reduced model: a + B @ w
    # ============================================================================

    X_reduced = df[[cols.day_of_year]]
    click.echo("\nFitting reduced model...")
    reduced_model = QuapEstimator(config=make_reduced_model_config(
        knots, boundary_knots=boundary, degree=config.degree,
        solver_config=solver_config, random_state=config.seed,
    )).fit(X_reduced, y)
    reduced_precis = reduced_model.precis(prob=config.prob)
    click.echo(reduced_precis.round(3).to_string())
    reduced_precis.to_csv(output_dir / 'reduced_model_precis.csv')
    outputs['reduced_precis'] = output_dir / 'reduced_model_precis.csv'

    # ============================================================================
    # Posterior mean intervals
    # ============================================================================

    full_interval = mean_interval(full_model, X_full, prob=config.prob,
                                  n_samples=config.n_samples, random_state=config.seed)
    reduced_interval = mean_interval(reduced_model, X_reduced, prob=config.prob,
                                     n_samples=config.n_samples, random_state=config.seed)

    label = f"{config.prob:.0%}"
    _save(plot_mean_interval(doy, y, full_interval, title=f"Full model, {label} mean interval"),
          output_dir / 'full_model_interval.png', outputs, 'full_interval')
    _save(plot_mean_interval(doy, y, reduced_interval, title=f"Reduced model, {label} mean interval"),
          output_dir / 'reduced_model_interval.png', outputs, 'reduced_interval')
    _save(plot_weighted_basis(doy, reduced_model.term_matrix(X_reduced, 'w'), reduced_model.get_weights('w')),
          output_dir / 'reduced_model_basis.png', outputs, 'basis')

    click.echo(f"\nWrote {len(outputs)} files to {output_dir}")
    return ReportResult(
        observations=df,
        summary=summary,
        knots=knots,
        full_model=full_model,
        reduced_model=reduced_model,
        full_interval=full_interval,
        reduced_interval=reduced_interval,
        outputs=outputs,
    )


@click.command()
@click.option(
    '--data-file',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help='CSV with ozone, humidity, temp, dow and doy columns.'
)
@click.option(
    '--synthetic',
    is_flag=True,
    help='Use a generated 330-day table instead of --data-file.'
)
@click.option(
    '--n-knots',
    type=int,
    default=15,
    help='Quantile knots over day-of-year, boundaries included. Default: 15'
)
@click.option(
    '--prob',
    type=click.FloatRange(0, 1, min_open=True, max_open=True),
    default=0.93,
    help='Credible interval width. Default: 0.93'
)
@click.option(
    '--n-samples',
    type=int,
    default=1000,
    help='Posterior draws per interval. Default: 1000'
)
@click.option(
    '--seed',
    type=int,
    default=42,
    help='Seed for fitting and sampling. Default: 42'
)
@click.option(
    '--output-dir',
    type=click.Path(file_okay=False, path_type=Path),
    default=Path('plots'),
    help='Output directory for plots and tables. Default: plots'
)
@click.option(
    '--solver',
    type=click.Choice(list(SOLVER_METHODS)),
    default='trust-exact',
    help='scipy.optimize.minimize method. Default: trust-exact'
)
@click.option(
    '--verbose/--quiet',
    default=False,
    help='Print optimizer messages. Default: quiet'
)
def main(data_file, synthetic, n_knots, prob, n_samples, seed, output_dir, solver, verbose):
    """
    Daily ozone report: summaries, exploratory plots and two Bayesian spline
    regressions fitted by quadratic approximation.
    """
    if data_file is None and not synthetic:
        raise click.UsageError("Provide --data-file or --synthetic.")

    # figures are only written to disk
    matplotlib.use('Agg')

    run_report(ReportConfig(
        data_file=data_file,
        synthetic=synthetic,
        n_knots=n_knots,
        prob=prob,
        n_samples=n_samples,
        seed=seed,
        output_dir=output_dir,
        solver=solver,
        verbose=verbose,
    ))


if __name__ == "__main__":
    main()
