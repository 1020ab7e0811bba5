# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""
Test the end-to-end ozone report and its command line entry point.
"""

import pytest
import numpy as np
from click.testing import CliRunner
from quap_estimator import SOLVER_METHODS, StandardizationError
from quap_estimator.report import ReportConfig, run_report, main


def test_run_report_synthetic(tmp_path):
    result = run_report(ReportConfig(synthetic=True, output_dir=tmp_path, n_samples=200, seed=7))

    assert len(result.observations) == 330
    assert result.knots.shape == (13,)
    assert len(result.full_model.param_names_) == 27
    assert len(result.reduced_model.param_names_) == 19
    # both models share the knots computed once
    np.testing.assert_array_equal(result.full_model.spline_knots_[3], result.knots)
    np.testing.assert_array_equal(result.reduced_model.spline_knots_[0], result.knots)
    assert len(result.full_interval) == len(result.observations)

    for name in ['summary', 'densities', 'boxplot', 'pairs', 'full_precis', 'reduced_precis',
                 'full_interval', 'reduced_interval', 'basis']:
        assert result.outputs[name].exists(), name


def test_run_report_from_csv(tmp_path, raw_observations):
    """Test a CSV run with one incomplete row."""
    raw = raw_observations.copy()
    raw.loc[5, 'temp'] = np.nan
    path = tmp_path / 'ozone.csv'
    raw.to_csv(path, index=False)

    result = run_report(ReportConfig(data_file=path, output_dir=tmp_path / 'out', n_samples=100))
    assert len(result.observations) == 329
    assert (tmp_path / 'out' / 'full_model_interval.png').exists()


def test_run_report_propagates_errors(tmp_path, raw_observations):
    raw = raw_observations.copy()
    raw['temp'] = 70.0
    path = tmp_path / 'flat.csv'
    raw.to_csv(path, index=False)
    with pytest.raises(StandardizationError):
        run_report(ReportConfig(data_file=path, output_dir=tmp_path / 'out'))

    with pytest.raises(ValueError, match="data_file is required"):
        run_report(ReportConfig(output_dir=tmp_path / 'out'))


def test_cli_synthetic(tmp_path):
    runner = CliRunner()
    result = runner.invoke(main, ['--synthetic', '--output-dir', str(tmp_path), '--n-samples', '100', '--seed', '3'])
    assert result.exit_code == 0, result.output
    assert 'Fitting full model' in result.output
    assert 'bT' in result.output
    assert (tmp_path / 'reduced_model_interval.png').exists()


def test_cli_requires_input(tmp_path):
    runner = CliRunner()
    result = runner.invoke(main, ['--output-dir', str(tmp_path)])
    assert result.exit_code != 0
    assert '--data-file' in result.output


@pytest.mark.parametrize("solver", SOLVER_METHODS)
def test_cli_every_solver(tmp_path, solver):
    runner = CliRunner()
    result = runner.invoke(main, ['--synthetic', '--output-dir', str(tmp_path), '--n-samples', '50',
                                  '--solver', solver])
    assert result.exit_code == 0, result.output
    assert (tmp_path / 'full_model_precis.csv').exists()
    assert (tmp_path / 'reduced_model_precis.csv').exists()


def test_cli_rejects_unknown_solver(tmp_path):
    runner = CliRunner()
    result = runner.invoke(main, ['--synthetic', '--output-dir', str(tmp_path), '--solver', 'CG'])
    assert result.exit_code == 2
    assert "Invalid value for '--solver'" in result.output
