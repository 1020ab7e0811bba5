# Copyright (c) 2025 Alliance for Sustainable Energy, LLC and Nimish Telang
# SPDX-License-Identifier: BSD-3-Clause

"""Shared fixtures for the quap_estimator tests."""

import matplotlib

matplotlib.use('Agg')

import matplotlib.pyplot as plt
import pytest
from quap_estimator import (
    OzoneColumns,
    make_synthetic_observations,
    prepare_observations,
    quantile_knots,
)


@pytest.fixture
def columns():
    return OzoneColumns()


@pytest.fixture
def raw_observations():
    """Synthetic 330-day table with ozone = 2 * temp + noise."""
    return make_synthetic_observations(n=330, random_state=0)


@pytest.fixture
def observations(raw_observations):
    """Standardized, complete version of raw_observations."""
    return prepare_observations(raw_observations)


@pytest.fixture
def doy_knots(observations):
    """15 quantile knots over day-of-year (13 interior knots)."""
    return quantile_knots(observations['doy'].to_numpy(), 15)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close('all')
